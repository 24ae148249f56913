import pytest

from stepstash.schemas import StepStatus


@pytest.mark.asyncio
async def test_append_numbers_steps_sequentially(engine, make_plan):
    plan = await make_plan(steps=["A", "B", "C"])
    steps = await engine.steps.list_steps(plan.id)
    assert [s.step_number for s in steps] == [1.0, 2.0, 3.0]
    assert [s.description for s in steps] == ["A", "B", "C"]
    assert all(s.status == StepStatus.PENDING for s in steps)
    assert all(s.project_id == engine.project_id for s in steps)


@pytest.mark.asyncio
async def test_insert_after_uses_midpoint(engine, make_plan):
    plan = await make_plan(steps=["A", "B"])
    inserted = await engine.steps.add_step(plan.id, "A.5", after_step=1.0)
    assert inserted.ok
    assert inserted.step.step_number == 1.5
    tail = await engine.steps.add_step(plan.id, "tail", after_step=2.0)
    assert tail.step.step_number == 3.0
    order = [s.description for s in await engine.steps.list_steps(plan.id)]
    assert order == ["A", "A.5", "B", "tail"]


@pytest.mark.asyncio
async def test_repeated_inserts_after_same_step_never_collide(engine, make_plan):
    plan = await make_plan(steps=["A", "B"])
    numbers = []
    for i in range(10):
        result = await engine.steps.add_step(plan.id, f"insert {i}", after_step=1.0)
        assert result.ok, result
        numbers.append(result.step.step_number)
    assert len(set(numbers)) == len(numbers)
    assert all(1.0 < n < 2.0 for n in numbers)
    # each insert lands directly after step 1, ahead of the previous insert
    assert numbers == sorted(numbers, reverse=True)


@pytest.mark.asyncio
async def test_explicit_number_wins_over_after_step(engine, make_plan):
    plan = await make_plan(steps=["A", "B"])
    result = await engine.steps.add_step(plan.id, "X", step_number=10, after_step=1.0)
    assert result.ok
    assert result.step.step_number == 10.0


@pytest.mark.asyncio
async def test_duplicate_number_is_rejected(engine, make_plan):
    plan = await make_plan(steps=["A"])
    result = await engine.steps.add_step(plan.id, "again", step_number=1.0)
    assert not result.ok
    assert result.status == "validation_error"
    assert result.details == {"step_number": ["has already been taken"]}
    assert len(await engine.steps.list_steps(plan.id)) == 1


@pytest.mark.asyncio
async def test_same_number_allowed_in_different_plans(engine, make_plan):
    first = await make_plan("First", steps=["A"])
    second = await make_plan("Second")
    result = await engine.steps.add_step(second.id, "A", step_number=1.0)
    assert result.ok
    assert (await engine.steps.get_step_by_number(first.id, 1)).plan_id == first.id


@pytest.mark.asyncio
async def test_add_step_validation(engine, make_plan):
    plan = await make_plan()
    result = await engine.steps.add_step(
        plan.id, "  ", step_number="abc", created_by="robot", metadata=["x"]
    )
    assert result.status == "validation_error"
    assert set(result.details) == {"description", "step_number", "created_by", "metadata"}
    nan = await engine.steps.add_step(plan.id, "x", step_number=float("nan"))
    assert nan.details == {"step_number": ["is invalid"]}


@pytest.mark.asyncio
async def test_add_step_unknown_plan(engine):
    result = await engine.steps.add_step("missing", "A")
    assert result.status == "not_found"


@pytest.mark.asyncio
async def test_agent_step_keeps_metadata(engine, make_plan):
    plan = await make_plan()
    result = await engine.steps.add_step(
        plan.id, "Refactor", created_by="agent", metadata={"file": "lib/a.py"}
    )
    step = await engine.steps.get_step(result.step.id)
    assert step.created_by == "agent"
    assert step.metadata == {"file": "lib/a.py"}
    assert step.result is None


@pytest.mark.asyncio
async def test_list_steps_filters_by_status(engine, make_plan):
    plan = await make_plan(steps=["A", "B", "C"])
    steps = await engine.steps.list_steps(plan.id)
    await engine.scheduler.defer_step(steps[1].id)
    deferred = await engine.steps.list_steps(plan.id, status="deferred")
    assert [s.id for s in deferred] == [steps[1].id]
    pending = await engine.steps.list_steps(plan.id, status=StepStatus.PENDING)
    assert [s.description for s in pending] == ["A", "C"]


@pytest.mark.asyncio
async def test_peek_does_not_claim(engine, make_plan):
    plan = await make_plan(steps=["A", "B"])
    peeked = await engine.steps.peek_next_step(plan.id)
    assert peeked.description == "A"
    assert peeked.status == StepStatus.PENDING
    again = await engine.steps.peek_next_step(plan.id)
    assert again.id == peeked.id
    assert (await engine.plans.get_plan(plan.id)).status == "idle"


@pytest.mark.asyncio
async def test_lookup_misses(engine, make_plan):
    plan = await make_plan(steps=["A"])
    assert await engine.steps.get_step("missing") is None
    assert await engine.steps.get_step_by_number(plan.id, 7) is None
    empty = await make_plan("Empty")
    assert await engine.steps.peek_next_step(empty.id) is None

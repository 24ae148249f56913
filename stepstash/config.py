import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "STEPSTASH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    database_path: str = "stepstash.db"
    host: str = "127.0.0.1"
    port: int = 4001
    # Seconds a writer waits for SQLite's write lock; plans themselves never queue.
    busy_timeout_s: float = 5.0
    default_project_id: Optional[str] = None
    list_limit_default: int = 50
    log_level: str = "INFO"

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> Dict[str, Any]:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "busy_timeout_s": os.getenv("BUSY_TIMEOUT_S"),
        "default_project_id": os.getenv("DEFAULT_PROJECT_ID"),
        "list_limit_default": os.getenv("LIST_LIMIT_DEFAULT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "busy_timeout_s" in cleaned:
        cleaned["busy_timeout_s"] = float(cleaned["busy_timeout_s"])
    if "list_limit_default" in cleaned:
        cleaned["list_limit_default"] = int(cleaned["list_limit_default"])
    if "log_level" in cleaned:
        cleaned["log_level"] = str(cleaned["log_level"]).upper()
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))

import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CHECK_URL = "http://clients3.google.com/generate_204"
CONFIG_ENV_VAR = "ACP_CONFIG"
CREDENTIAL_STORES = ("keyring", "file")


def app_data_dir() -> Path:
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", "C:\\ProgramData"))
        return base / "acp"
    return Path.home() / ".local" / "share" / "acp"


def app_config_dir() -> Path:
    if sys.platform == "win32":
        return app_data_dir()
    return Path.home() / ".config" / "acp"


def _coerce(key: str, expected: type, value: object) -> object:
    if expected is bool:
        if isinstance(value, bool):
            return value
    elif expected is Path:
        if isinstance(value, str) and value:
            return Path(value).expanduser()
    elif expected in (int, float):
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            try:
                return expected(value)
            except ValueError:
                pass
    elif expected is str:
        if isinstance(value, str):
            return value
    raise ValueError(f"setting {key} must be {expected.__name__}, got {value!r}")


@dataclass
class Settings:
    check_url: str = DEFAULT_CHECK_URL
    login_path: str = "/"
    logout_url: str = ""
    redirect_target: str = ""
    user_agent: str = ""
    min_delay: float = 10.0
    max_delay: float = 1800.0
    max_login_retries: int = 3
    initial_retry_delay: float = 2.0
    request_timeout: float = 10.0
    debounce_seconds: float = 3.0
    signal_queue_size: int = 10
    interface_poll_seconds: float = 2.0
    notifications: bool = True
    log_level: str = "INFO"
    credential_store: str = "keyring"
    state_path: Path = field(default_factory=lambda: app_data_dir() / "state.json")
    credentials_path: Path = field(
        default_factory=lambda: app_config_dir() / "credentials.json"
    )
    log_dir: Path = field(default_factory=lambda: app_data_dir() / "logs")

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Unknown setting ignored: %s", key)
                continue
            kwargs[key] = _coerce(key, known[key].type, value)
        settings = cls(**kwargs)
        if settings.min_delay > settings.max_delay:
            raise ValueError("min_delay must not exceed max_delay")
        if settings.credential_store not in CREDENTIAL_STORES:
            raise ValueError(
                f"credential_store must be one of {', '.join(CREDENTIAL_STORES)}"
            )
        return settings


def default_config_path() -> Path:
    configured = os.environ.get(CONFIG_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return app_config_dir() / "settings.json"


def load_settings(path: Optional[Path] = None) -> Settings:
    config_path = path or default_config_path()
    if not config_path.is_file():
        logger.debug("No settings file at %s, using defaults", config_path)
        return Settings()
    with config_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Settings file must hold a JSON object: {config_path}")
    return Settings.from_dict(data)

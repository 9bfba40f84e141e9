import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceState:
    last_check_time: Optional[int] = None
    last_successful_login_time: Optional[int] = None
    last_portal_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceState":
        def as_int(value: object) -> Optional[int]:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            return int(value)

        portal = data.get("last_portal_url")
        return cls(
            last_check_time=as_int(data.get("last_check_time")),
            last_successful_login_time=as_int(data.get("last_successful_login_time")),
            last_portal_url=portal if isinstance(portal, str) else None,
        )


def merge_state(
    state: ServiceState,
    now: int,
    portal_url: Optional[str] = None,
    login_succeeded: bool = False,
) -> ServiceState:
    merged = replace(state, last_check_time=now)
    if portal_url is not None:
        merged = replace(merged, last_portal_url=portal_url)
    if login_succeeded:
        merged = replace(merged, last_successful_login_time=now)
    return merged


def _write_state_atomic(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


def read_state(path: Path) -> ServiceState:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ServiceState()
    except OSError as exc:
        logger.warning("State file %s unreadable: %s", path, exc)
        return ServiceState()
    try:
        data = json.loads(raw)
    except ValueError as exc:
        logger.warning("State file %s is corrupt, starting empty: %s", path, exc)
        return ServiceState()
    if not isinstance(data, dict):
        logger.warning("State file %s does not hold an object, starting empty", path)
        return ServiceState()
    return ServiceState.from_dict(data)


def write_status(path: Path, payload: dict) -> None:
    """Publish the daemon's live status for `acp status` in other processes."""
    _write_state_atomic(path, payload)


def read_status(path: Path) -> Optional[dict]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Status file %s unreadable: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


class StatePersistence:
    def __init__(self, path: Path, clock=time.time) -> None:
        self.path = path
        self.clock = clock
        self._current: Optional[ServiceState] = None

    @property
    def current(self) -> ServiceState:
        if self._current is None:
            self._current = read_state(self.path)
        return self._current

    def load(self) -> ServiceState:
        self._current = read_state(self.path)
        return self._current

    def update(
        self, portal_url: Optional[str] = None, login_succeeded: bool = False
    ) -> ServiceState:
        """Merge one check result into the record and write it atomically.

        The merged state is kept in memory even when the write fails, in
        which case PersistenceError is raised.
        """
        merged = merge_state(self.current, int(self.clock()), portal_url, login_succeeded)
        self._current = merged
        try:
            _write_state_atomic(self.path, asdict(merged))
        except OSError as exc:
            raise PersistenceError(f"could not write state file {self.path}: {exc}") from exc
        return merged


def format_duration_ago(timestamp: int, now: Optional[float] = None) -> str:
    current = int(time.time() if now is None else now)
    if current < timestamp:
        return "just now"
    diff = current - timestamp
    if diff < 60:
        return f"{diff} seconds ago"
    if diff < 3600:
        mins = diff // 60
        return f"{mins} minute{'' if mins == 1 else 's'} ago"
    if diff < 86400:
        hours = diff // 3600
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    days = diff // 86400
    return f"{days} day{'' if days == 1 else 's'} ago"

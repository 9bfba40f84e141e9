import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import requests

from .backoff import MAX_DELAY, MIN_DELAY, BackoffState, Outcome, Regime, next_state
from .credentials import CredentialProvider, Credentials
from .detector import Clear, PortalDetector
from .errors import (
    Cancelled,
    CredentialError,
    LoginError,
    NetworkError,
    ParseError,
    PersistenceError,
)
from .events import CheckRequest, EventBridge, offer
from .login import LoginClient
from .notifications import LogNotifier, Notifier
from .scraper import PortalSession, extract_magic_value, parse_portal_session
from .state import ServiceState, StatePersistence, write_status

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    LOGGING_IN = "logging_in"
    SLEEPING = "sleeping"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class StatusSnapshot:
    current_regime: Regime
    seconds_until_next_check: float
    service_state: ServiceState
    phase: Phase
    last_error: Optional[str] = None
    cycles: int = 0


class DaemonLoop:
    """Single-threaded check/login state machine fed by a bounded signal queue."""

    def __init__(
        self,
        detector: PortalDetector,
        login_client: LoginClient,
        credentials: CredentialProvider,
        persistence: StatePersistence,
        notifier: Optional[Notifier] = None,
        signals: Optional["queue.Queue[CheckRequest]"] = None,
        stop_event: Optional[threading.Event] = None,
        bridge: Optional[EventBridge] = None,
        session: Optional[requests.Session] = None,
        min_delay: float = MIN_DELAY,
        max_delay: float = MAX_DELAY,
        max_login_retries: int = 3,
        initial_retry_delay: float = 2.0,
        wait: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        status_path: Optional[Path] = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.detector = detector
        self.login_client = login_client
        self.credentials = credentials
        self.persistence = persistence
        self.notifier = notifier or LogNotifier()
        self.signals = signals if signals is not None else queue.Queue(maxsize=10)
        self.stop_event = stop_event or threading.Event()
        self.bridge = bridge
        self.session = session
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.max_login_retries = max_login_retries
        self.initial_retry_delay = initial_retry_delay
        self.wait = wait or self.stop_event.wait
        self.clock = clock
        self.status_path = status_path or persistence.path.with_name("status.json")
        self.wall_clock = wall_clock

        self.backoff = BackoffState(Regime.NO_PORTAL, min_delay)
        self.phase = Phase.IDLE
        self.last_error: Optional[str] = None
        self.retry_attempt = 0
        self.cycles = 0
        self._next_check_at: Optional[float] = None

    def status(self) -> StatusSnapshot:
        remaining = 0.0
        if self.phase is Phase.SLEEPING and self._next_check_at is not None:
            remaining = max(0.0, self._next_check_at - self.clock())
        return StatusSnapshot(
            current_regime=self.backoff.regime,
            seconds_until_next_check=remaining,
            service_state=self.persistence.current,
            phase=self.phase,
            last_error=self.last_error,
            cycles=self.cycles,
        )

    def publish_status(self) -> None:
        snapshot = self.status()
        next_check_at = None
        if snapshot.phase is Phase.SLEEPING:
            next_check_at = int(self.wall_clock() + snapshot.seconds_until_next_check)
        payload = {
            "current_regime": snapshot.current_regime.value,
            "phase": snapshot.phase.value,
            "interval": self.backoff.interval,
            "next_check_at": next_check_at,
            "last_error": snapshot.last_error,
            "cycles": snapshot.cycles,
            "updated_at": int(self.wall_clock()),
        }
        try:
            write_status(self.status_path, payload)
        except OSError as exc:
            logger.warning("Could not write status file %s: %s", self.status_path, exc)

    def request_check(self, source: str = "manual") -> bool:
        return offer(self.signals, CheckRequest(source=source))

    def stop(self) -> None:
        if self.stop_event.is_set():
            return
        logger.info("Shutdown requested")
        self.stop_event.set()
        if self.bridge is not None:
            self.bridge.close()
        offer(self.signals, CheckRequest(source="shutdown"))
        if self.session is not None:
            self.session.close()

    def _record(self, portal_url: Optional[str] = None, login_succeeded: bool = False) -> None:
        try:
            self.persistence.update(portal_url=portal_url, login_succeeded=login_succeeded)
        except PersistenceError as exc:
            logger.warning("State kept in memory only this cycle: %s", exc)

    def _notify(self, title: str, body: str) -> None:
        try:
            self.notifier.notify(title, body)
        except Exception:
            logger.exception("Notification sink failed")

    def _login_with_retry(self, session: PortalSession, credentials: Credentials) -> bool:
        delay = self.initial_retry_delay
        for attempt in range(1, self.max_login_retries + 1):
            self.retry_attempt = attempt
            try:
                self.login_client.login(session.portal_url, session.magic_token, credentials)
                logger.info("Logged into captive portal on attempt %d", attempt)
                return True
            except (LoginError, NetworkError, ParseError) as exc:
                logger.warning(
                    "Login attempt %d/%d failed: %s (hint: %s)",
                    attempt,
                    self.max_login_retries,
                    exc,
                    getattr(exc, "hint", "") or "none",
                )
                self.last_error = f"login: {exc}"

            logger.info("Waiting %.0f seconds after failed attempt %d", delay, attempt)
            if self.wait(delay) or self.stop_event.is_set():
                raise Cancelled("shutdown requested during login backoff")
            delay *= 2
        logger.error("Login failed after %d attempts", self.max_login_retries)
        return False

    def _login(self, session: PortalSession) -> Outcome:
        self.phase = Phase.LOGGING_IN
        try:
            credentials = self.credentials.get()
        except CredentialError as exc:
            logger.error("Cannot log in to %s: %s", session.portal_url, exc)
            self.last_error = f"credentials: {exc}"
            self._record(portal_url=session.portal_url)
            return Outcome.PORTAL_DETECTED

        try:
            succeeded = self._login_with_retry(session, credentials)
        finally:
            self.retry_attempt = 0

        if succeeded:
            self.last_error = None
            self._notify("Auto Captive Portal", "Logged into captive portal successfully.")
            self._record(portal_url=session.portal_url, login_succeeded=True)
            return Outcome.LOGIN_SUCCEEDED

        self._record(portal_url=session.portal_url)
        return Outcome.PORTAL_DETECTED

    def _check(self) -> Outcome:
        try:
            result = self.detector.detect()
        except (NetworkError, ParseError) as exc:
            logger.warning("Portal check failed: %s", exc)
            self.last_error = f"check: {exc}"
            self._record()
            return Outcome.PORTAL_DETECTED

        if isinstance(result, Clear):
            logger.info("No captive portal detected")
            self.last_error = None
            self._record()
            if self.backoff.regime is Regime.LOGGED_IN:
                return Outcome.LOGIN_SUCCEEDED
            return Outcome.NO_PORTAL_OBSERVED

        logger.info("Captive portal detected at %s", result.location)
        session = parse_portal_session(result.html)
        if session is None:
            missing = "magic token" if extract_magic_value(result.html) is None else "portal URL"
            logger.warning("Portal page without %s, skipping login", missing)
            self.last_error = f"parse: portal page without {missing}"
            self._record(portal_url=result.location)
            return Outcome.PORTAL_DETECTED
        return self._login(session)

    def run_cycle(self, source: str = "manual") -> Outcome:
        """Run one detect/login cycle and move the cadence; returns the outcome."""
        if self.stop_event.is_set():
            raise Cancelled("shutdown requested")
        self.phase = Phase.CHECKING
        self.cycles += 1
        logger.info("Checking for captive portal (trigger: %s)", source)
        try:
            outcome = self._check()
        except Cancelled:
            raise
        except Exception as exc:
            logger.exception("Unexpected error during check cycle")
            self.last_error = f"internal: {exc}"
            outcome = Outcome.PORTAL_DETECTED
        self.backoff = next_state(self.backoff, outcome, self.min_delay, self.max_delay)
        self.phase = Phase.IDLE
        logger.info(
            "Outcome %s, regime %s, next poll in %.0f seconds",
            outcome.value,
            self.backoff.regime.value,
            self.backoff.interval,
        )
        return outcome

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                self.signals.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    def _sleep(self) -> Optional[CheckRequest]:
        self.phase = Phase.SLEEPING
        interval = self.backoff.interval
        self._next_check_at = self.clock() + interval
        self.publish_status()
        try:
            request = self.signals.get(timeout=interval)
        except queue.Empty:
            request = CheckRequest(source="timer")
        finally:
            self._next_check_at = None
        if self.stop_event.is_set():
            return None
        coalesced = self._drain()
        if coalesced:
            logger.debug("Coalesced %d pending check requests", coalesced)
        self.phase = Phase.IDLE
        return request

    def run(self) -> None:
        logger.info("Starting hybrid network watcher and polling loop")
        self.request_check("startup")
        try:
            while not self.stop_event.is_set():
                request = self._sleep()
                if request is None:
                    break
                try:
                    self.run_cycle(request.source)
                except Cancelled:
                    break
        finally:
            self.phase = Phase.SHUTDOWN
            self.publish_status()
            logger.info("Daemon shutdown complete")

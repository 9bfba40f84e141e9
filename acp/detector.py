import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import requests

from .errors import Cancelled, NetworkError, ParseError
from .scraper import extract_portal_url

logger = logging.getLogger(__name__)

CANCEL_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class PortalRedirect:
    location: str
    html: str = ""


CheckResult = Union[Clear, PortalRedirect]


def build_session(user_agent: str = "") -> requests.Session:
    session = requests.Session()
    if user_agent:
        session.headers.update({"User-Agent": user_agent})
    return session


def call_cancellable(
    fn: Callable[..., Any],
    cancel_event: Optional[threading.Event],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Run a blocking call on a worker thread and give up on it at shutdown.

    Without a cancel event the call runs inline. Once the event is set the
    caller gets Cancelled right away; the abandoned worker is a daemon thread
    and ends on its own request timeout.
    """
    if cancel_event is None:
        return fn(*args, **kwargs)
    if cancel_event.is_set():
        raise Cancelled("shutdown requested before network call")

    future: Future = Future()

    def worker() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=worker, name="acp-request", daemon=True).start()
    while True:
        try:
            return future.result(timeout=CANCEL_POLL_SECONDS)
        except FutureTimeout:
            if cancel_event.is_set():
                logger.info("Abandoning in-flight request on shutdown")
                raise Cancelled("shutdown requested during network call") from None


class PortalDetector:
    def __init__(
        self,
        session: requests.Session,
        check_url: str,
        timeout: float = 10.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.session = session
        self.check_url = check_url
        self.timeout = timeout
        self.cancel_event = cancel_event

    def detect(self) -> CheckResult:
        try:
            response = call_cancellable(
                self.session.get,
                self.cancel_event,
                self.check_url,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"connectivity check failed: {exc}") from exc

        if response.status_code == 204:
            logger.debug("Check %s returned 204", self.check_url)
            return Clear()

        if response.status_code == 200:
            html = response.text
            location = extract_portal_url(html)
            if location is None:
                raise ParseError(
                    f"check returned 200 without a recognizable redirect ({len(html)} bytes)"
                )
            logger.debug("Check redirected to %s", location)
            return PortalRedirect(location=location, html=html)

        raise NetworkError(f"unexpected check status {response.status_code}")

import logging
import threading
from typing import Optional
from urllib.parse import urljoin, urlparse

import requests

from .credentials import Credentials
from .detector import Clear, PortalDetector, call_cancellable
from .errors import NetworkError, PortalRejected, VerificationFailed
from .logging_config import mask_value
from .scraper import extract_error_hint

logger = logging.getLogger(__name__)

REJECTION_MARKERS = (
    "authentication failed",
    "firewall authentication failed",
    "invalid username or password",
    "login failed",
)


def portal_base_url(portal_url: str) -> str:
    parsed = urlparse(portal_url)
    return f"{parsed.scheme}://{parsed.netloc}"


def login_endpoint(portal_url: str, login_path: str = "/") -> str:
    return urljoin(portal_base_url(portal_url) + "/", login_path.lstrip("/"))


class LoginClient:
    def __init__(
        self,
        session: requests.Session,
        detector: PortalDetector,
        login_path: str = "/",
        logout_url: str = "",
        redirect_target: str = "",
        timeout: float = 10.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.session = session
        self.detector = detector
        self.login_path = login_path
        self.logout_url = logout_url
        self.redirect_target = redirect_target or detector.check_url
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._last_login_url = ""

    def login(self, portal_url: str, magic_token: str, credentials: Credentials) -> None:
        """Submit one login attempt and verify it with a fresh connectivity check."""
        action_url = login_endpoint(portal_url, self.login_path)
        data = {
            "4Tredir": self.redirect_target,
            "magic": magic_token,
            "username": credentials.username,
            "password": credentials.secret,
        }
        headers = {
            "Origin": portal_base_url(portal_url),
            "Referer": portal_url,
        }
        logger.debug(
            "Submitting login url=%s user=%s magic_len=%d",
            action_url,
            mask_value(credentials.username),
            len(magic_token),
        )
        try:
            response = call_cancellable(
                self.session.post,
                self.cancel_event,
                action_url,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"login request failed: {exc}") from exc
        self._last_login_url = action_url

        hint = extract_error_hint(response.text)
        if response.status_code >= 400:
            raise PortalRejected(
                f"portal answered login with status {response.status_code}", hint
            )
        lowered = response.text.lower()
        if any(marker in lowered for marker in REJECTION_MARKERS):
            raise PortalRejected("portal rejected the credentials", hint)

        result = self.detector.detect()
        if not isinstance(result, Clear):
            raise VerificationFailed(
                f"portal still intercepting after login (redirect to {result.location})"
            )
        logger.debug("Login verified by connectivity check")

    def resolve_logout_url(self) -> str:
        if self.logout_url:
            return self.logout_url
        if self._last_login_url:
            return urljoin(self._last_login_url, "/logout?")
        return ""

    def logout(self, credentials: Optional[Credentials] = None) -> bool:
        """Ask the portal to end the session.

        Returns False when no logout endpoint is known. Any HTTP answer counts
        as done, so logging out without an active session is not an error.
        """
        url = self.resolve_logout_url()
        if not url:
            logger.info("No logout endpoint configured or known")
            return False
        try:
            response = call_cancellable(
                self.session.get, self.cancel_event, url, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise NetworkError(f"logout request failed: {exc}") from exc
        logger.info(
            "Logout requested user=%s status=%s",
            mask_value(credentials.username) if credentials else "-",
            response.status_code,
        )
        return True

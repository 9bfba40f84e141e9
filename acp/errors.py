class AcpError(Exception):
    pass


class NetworkError(AcpError):
    """Timeout, connection failure, DNS failure or an unexpected status."""


class ParseError(AcpError):
    """Portal HTML did not have a recognizable shape."""


class CredentialError(AcpError):
    pass


class PersistenceError(AcpError):
    pass


class LoginError(AcpError):
    pass


class PortalRejected(LoginError):
    def __init__(self, message: str, hint: str = "") -> None:
        super().__init__(message)
        self.hint = hint


class VerificationFailed(LoginError):
    pass


class Cancelled(AcpError):
    """Raised when shutdown was requested before or during a network call."""

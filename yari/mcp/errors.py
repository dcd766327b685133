"""Broker error types and HTTP failure classification."""

from enum import Enum

from yari.errors import YariError


class ErrorKind(str, Enum):
    AUTH = "auth"              # Invalid/expired credentials or code
    RATE_LIMIT = "rate_limit"  # Rate limiting
    FORMAT = "format"          # Request or response format issues
    TIMEOUT = "timeout"        # Request timeout
    NETWORK = "network"        # Could not reach the server
    SERVER = "server"          # 5xx from the server
    UNKNOWN = "unknown"


def classify_http_error(status_code: int | None, message: str = "") -> ErrorKind:
    """Classify a failed HTTP exchange into a specific kind."""
    msg_lower = message.lower()

    if status_code in (401, 403) or "unauthorized" in msg_lower or "invalid_grant" in msg_lower:
        return ErrorKind.AUTH

    if status_code == 429 or "rate_limit" in msg_lower:
        return ErrorKind.RATE_LIMIT

    if status_code in (400, 422) or "invalid_request" in msg_lower:
        return ErrorKind.FORMAT

    if status_code == 408 or "timeout" in msg_lower or "timed out" in msg_lower:
        return ErrorKind.TIMEOUT

    if status_code is not None and status_code >= 500:
        return ErrorKind.SERVER

    if status_code is None:
        return ErrorKind.NETWORK

    return ErrorKind.UNKNOWN


class BrokerError(YariError):
    """Base class for external session broker errors."""

    def __init__(self, message: str, session_id: str | None = None, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.session_id = session_id
        self.kind = kind


class ExternalConnectionError(BrokerError):
    """The tool server or authorization server could not be reached or answered badly."""


class RemoteCallError(BrokerError):
    """The tool server answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, session_id: str | None = None):
        super().__init__(message, session_id=session_id, kind=ErrorKind.FORMAT)
        self.code = code


class AuthorizationError(BrokerError):
    """Authorization failed. Recoverable by re-initiating the handshake."""

    def __init__(self, message: str, session_id: str | None = None, kind: ErrorKind = ErrorKind.AUTH):
        super().__init__(message, session_id=session_id, kind=kind)


class NotConnectedError(AuthorizationError):
    """The session exists but is not connected."""


class SessionNotFoundError(AuthorizationError):
    """No session with this id, in memory or in durable storage."""


class UnauthorizedError(BrokerError):
    """The tool server answered 401: interactive authorization is required."""

    def __init__(self, message: str = "Authorization required", session_id: str | None = None):
        super().__init__(message, session_id=session_id, kind=ErrorKind.AUTH)

"""External tool-server sessions: OAuth handshake, live clients, durable state."""

from yari.mcp.broker import ExternalSessionBroker
from yari.mcp.errors import (
    AuthorizationError,
    BrokerError,
    ErrorKind,
    ExternalConnectionError,
    NotConnectedError,
    RemoteCallError,
    SessionNotFoundError,
    UnauthorizedError,
)
from yari.mcp.models import (
    AuthorizationOutcome,
    ConnectResult,
    Credentials,
    ExternalSession,
    SessionStatus,
    ToolDescriptor,
    ToolUsageRecord,
)
from yari.mcp.store import SessionStore

__all__ = [
    "AuthorizationError",
    "AuthorizationOutcome",
    "BrokerError",
    "ConnectResult",
    "Credentials",
    "ErrorKind",
    "ExternalConnectionError",
    "ExternalSession",
    "ExternalSessionBroker",
    "NotConnectedError",
    "RemoteCallError",
    "SessionNotFoundError",
    "SessionStatus",
    "SessionStore",
    "ToolDescriptor",
    "ToolUsageRecord",
    "UnauthorizedError",
]

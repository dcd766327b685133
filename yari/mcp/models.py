"""Broker data types."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Refresh access tokens 5 minutes before they actually expire
REFRESH_BUFFER_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionStatus(StrEnum):
    PENDING_AUTH = "pending_auth"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class OAuthTokens(BaseModel):
    """Access/refresh token pair. `expires_at` is epoch ms."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: int | None = None
    scope: str | None = None

    @classmethod
    def from_token_response(
        cls, data: dict[str, Any], issued_at_ms: int, previous: OAuthTokens | None = None
    ) -> OAuthTokens:
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            # Servers may omit the refresh token on refresh; keep the old one
            refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=issued_at_ms + int(expires_in) * 1000 if expires_in else None,
            scope=data.get("scope"),
        )

    def needs_refresh(self, at_ms: int) -> bool:
        return self.expires_at is not None and at_ms >= self.expires_at - REFRESH_BUFFER_MS


class Credentials(BaseModel):
    """Direct credentials for servers that accept an API key or fixed headers."""

    api_key: str | None = None
    auth_headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.api_key and not self.auth_headers

    def headers(self) -> dict[str, str]:
        headers = dict(self.auth_headers)
        if self.api_key and "Authorization" not in headers:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


class AuthServerMetadata(BaseModel):
    """Subset of RFC 8414 authorization server metadata."""

    model_config = ConfigDict(extra="ignore")

    issuer: str | None = None
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    code_challenge_methods_supported: list[str] = Field(default_factory=list)


class ClientInfo(BaseModel):
    """Dynamic client registration result."""

    model_config = ConfigDict(extra="ignore")

    client_id: str
    client_secret: str | None = None


class ExternalSession(BaseModel):
    """One user's connection to one tool server."""

    session_id: str
    user_id: str
    server_url: str
    callback_url: str
    status: SessionStatus = SessionStatus.PENDING_AUTH
    credentials: Credentials = Field(default_factory=Credentials)
    tokens: OAuthTokens | None = None
    auth_metadata: AuthServerMetadata | None = None
    client_info: ClientInfo | None = None
    code_verifier: str | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class ToolDescriptor(BaseModel):
    """A tool advertised by a tool server's `tools/list`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


class ToolUsageRecord(BaseModel):
    session_id: str
    user_id: str
    tool_name: str
    success: bool
    error: str | None = None
    timestamp: int = Field(default_factory=now_ms)


class ConnectResult(BaseModel):
    session_id: str
    connected: bool = False
    requires_auth: bool = False
    authorization_url: str | None = None


class AuthorizationOutcome(BaseModel):
    session_id: str | None = None
    success: bool
    error: str | None = None

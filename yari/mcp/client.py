"""Connected client for one external session."""

from __future__ import annotations

from typing import Any, Callable

import httpx
from loguru import logger

from yari.mcp.errors import AuthorizationError, NotConnectedError, UnauthorizedError
from yari.mcp.models import ExternalSession, OAuthTokens, ToolDescriptor, now_ms
from yari.mcp.oauth import OAuthClient
from yari.mcp.transport import JsonRpcTransport


class ExternalToolClient:
    """
    Tool-server client bound to one session's credentials.

    Holds the live transport. When a request is rejected with 401 and the
    session has a refresh token, the access token is refreshed once and the
    request retried. The refreshed tokens are exposed on `tokens`; the broker
    persists them.
    """

    def __init__(
        self,
        session: ExternalSession,
        http: httpx.AsyncClient,
        oauth: OAuthClient,
        client_name: str = "yari",
        clock: Callable[[], int] = now_ms,
    ):
        self.session_id = session.session_id
        self.tokens = session.tokens
        self._metadata = session.auth_metadata
        self._client_info = session.client_info
        self._oauth = oauth
        self._clock = clock
        self.connected = False

        self.transport = JsonRpcTransport(
            session.server_url, http, headers=session.credentials.headers(), client_name=client_name
        )
        if self.tokens:
            self.transport.set_bearer(self.tokens.access_token)

    @property
    def can_refresh(self) -> bool:
        return bool(self.tokens and self.tokens.refresh_token and self._metadata and self._client_info)

    async def connect(self) -> None:
        """Run the protocol handshake. Raises UnauthorizedError if authorization is required."""
        await self._request("initialize")
        self.connected = True

    async def list_tools(self) -> list[ToolDescriptor]:
        self._require_connected()
        tools: list[ToolDescriptor] = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = await self._request("tools/list", params)
            tools.extend(ToolDescriptor.model_validate(t) for t in result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self._require_connected()
        return await self._request("tools/call", {"name": tool_name, "arguments": arguments})

    async def close(self) -> None:
        self.connected = False
        await self.transport.close()

    def _require_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError("Not connected to server", session_id=self.session_id)

    async def _request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self.can_refresh and self.tokens.needs_refresh(self._clock()):
            await self._refresh()
        try:
            return await self._call(method, params)
        except UnauthorizedError:
            if not self.can_refresh:
                raise
            logger.info(f"Session {self.session_id}: access token rejected, refreshing")
            await self._refresh()
            return await self._call(method, params)

    async def _call(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        if method == "initialize":
            return await self.transport.initialize()
        return await self.transport.request(method, params)

    async def _refresh(self) -> None:
        try:
            self.tokens = await self._oauth.refresh(self._metadata, self._client_info, self.tokens)
        except AuthorizationError as e:
            raise UnauthorizedError(f"Token refresh rejected: {e}", session_id=self.session_id) from e
        self.transport.set_bearer(self.tokens.access_token)

"""JSON-RPC 2.0 over HTTP POST, the wire protocol of streamable-HTTP tool servers."""

from __future__ import annotations

import itertools
import json
from typing import Any

import httpx
from loguru import logger

from yari import __version__
from yari.mcp.errors import ExternalConnectionError, RemoteCallError, UnauthorizedError, classify_http_error

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"


def _parse_event_stream(text: str) -> list[dict[str, Any]]:
    """Collect the JSON payloads of `data:` lines from a text/event-stream body."""
    events = []
    data_lines: list[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line.strip() and data_lines:
            events.append(json.loads("\n".join(data_lines)))
            data_lines = []
    return events


class JsonRpcTransport:
    """
    One logical connection to a tool server.

    The server may assign a session id on `initialize`; it is echoed back on
    every later request. A 401 raises UnauthorizedError so the caller can
    refresh or start the authorization flow.
    """

    def __init__(
        self,
        server_url: str,
        http: httpx.AsyncClient,
        headers: dict[str, str] | None = None,
        client_name: str = "yari",
    ):
        self.server_url = server_url
        self.http = http
        self.headers = dict(headers or {})
        self.client_name = client_name
        self.remote_session_id: str | None = None
        self.server_info: dict[str, Any] = {}
        self._ids = itertools.count(1)

    def set_bearer(self, access_token: str) -> None:
        self.headers["Authorization"] = f"Bearer {access_token}"

    def _request_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
            **self.headers,
        }
        if self.remote_session_id:
            headers[SESSION_HEADER] = self.remote_session_id
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        try:
            resp = await self.http.post(self.server_url, json=payload, headers=self._request_headers())
        except httpx.HTTPError as e:
            raise ExternalConnectionError(
                f"Tool server unreachable at {self.server_url}: {e}",
                kind=classify_http_error(None, str(e)),
            ) from e

        if resp.status_code == 401:
            raise UnauthorizedError(f"Tool server at {self.server_url} requires authorization")
        if resp.status_code >= 400:
            raise ExternalConnectionError(
                f"Tool server error ({resp.status_code}): {resp.text[:200]}",
                kind=classify_http_error(resp.status_code, resp.text),
            )

        session_id = resp.headers.get(SESSION_HEADER)
        if session_id:
            self.remote_session_id = session_id
        return resp

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and return its `result` object."""
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
        resp = await self._post(payload)

        try:
            if resp.headers.get("content-type", "").startswith("text/event-stream"):
                messages = _parse_event_stream(resp.text)
            else:
                body = resp.json()
                messages = body if isinstance(body, list) else [body]
        except ValueError as e:
            raise ExternalConnectionError(f"Malformed response to {method}: {e}") from e

        for message in messages:
            if not isinstance(message, dict) or message.get("id") != request_id:
                continue
            if "error" in message:
                error = message["error"] or {}
                raise RemoteCallError(
                    f"{method} failed: {error.get('message', 'unknown error')}", code=error.get("code")
                )
            return message.get("result") or {}

        raise ExternalConnectionError(f"No response to {method} (request id {request_id})")

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            payload["params"] = params
        await self._post(payload)

    async def initialize(self) -> dict[str, Any]:
        """Protocol handshake. Raises UnauthorizedError when the server wants OAuth."""
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": __version__},
        })
        self.server_info = result.get("serverInfo", {})
        await self.notify("notifications/initialized")
        logger.debug(f"Initialized tool server {self.server_info.get('name', self.server_url)}")
        return result

    async def close(self) -> None:
        """End the server-side session, if the server assigned one."""
        if not self.remote_session_id:
            return
        try:
            await self.http.delete(self.server_url, headers=self._request_headers())
        except httpx.HTTPError as e:
            logger.debug(f"Session close request to {self.server_url} failed: {e}")
        self.remote_session_id = None

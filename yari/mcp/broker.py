"""
External session broker.

Owns the table of per-user connections to third-party tool servers:
runs the OAuth authorization-code handshake (or a direct API-key
connection), keeps live clients in memory, mirrors every session to
SQLite for recovery, and sweeps stale sessions.

Session lifecycle:
    pending_auth -> connected -> disconnected

All mutations of one session run under that session's lock and end with a
single durable upsert followed by a swap of the in-memory record, so a
reader never sees a half-updated session.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Mapping

import httpx
from loguru import logger

from yari.mcp.client import ExternalToolClient
from yari.mcp.errors import (
    AuthorizationError,
    BrokerError,
    ExternalConnectionError,
    NotConnectedError,
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
    now_ms,
)
from yari.mcp.oauth import OAuthClient, generate_pkce
from yari.mcp.store import SessionStore

DEFAULT_SESSION_TTL_MS = 24 * 60 * 60 * 1000


class ExternalSessionBroker:
    """Broker for authenticated tool-server sessions."""

    def __init__(
        self,
        store: SessionStore,
        http: httpx.AsyncClient | None = None,
        client_name: str = "yari",
        scope: str = "mcp:tools",
        session_ttl_ms: int = DEFAULT_SESSION_TTL_MS,
        sweep_interval_s: float = 3600.0,
        request_timeout: float = 30.0,
        clock: Callable[[], int] | None = None,
    ):
        self.store = store
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=request_timeout, follow_redirects=True)
        self.client_name = client_name
        self.oauth = OAuthClient(self.http, client_name=client_name, scope=scope)
        self.session_ttl_ms = session_ttl_ms
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock or now_ms

        self._sessions: dict[str, ExternalSession] = {}
        self._clients: dict[str, ExternalToolClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._sweeper: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: Any, http: httpx.AsyncClient | None = None) -> ExternalSessionBroker:
        """Build a broker from a `BrokerConfig` section."""
        return cls(
            SessionStore(config.db_path),
            http=http,
            client_name=config.client_name,
            scope=config.scope,
            session_ttl_ms=config.session_ttl_ms,
            sweep_interval_s=config.sweep_interval_s,
            request_timeout=config.request_timeout,
        )

    # -- internals -----------------------------------------------------

    @asynccontextmanager
    async def _lock(self, session_id: str):
        """Hold the per-session lock. The entry is dropped once no task holds or awaits it."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users.pop(session_id) - 1
            if users:
                self._lock_users[session_id] = users
            else:
                self._locks.pop(session_id, None)

    def _make_client(self, session: ExternalSession) -> ExternalToolClient:
        return ExternalToolClient(session, self.http, self.oauth, client_name=self.client_name, clock=self._clock)

    def _commit(self, session: ExternalSession) -> ExternalSession:
        """Persist then publish a new version of a session. Caller holds its lock."""
        session = session.model_copy(update={"updated_at": self._clock()})
        self.store.save(session)
        self._sessions[session.session_id] = session
        return session

    def _load(self, session_id: str) -> ExternalSession | None:
        """Memory first, durable storage as the recovery source."""
        session = self._sessions.get(session_id)
        if session is None:
            session = self.store.get(session_id)
            if session is not None:
                self._sessions[session_id] = session
        return session

    def _sync_tokens(self, session_id: str, client: ExternalToolClient) -> None:
        """Persist tokens a client refreshed on its own. Caller holds the lock."""
        session = self._sessions.get(session_id)
        if session is not None and client.tokens != session.tokens:
            self._commit(session.model_copy(update={"tokens": client.tokens}))
            logger.debug(f"Session {session_id}: persisted refreshed tokens")

    # -- handshake -----------------------------------------------------

    async def initiate_connection(
        self,
        user_id: str,
        server_url: str,
        callback_url: str,
        credentials: Credentials | dict[str, Any] | None = None,
    ) -> ConnectResult:
        """
        Start a connection to a tool server.

        With direct credentials the session is connected immediately or the
        call fails and nothing is kept. Otherwise, if the server asks for
        authorization, a pending session is stored and the authorization URL
        returned; the session id doubles as the OAuth `state`.

        Raises:
            ExternalConnectionError: The server or its authorization server is unreachable.
            AuthorizationError: The server rejected the supplied direct credentials.
        """
        creds = Credentials.model_validate(credentials or {})
        session = ExternalSession(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            server_url=server_url,
            callback_url=callback_url,
            credentials=creds,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        session_id = session.session_id
        client = self._make_client(session)

        try:
            await client.connect()
        except UnauthorizedError:
            await client.close()
            if not creds.is_empty:
                raise AuthorizationError(
                    f"{server_url} rejected the supplied credentials", session_id=session_id
                )
            return await self._begin_authorization(session)
        except BrokerError:
            await client.close()
            raise

        async with self._lock(session_id):
            self._commit(session.model_copy(update={"status": SessionStatus.CONNECTED}))
            self._clients[session_id] = client
        logger.info(f"Session {session_id}: connected to {server_url} without interactive auth")
        return ConnectResult(session_id=session_id, connected=True)

    async def _begin_authorization(self, session: ExternalSession) -> ConnectResult:
        metadata = await self.oauth.discover(session.server_url)
        client_info = await self.oauth.register(metadata, session.callback_url)
        verifier, challenge = generate_pkce()
        authorization_url = self.oauth.authorization_url(
            metadata, client_info, session.callback_url, state=session.session_id, code_challenge=challenge
        )

        async with self._lock(session.session_id):
            self._commit(session.model_copy(update={
                "status": SessionStatus.PENDING_AUTH,
                "auth_metadata": metadata,
                "client_info": client_info,
                "code_verifier": verifier,
            }))
        logger.info(f"Session {session.session_id}: authorization required for {session.server_url}")
        return ConnectResult(
            session_id=session.session_id, requires_auth=True, authorization_url=authorization_url
        )

    async def complete_authorization(self, session_id: str, code: str) -> AuthorizationOutcome:
        """
        Exchange an authorization code and connect.

        Unknown sessions and sessions not awaiting authorization fail without
        any change. A rejected code leaves the session in pending_auth.
        """
        async with self._lock(session_id):
            session = self._load(session_id)
            if session is None:
                return AuthorizationOutcome(session_id=session_id, success=False, error="Session not found")
            if session.status != SessionStatus.PENDING_AUTH:
                return AuthorizationOutcome(
                    session_id=session_id,
                    success=False,
                    error=f"Session is not awaiting authorization (status: {session.status.value})",
                )
            if not (session.auth_metadata and session.client_info and session.code_verifier):
                return AuthorizationOutcome(
                    session_id=session_id, success=False, error="Session has no pending handshake"
                )

            client = None
            try:
                tokens = await self.oauth.exchange_code(
                    session.auth_metadata, session.client_info, code, session.code_verifier, session.callback_url
                )
                candidate = session.model_copy(update={"tokens": tokens})
                client = self._make_client(candidate)
                await client.connect()
            except (BrokerError, httpx.HTTPError, ValueError) as e:
                logger.warning(f"Session {session_id}: authorization failed: {e}")
                if client is not None:
                    await client.close()
                return AuthorizationOutcome(session_id=session_id, success=False, error=str(e))

            self._commit(candidate.model_copy(update={
                "status": SessionStatus.CONNECTED,
                "tokens": client.tokens,
                "code_verifier": None,
            }))
            self._clients[session_id] = client

        logger.info(f"Session {session_id}: authorization complete")
        return AuthorizationOutcome(session_id=session_id, success=True)

    async def handle_callback(self, session_id: str | None, query: Mapping[str, str]) -> AuthorizationOutcome:
        """
        Handle the authorization server's redirect.

        `session_id` defaults to the `state` parameter. An `error` parameter
        ends the handshake and marks the session disconnected.
        """
        state = query.get("state")
        if session_id and state and state != session_id:
            return AuthorizationOutcome(session_id=session_id, success=False, error="State mismatch")
        session_id = session_id or state
        if not session_id:
            return AuthorizationOutcome(success=False, error="Missing state parameter")

        if query.get("error"):
            error = query.get("error_description") or query["error"]
            async with self._lock(session_id):
                session = self._load(session_id)
                if session is not None and session.status == SessionStatus.PENDING_AUTH:
                    self._commit(session.model_copy(update={
                        "status": SessionStatus.DISCONNECTED,
                        "code_verifier": None,
                    }))
            logger.warning(f"Session {session_id}: authorization denied: {error}")
            return AuthorizationOutcome(session_id=session_id, success=False, error=error)

        code = query.get("code")
        if not code:
            return AuthorizationOutcome(
                session_id=session_id, success=False, error="No code or error in callback"
            )
        return await self.complete_authorization(session_id, code)

    # -- tool access ---------------------------------------------------

    async def _require_client(self, session_id: str) -> ExternalToolClient:
        client = self._clients.get(session_id)
        if client is not None and client.connected:
            return client
        session = self._load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        if session.status != SessionStatus.CONNECTED:
            raise NotConnectedError(
                f"Session {session_id} is not connected (status: {session.status.value})", session_id=session_id
            )
        return await self.restore_session(session_id, session.user_id)

    async def list_tools(self, session_id: str) -> list[ToolDescriptor]:
        """Tools offered by a connected session. Raises NotConnectedError otherwise."""
        client = await self._require_client(session_id)
        tools = await client.list_tools()
        async with self._lock(session_id):
            self._sync_tokens(session_id, client)
        return tools

    async def call_tool(
        self,
        session_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Call a tool on a connected session. Every attempt is recorded in the
        usage log with its outcome.

        Returns:
            The raw `tools/call` result (`content`, `isError`, `structuredContent`).
        """
        session = self._sessions.get(session_id) or self.store.get(session_id)
        owner = user_id or (session.user_id if session else "")
        success, error = False, None
        try:
            client = await self._require_client(session_id)
            result = await client.call_tool(tool_name, arguments or {})
            success = not result.get("isError", False)
            if not success:
                error = _content_text(result) or "Tool reported an error"
            async with self._lock(session_id):
                self._sync_tokens(session_id, client)
            return result
        except BrokerError as e:
            error = str(e)
            raise
        finally:
            self.store.record_usage(ToolUsageRecord(
                session_id=session_id,
                user_id=owner,
                tool_name=tool_name,
                success=success,
                error=error,
                timestamp=self._clock(),
            ))
            logger.info(f"Tool call {tool_name} on session {session_id}: {'ok' if success else 'failed'}")

    # -- lifecycle -----------------------------------------------------

    async def restore_session(self, session_id: str, user_id: str) -> ExternalToolClient:
        """
        Rebuild a live client from the durable record, e.g. after a restart.

        If the server no longer accepts the stored credentials, the session
        is marked disconnected and NotConnectedError raised.
        """
        async with self._lock(session_id):
            client = self._clients.get(session_id)
            if client is not None and client.connected:
                return client

            session = self.store.get(session_id) or self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
            if session.user_id != user_id:
                raise AuthorizationError(f"Session {session_id} belongs to another user", session_id=session_id)
            if session.status != SessionStatus.CONNECTED:
                raise NotConnectedError(
                    f"Session {session_id} is not connected (status: {session.status.value})",
                    session_id=session_id,
                )

            self._sessions[session_id] = session
            client = self._make_client(session)
            try:
                await client.connect()
            except UnauthorizedError as e:
                self._commit(session.model_copy(update={"status": SessionStatus.DISCONNECTED}))
                raise NotConnectedError(
                    f"Session {session_id} needs re-authorization: {e}", session_id=session_id
                ) from e
            except ExternalConnectionError:
                await client.close()
                raise

            self._clients[session_id] = client
            self._sync_tokens(session_id, client)
        logger.info(f"Session {session_id}: restored")
        return client

    async def disconnect(self, session_id: str) -> None:
        """Close the session's transport and mark it disconnected. Idempotent."""
        async with self._lock(session_id):
            client = self._clients.pop(session_id, None)
            if client is not None:
                await client.close()
            session = self._load(session_id)
            if session is None:
                logger.debug(f"Disconnect of unknown session {session_id}")
                return
            if session.status != SessionStatus.DISCONNECTED:
                self._commit(session.model_copy(update={"status": SessionStatus.DISCONNECTED}))
                logger.info(f"Session {session_id}: disconnected")

    async def get_status(self, session_id: str) -> tuple[bool, ExternalSession | None]:
        """(is the client live in this process, stored session)."""
        session = self._load(session_id)
        client = self._clients.get(session_id)
        return bool(client and client.connected), session

    def list_sessions(self, user_id: str | None = None) -> list[ExternalSession]:
        return self.store.list_sessions(user_id=user_id)

    def get_usage(self, session_id: str | None = None, limit: int = 100) -> list[ToolUsageRecord]:
        return self.store.get_usage(session_id=session_id, limit=limit)

    async def sweep(self, max_age_ms: int | None = None) -> int:
        """
        Delete sessions not updated within `max_age_ms`, whatever their status,
        and prune usage records older than the same cutoff.

        Each candidate is re-checked under its lock, so a session touched
        while the sweep waited for the lock survives.
        """
        cutoff = self._clock() - (max_age_ms if max_age_ms is not None else self.session_ttl_ms)
        candidates = {sid for sid, s in self._sessions.items() if s.updated_at < cutoff}
        candidates.update(self.store.stale_session_ids(cutoff))

        removed = 0
        for session_id in candidates:
            async with self._lock(session_id):
                session = self._sessions.get(session_id)
                if session is not None and session.updated_at >= cutoff:
                    continue
                deleted = self.store.delete_if_older(session_id, cutoff)
                if session is None and not deleted:
                    continue
                client = self._clients.pop(session_id, None)
                if client is not None:
                    await client.close()
                self._sessions.pop(session_id, None)
                removed += 1

        pruned = self.store.delete_usage_older_than(cutoff)
        if removed or pruned:
            logger.info(f"Swept {removed} sessions and {pruned} usage records older than {cutoff}")
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.debug(f"Session sweeper started (every {self.sweep_interval_s}s)")

    async def stop(self) -> None:
        """Stop the sweeper, close live transports, release the HTTP client."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        for session_id in list(self._clients):
            client = self._clients.pop(session_id)
            await client.close()

        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> ExternalSessionBroker:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()


def _content_text(result: dict[str, Any]) -> str:
    """Join the text parts of a `tools/call` result."""
    return "\n".join(
        part.get("text", "") for part in result.get("content", []) if part.get("type") == "text"
    ).strip()

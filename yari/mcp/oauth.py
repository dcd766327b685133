"""OAuth 2.0 helpers for tool servers: discovery, registration, PKCE, token grants."""

from __future__ import annotations

import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from loguru import logger

from yari.mcp.errors import AuthorizationError, ErrorKind, ExternalConnectionError, classify_http_error
from yari.mcp.models import AuthServerMetadata, ClientInfo, OAuthTokens, now_ms

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"


def generate_pkce() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def parse_redirect_url(input_text: str) -> dict[str, str]:
    """
    Extract callback parameters from a full redirect URL if provided,
    otherwise treat the input as the raw authorization code.

    Returns a dict with any of `code`, `state`, `error`, `error_description`.
    """
    input_text = input_text.strip()
    if input_text.startswith("http"):
        params = parse_qs(urlparse(input_text).query)
        return {
            key: params[key][0]
            for key in ("code", "state", "error", "error_description")
            if params.get(key)
        }
    return {"code": input_text} if input_text else {}


def _origin(server_url: str) -> str:
    parsed = urlparse(server_url)
    return f"{parsed.scheme}://{parsed.netloc}"


class OAuthClient:
    """
    Runs the client side of the authorization-code flow against a tool
    server's authorization server.

    All requests go through the shared httpx client; transport failures
    surface as ExternalConnectionError and rejected grants as
    AuthorizationError.
    """

    def __init__(self, http: httpx.AsyncClient, client_name: str = "yari", scope: str = "mcp:tools"):
        self.http = http
        self.client_name = client_name
        self.scope = scope

    async def discover(self, server_url: str) -> AuthServerMetadata:
        """Fetch authorization server metadata, falling back to default endpoints."""
        origin = _origin(server_url)
        try:
            resp = await self.http.get(f"{origin}{WELL_KNOWN_PATH}")
        except httpx.HTTPError as e:
            raise ExternalConnectionError(
                f"Metadata discovery failed for {origin}: {e}", kind=classify_http_error(None, str(e))
            ) from e

        if resp.status_code == 200:
            try:
                return AuthServerMetadata.model_validate(resp.json())
            except ValueError as e:
                logger.warning(f"Ignoring malformed OAuth metadata from {origin}: {e}")

        logger.debug(f"No OAuth metadata at {origin}, using default endpoints")
        return AuthServerMetadata(
            issuer=origin,
            authorization_endpoint=f"{origin}/authorize",
            token_endpoint=f"{origin}/token",
            registration_endpoint=f"{origin}/register",
        )

    async def register(self, metadata: AuthServerMetadata, callback_url: str) -> ClientInfo:
        """Dynamic client registration (RFC 7591)."""
        if not metadata.registration_endpoint:
            raise ExternalConnectionError("Authorization server does not support dynamic client registration")

        client_metadata = {
            "client_name": self.client_name,
            "redirect_uris": [callback_url],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "client_secret_post",
            "scope": self.scope,
        }
        try:
            resp = await self.http.post(metadata.registration_endpoint, json=client_metadata)
        except httpx.HTTPError as e:
            raise ExternalConnectionError(
                f"Client registration failed: {e}", kind=classify_http_error(None, str(e))
            ) from e

        if resp.status_code >= 400:
            raise ExternalConnectionError(
                f"Client registration rejected ({resp.status_code}): {resp.text[:200]}",
                kind=classify_http_error(resp.status_code, resp.text),
            )
        try:
            info = ClientInfo.model_validate(resp.json())
        except ValueError as e:
            raise ExternalConnectionError(
                f"Malformed client registration response: {resp.text[:200]}", kind=ErrorKind.FORMAT
            ) from e
        logger.info(f"Registered OAuth client {info.client_id}")
        return info

    def authorization_url(
        self,
        metadata: AuthServerMetadata,
        client: ClientInfo,
        callback_url: str,
        state: str,
        code_challenge: str,
    ) -> str:
        """Build the URL the user is sent to."""
        params = {
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": callback_url,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "scope": self.scope,
        }
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

    async def exchange_code(
        self,
        metadata: AuthServerMetadata,
        client: ClientInfo,
        code: str,
        code_verifier: str,
        callback_url: str,
    ) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": callback_url,
            "client_id": client.client_id,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret

        issued_at = now_ms()
        result = await self._call_token_endpoint(metadata.token_endpoint, data)
        return _parse_tokens(result, issued_at)

    async def refresh(self, metadata: AuthServerMetadata, client: ClientInfo, tokens: OAuthTokens) -> OAuthTokens:
        """Refresh an access token. Raises AuthorizationError if there is no refresh token."""
        if not tokens.refresh_token:
            raise AuthorizationError("No refresh token available")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
            "client_id": client.client_id,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret

        issued_at = now_ms()
        result = await self._call_token_endpoint(metadata.token_endpoint, data)
        refreshed = _parse_tokens(result, issued_at, previous=tokens)
        logger.info("Refreshed OAuth token for tool server")
        return refreshed

    async def _call_token_endpoint(self, url: str, data: dict) -> dict:
        """Call an OAuth token endpoint."""
        try:
            resp = await self.http.post(
                url, data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise ExternalConnectionError(
                f"Token endpoint unreachable: {e}", kind=classify_http_error(None, str(e))
            ) from e

        if resp.status_code >= 400:
            detail = resp.text[:200]
            kind = classify_http_error(resp.status_code, detail)
            if resp.status_code < 500:
                raise AuthorizationError(f"Token request rejected ({resp.status_code}): {detail}", kind=kind)
            raise ExternalConnectionError(f"Token endpoint failed ({resp.status_code}): {detail}", kind=kind)

        try:
            payload = resp.json()
        except ValueError as e:
            raise ExternalConnectionError(
                f"Token endpoint returned non-JSON body: {resp.text[:200]}", kind=ErrorKind.FORMAT
            ) from e
        if not isinstance(payload, dict):
            raise ExternalConnectionError("Token endpoint returned a non-object body", kind=ErrorKind.FORMAT)
        if "access_token" not in payload:
            raise AuthorizationError(f"Token response without access_token: {payload.get('error', 'unknown')}")
        return payload


def _parse_tokens(payload: dict, issued_at: int, previous: OAuthTokens | None = None) -> OAuthTokens:
    try:
        return OAuthTokens.from_token_response(payload, issued_at, previous=previous)
    except (TypeError, ValueError) as e:
        raise ExternalConnectionError(f"Malformed token response: {e}", kind=ErrorKind.FORMAT) from e

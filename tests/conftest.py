"""Shared fixtures: a scripted model provider and an in-process tool server."""

import json
from urllib.parse import parse_qsl

import httpx
import pytest

from yari.mcp.broker import ExternalSessionBroker
from yari.mcp.store import SessionStore
from yari.providers.base import LLMProvider, LLMResponse, ToolCallRequest

BASE_URL = "https://tools.example.com"
SERVER_URL = f"{BASE_URL}/mcp"
CALLBACK_URL = "http://localhost:8765/callback"


class ScriptedProvider(LLMProvider):
    """Returns queued responses in order; repeats the last one when the queue runs dry."""

    def __init__(self, responses):
        super().__init__(api_key=None, api_base=None)
        self.responses = list(responses)
        self.calls = []

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": messages, "tools": tools, "model": model})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def get_default_model(self) -> str:
        return "test/model"


def tool_call(name, arguments=None, call_id=None):
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments or {})


def respond(*calls, content=None, usage=None):
    return LLMResponse(
        content=content,
        tool_calls=list(calls),
        finish_reason="tool_calls" if calls else "stop",
        usage=usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    )


class FakeToolServer:
    """
    Tool server plus authorization server behind httpx.MockTransport.

    Serves RFC 8414 metadata, dynamic registration, a token endpoint, and a
    JSON-RPC endpoint at /mcp with `echo` and `fail` tools.
    """

    def __init__(self, require_auth=True, api_key=None, has_metadata=True):
        self.require_auth = require_auth
        self.api_key = api_key
        self.has_metadata = has_metadata
        self.valid_codes = {"good-code"}
        self.access_tokens = set()
        self.refresh_tokens = set()
        self.requests = []
        self.rpc_methods = []
        self.token_requests = []
        self.down = False
        self._issued = 0
        self.tools = [
            {
                "name": "echo",
                "description": "Echo text back",
                "inputSchema": {
                    "type": "object",
                    "properties": {"text": {"type": "string"}, "times": {"type": "integer"}},
                    "required": ["text"],
                },
            },
            {"name": "fail", "description": "Always fails", "inputSchema": {"type": "object"}},
        ]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def revoke_access_tokens(self):
        self.access_tokens.clear()

    def _issue_tokens(self):
        self._issued += 1
        access, refresh = f"access-{self._issued}", f"refresh-{self._issued}"
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return {"access_token": access, "token_type": "Bearer", "expires_in": 3600, "refresh_token": refresh}

    def _authorized(self, header):
        if not self.require_auth:
            return True
        if not header or not header.startswith("Bearer "):
            return False
        token = header[len("Bearer "):]
        return token in self.access_tokens or (self.api_key is not None and token == self.api_key)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/.well-known/oauth-authorization-server":
            if not self.has_metadata:
                return httpx.Response(404)
            return httpx.Response(200, json={
                "issuer": BASE_URL,
                "authorization_endpoint": f"{BASE_URL}/oauth/authorize",
                "token_endpoint": f"{BASE_URL}/oauth/token",
                "registration_endpoint": f"{BASE_URL}/oauth/register",
                "code_challenge_methods_supported": ["S256"],
            })

        if path in ("/oauth/register", "/register"):
            body = json.loads(request.content)
            assert body["redirect_uris"]
            return httpx.Response(201, json={"client_id": "client-123", "client_secret": "s3cret"})

        if path in ("/oauth/token", "/token"):
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if form.get("grant_type") == "authorization_code":
                if form.get("code") not in self.valid_codes or not form.get("code_verifier"):
                    return httpx.Response(400, json={"error": "invalid_grant"})
                self.valid_codes.discard(form["code"])
                return httpx.Response(200, json=self._issue_tokens())
            if form.get("grant_type") == "refresh_token":
                if form.get("refresh_token") not in self.refresh_tokens:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                self.refresh_tokens.discard(form["refresh_token"])
                return httpx.Response(200, json=self._issue_tokens())
            return httpx.Response(400, json={"error": "unsupported_grant_type"})

        if path == "/mcp":
            if request.method == "DELETE":
                return httpx.Response(200)
            if not self._authorized(request.headers.get("authorization")):
                return httpx.Response(401, json={"error": "unauthorized"})
            body = json.loads(request.content)
            self.rpc_methods.append(body["method"])
            if "id" not in body:
                return httpx.Response(202)
            return self._rpc(body)

        return httpx.Response(404)

    def _rpc(self, body):
        method, params, request_id = body["method"], body.get("params") or {}, body["id"]
        if method == "initialize":
            result = {"protocolVersion": "2025-03-26", "capabilities": {}, "serverInfo": {"name": "fake"}}
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": request_id, "result": result},
                headers={"Mcp-Session-Id": "remote-1"},
            )
        if method == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": {"tools": self.tools}})
        if method == "tools/call":
            name, args = params.get("name"), params.get("arguments") or {}
            if name == "echo":
                text = args["text"] * int(args.get("times", 1))
                result = {"content": [{"type": "text", "text": text}], "structuredContent": {"echo": text}}
            elif name == "fail":
                result = {"content": [{"type": "text", "text": "boom"}], "isError": True}
            else:
                return httpx.Response(200, json={
                    "jsonrpc": "2.0", "id": request_id,
                    "error": {"code": -32602, "message": f"Unknown tool: {name}"},
                })
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": result})
        return httpx.Response(200, json={
            "jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"},
        })


@pytest.fixture
def tool_server():
    return FakeToolServer()


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / "sessions.db")


@pytest.fixture
def make_broker(session_store):
    def _make(server, store=None, **kwargs):
        return ExternalSessionBroker(store or session_store, http=server.http_client(), **kwargs)
    return _make


@pytest.fixture
def broker(make_broker, tool_server):
    return make_broker(tool_server)

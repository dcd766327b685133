import asyncio

from aiohttp import web
from loguru import logger

from yari.mcp.broker import ExternalSessionBroker
from yari.mcp.models import AuthorizationOutcome

SUCCESS_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorization Successful</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            text-align: center;
            padding: 50px;
            background: #f5f5f5;
        }
        .success {
            background: white;
            padding: 40px;
            border-radius: 8px;
            box-shadow: 0 2px 4px rgba(0,0,0,0.1);
            max-width: 500px;
            margin: 0 auto;
        }
        h1 { color: #22c55e; }
    </style>
</head>
<body>
    <div class="success">
        <h1>&#10003; Tool server connected</h1>
        <p>You can close this window and return to the terminal.</p>
    </div>
</body>
</html>
"""


class OAuthCallbackServer:
    """Local HTTP server that receives authorization redirects and hands them to the broker."""

    def __init__(self, broker: ExternalSessionBroker, host: str = "localhost", port: int = 8765,
                 path: str = "/callback"):
        self.broker = broker
        self.host = host
        self.port = port
        self.path = path
        self.app = web.Application()
        self.app.router.add_get(path, self.handle_callback)
        self._runner: web.AppRunner | None = None
        self._waiters: dict[str, asyncio.Future] = {}

    @property
    def callback_url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    async def handle_callback(self, request: web.Request) -> web.Response:
        """Handle the redirect: `state` names the session, then `code` or `error`."""
        state = request.query.get("state")
        if not state:
            return web.Response(text="Missing state parameter", status=400)

        outcome = await self.broker.handle_callback(state, dict(request.query))
        waiter = self._waiters.pop(state, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(outcome)

        if not outcome.success:
            return web.Response(text=f"Authorization failed: {outcome.error}", status=400)
        return web.Response(text=SUCCESS_HTML, content_type="text/html")

    async def start(self) -> str:
        """Start listening; returns the callback URL actually bound."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        # Try to bind to the port, with a fallback if busy
        max_retries = 5
        current_port = self.port
        for i in range(max_retries):
            try:
                site = web.TCPSite(self._runner, self.host, current_port)
                await site.start()
                self.port = current_port
                break
            except OSError:
                if i == max_retries - 1:
                    await self._runner.cleanup()
                    raise
                current_port += 1

        logger.info(f"Waiting for OAuth callbacks on {self.callback_url}")
        return self.callback_url

    async def wait_for(self, session_id: str, timeout: float = 300) -> AuthorizationOutcome:
        """Wait until the callback for `session_id` has been handled."""
        waiter = self._waiters.setdefault(session_id, asyncio.get_running_loop().create_future())
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            self._waiters.pop(session_id, None)
            raise TimeoutError(f"OAuth callback timed out after {timeout} seconds")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

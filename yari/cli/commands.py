"""CLI commands for yari."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from yari import __logo__, __version__
from yari.config.schema import Config

app = typer.Typer(
    name="yari",
    help=f"{__logo__} yari - agentic step loop with external tool sessions",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} yari v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """yari - agentic step loop with external tool sessions."""
    pass


def _load(logs: bool) -> Config:
    from yari.config.loader import load_config
    from yari.core.logger import configure_logger

    config = load_config()
    configure_logger(config, console=logs)
    return config


def _make_provider(config: Config, model: str):
    """Create LLMProvider from config. Exits if no API key found."""
    from yari.providers.litellm_provider import LiteLLMProvider

    if not config.providers.api_key:
        console.print("[red]Error: No API key configured.[/red]")
        console.print("Set one in ~/.yari/config.json under providers or YARI_PROVIDERS__API_KEY")
        raise typer.Exit(1)

    return LiteLLMProvider(
        api_key=config.providers.api_key,
        api_base=config.providers.api_base,
        default_model=model,
        extra_headers=config.providers.extra_headers,
        fallbacks=config.providers.fallbacks,
    )


def _build_registry(config: Config):
    from yari.agent.tools.final_answer import FinalAnswerTool
    from yari.agent.tools.image_gen import ImageGenTool
    from yari.agent.tools.planning import CreatePlanTool
    from yari.agent.tools.registry import ToolRegistry
    from yari.agent.tools.web_search import WebSearchTool

    registry = ToolRegistry(timeout=config.agent.tool_timeout)
    registry.register(WebSearchTool(
        api_key=config.tools.tavily_api_key or None,
        max_results=config.tools.search_max_results,
    ))
    registry.register(ImageGenTool(api_key=config.tools.openai_api_key or None))
    registry.register(CreatePlanTool())
    registry.register(FinalAnswerTool())
    return registry


def _make_broker(config: Config):
    from yari.mcp.broker import ExternalSessionBroker

    return ExternalSessionBroker.from_config(config.broker)


@app.command()
def run(
    prompt: str = typer.Argument(..., help="What the agent should do"),
    max_steps: int = typer.Option(None, "--max-steps", "-n", help="Step budget (default from config)"),
    model: str = typer.Option(None, "--model", "-m", help="Model for the run"),
    transcript: Path = typer.Option(None, "--transcript", "-t", help="Write a JSONL transcript here"),
    session: list[str] = typer.Option(None, "--session", "-s", help="Connected tool-server session to expose"),
    user: str = typer.Option("cli", "--user", "-u", help="User id owning the sessions"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """Run the agent on a single prompt."""
    from yari.agent.context import Conversation
    from yari.agent.hooks import HookManager, JsonlTranscriptSink, LoggingHookSink
    from yari.agent.loop import StepLoop
    from yari.agent.models import TerminationReason
    from yari.agent.prepare import PhasedConfigurator
    from yari.agent.stop import StopPolicy
    from yari.agent.tools.external import register_session_tools

    config = _load(logs)
    agent_cfg = config.agent
    model = model or agent_cfg.model
    provider = _make_provider(config, model)
    registry = _build_registry(config)

    hooks = HookManager(LoggingHookSink())
    if transcript:
        hooks.add_sink(JsonlTranscriptSink(transcript, metadata={"prompt": prompt, "model": model}))

    async def run_once():
        broker = _make_broker(config) if session else None
        try:
            for index, session_id in enumerate(session or []):
                await register_session_tools(registry, broker, session_id, prefix=f"ext{index}", user_id=user)

            loop = StepLoop(
                provider,
                model=model,
                max_tokens=agent_cfg.max_tokens,
                temperature=agent_cfg.temperature,
                model_timeout=agent_cfg.model_timeout,
                tool_timeout=agent_cfg.tool_timeout,
            )
            configurator = PhasedConfigurator(
                registry.tool_names,
                terminal_tool=agent_cfg.terminal_tool,
                wrapup_step=agent_cfg.wrapup_step,
                wrapup_model=agent_cfg.wrapup_model,
                max_messages=agent_cfg.context_max_messages,
                keep_recent=agent_cfg.context_keep_recent,
            )
            conversation = Conversation()
            conversation.add_user(prompt)
            with console.status("[dim]yari is working...[/dim]", spinner="dots"):
                return await loop.run(
                    conversation,
                    registry,
                    stop_policy=StopPolicy.with_terminal_tool(
                        agent_cfg.terminal_tool, max_steps=max_steps or agent_cfg.max_steps
                    ),
                    configurator=configurator,
                    hooks=hooks,
                )
        finally:
            if broker:
                await broker.stop()

    result = asyncio.run(run_once())

    console.print(Panel(Markdown(result.text or "_(no answer)_"), title=f"{__logo__} yari"))
    style = "green" if result.reason == TerminationReason.TERMINAL_TOOL else "yellow"
    console.print(
        f"[{style}]{result.reason.value}[/{style}] after {len(result.steps)} steps, "
        f"{result.usage.total_tokens} tokens, tools: {', '.join(result.tools_used) or 'none'}"
    )
    if isinstance(result.final_answer, dict):
        for source in result.final_answer.get("sources") or []:
            console.print(f"  [dim]- {source}[/dim]")
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")
        raise typer.Exit(1)


# ============================================================================
# External tool-server sessions
# ============================================================================

mcp_app = typer.Typer(help="Manage external tool-server sessions")
app.add_typer(mcp_app, name="mcp")


@mcp_app.command("connect")
def mcp_connect(
    server_url: str = typer.Argument(..., help="Tool server URL"),
    user: str = typer.Option("cli", "--user", "-u", help="User id owning the session"),
    callback: str = typer.Option(None, "--callback", "-c", help="OAuth callback URL"),
    api_key: str = typer.Option(None, "--api-key", help="Connect with an API key instead of OAuth"),
    wait: bool = typer.Option(False, "--wait/--no-wait", help="Run a local callback server and wait"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """Connect to a tool server."""
    from yari.mcp.callback import OAuthCallbackServer
    from yari.mcp.errors import BrokerError

    config = _load(logs)

    async def connect():
        async with _make_broker(config) as broker:
            server = None
            callback_url = callback
            if wait and not callback_url:
                server = OAuthCallbackServer(broker, host=config.broker.callback_host, port=config.broker.callback_port)
                callback_url = await server.start()
            callback_url = callback_url or (
                f"http://{config.broker.callback_host}:{config.broker.callback_port}/callback"
            )
            try:
                credentials = {"api_key": api_key} if api_key else None
                result = await broker.initiate_connection(user, server_url, callback_url, credentials)
                if result.connected:
                    console.print(f"[green]✓ Connected[/green] session [cyan]{result.session_id}[/cyan]")
                    return
                console.print("\n[bold]Open this URL in your browser to authorize:[/bold]")
                console.print(f"[cyan]{result.authorization_url}[/cyan]\n")
                console.print(f"Session: [cyan]{result.session_id}[/cyan]")
                if server is None:
                    console.print(f"Then run: yari mcp complete {result.session_id} <redirect-url-or-code>")
                    return
                outcome = await server.wait_for(result.session_id)
                if outcome.success:
                    console.print("[green]✓ Authorization complete[/green]")
                else:
                    console.print(f"[red]Authorization failed: {outcome.error}[/red]")
            finally:
                if server:
                    await server.stop()

    try:
        asyncio.run(connect())
    except (BrokerError, TimeoutError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@mcp_app.command("complete")
def mcp_complete(
    session_id: str = typer.Argument(..., help="Session id from `yari mcp connect`"),
    redirect: str = typer.Argument(..., help="Redirect URL or raw authorization code"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """Finish an OAuth handshake with the redirect URL or code."""
    from yari.mcp.oauth import parse_redirect_url

    config = _load(logs)

    async def complete():
        async with _make_broker(config) as broker:
            return await broker.handle_callback(session_id, parse_redirect_url(redirect))

    outcome = asyncio.run(complete())
    if not outcome.success:
        console.print(f"[red]Authorization failed: {outcome.error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Session {session_id} connected[/green]")


@mcp_app.command("tools")
def mcp_tools(
    session_id: str = typer.Argument(..., help="Session id"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """List the tools a connected session offers."""
    from yari.mcp.errors import BrokerError

    config = _load(logs)

    async def list_tools():
        async with _make_broker(config) as broker:
            return await broker.list_tools(session_id)

    try:
        tools = asyncio.run(list_tools())
    except BrokerError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Tools for {session_id}")
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="green")
    for tool in tools:
        table.add_row(tool.name, tool.description)
    console.print(table)


@mcp_app.command("list")
def mcp_list(
    user: str = typer.Option(None, "--user", "-u", help="Only this user's sessions"),
):
    """List stored sessions."""
    config = _load(False)

    async def list_sessions():
        async with _make_broker(config) as broker:
            return broker.list_sessions(user_id=user)

    table = Table(title="Tool-server sessions")
    table.add_column("Session", style="cyan")
    table.add_column("User")
    table.add_column("Server")
    table.add_column("Status", style="yellow")
    for s in asyncio.run(list_sessions()):
        table.add_row(s.session_id, s.user_id, s.server_url, s.status.value)
    console.print(table)


@mcp_app.command("disconnect")
def mcp_disconnect(
    session_id: str = typer.Argument(..., help="Session id"),
):
    """Disconnect a session."""
    config = _load(False)

    async def disconnect():
        async with _make_broker(config) as broker:
            await broker.disconnect(session_id)

    asyncio.run(disconnect())
    console.print(f"[green]✓ Session {session_id} disconnected[/green]")


@mcp_app.command("sweep")
def mcp_sweep(
    max_age_hours: float = typer.Option(None, "--max-age-hours", help="Age threshold (default from config)"),
):
    """Delete sessions not updated within the age threshold."""
    config = _load(False)
    max_age_ms = int(max_age_hours * 3600 * 1000) if max_age_hours is not None else None

    async def sweep():
        async with _make_broker(config) as broker:
            return await broker.sweep(max_age_ms)

    removed = asyncio.run(sweep())
    console.print(f"Removed {removed} sessions")


if __name__ == "__main__":
    app()

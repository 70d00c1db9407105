"""MaaS CLI with Rich output.

Provides commands for:
- Authentication (password login, vendor keys, status, logout)
- Config inspection and service discovery
- MCP connections and tool calls

Usage:
    maas auth vendor-key pk_xxx.sk_xxx   # Store a vendor key
    maas auth status                     # Show credential state
    maas config discover                 # Re-run service discovery
    maas mcp connect --mode remote       # Connect over REST + SSE
    maas mcp call memory_search_memories --args '{"query": "auth"}'
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from maas_cli import __version__
from maas_cli.context import ClientContext
from maas_cli.errors import MaasError, ValidationError
from maas_cli.log_config import mask_secret

app = typer.Typer(
    name="maas",
    help="MaaS CLI - memory service client",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
auth_app = typer.Typer(help="Authentication", no_args_is_help=True)
config_app = typer.Typer(help="Persisted configuration", no_args_is_help=True)
mcp_app = typer.Typer(help="MCP connections and tools", no_args_is_help=True)
app.add_typer(auth_app, name="auth")
app.add_typer(config_app, name="config")
app.add_typer(mcp_app, name="mcp")

console = Console()

T = TypeVar("T")


def _run(func: Callable[[ClientContext], Awaitable[T]]) -> T:
    """Build a context, run `func` in it and render MaasErrors."""

    async def runner() -> T:
        ctx = await ClientContext.create()
        return await func(ctx)

    try:
        return asyncio.run(runner())
    except MaasError as e:
        console.print(e.describe(), style="red", markup=False)
        raise typer.Exit(1)


@app.command()
def version():
    """Show the CLI version."""
    console.print(f"maas-cli {__version__}")


def _yes_no(value: bool) -> str:
    return "[green]Yes[/green]" if value else "[red]No[/red]"


# ═══════════════════════════════════════════════════════════════════════════════
# AUTH
# ═══════════════════════════════════════════════════════════════════════════════


@auth_app.command("login")
def auth_login(
    email: str = typer.Option(..., "--email", "-e", prompt=True, help="Account email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Account password"),
):
    """Log in with email and password."""

    async def login(ctx: ClientContext) -> dict:
        return await ctx.auth.login(email, password)

    body = _run(login)
    user = body.get("user") or {}
    console.print(f"[green]✓[/green] Logged in as {user.get('email', email)}")


@auth_app.command("vendor-key")
def auth_vendor_key(key: str = typer.Argument(..., help="Vendor key (pk_xxx.sk_xxx)")):
    """Validate a vendor key with the server and store it encrypted."""

    async def store(ctx: ClientContext) -> None:
        await ctx.auth.set_vendor_key(key)

    _run(store)
    console.print(f"[green]✓[/green] Vendor key {mask_secret(key)} stored")


@auth_app.command("status")
def auth_status():
    """Show the current credential and its validation state."""

    async def status(ctx: ClientContext) -> dict[str, Any]:
        credential = await ctx.auth.resolve_credential()
        return {
            "method": credential.auth_method if credential else None,
            "authenticated": await ctx.auth.is_authenticated() if credential else False,
            "user": (ctx.store.doc.user or {}).get("email"),
            "last_validated": ctx.store.doc.last_validated,
            "failures": ctx.auth.failure_count(),
        }

    info = _run(status)
    table = Table(title="Authentication", box=box.ROUNDED)
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Method", info["method"] or "[dim]none[/dim]")
    table.add_row("Authenticated", _yes_no(info["authenticated"]))
    table.add_row("User", info["user"] or "-")
    table.add_row("Last validated", info["last_validated"] or "-")
    table.add_row("Recent failures", str(info["failures"]))
    console.print(table)
    if info["method"] is None:
        console.print("[dim]Run: maas auth login  (or maas auth vendor-key <key>)[/dim]")


@auth_app.command("logout")
def auth_logout():
    """Forget all stored credentials."""

    async def logout(ctx: ClientContext) -> None:
        await ctx.auth.logout()

    _run(logout)
    console.print("[green]✓[/green] Logged out")


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG
# ═══════════════════════════════════════════════════════════════════════════════

SECRET_KEYS = {"token", "refreshToken", "vendorKey"}


@config_app.command("get")
def config_get(key: str = typer.Argument(..., help="Config key, e.g. mcpConnectionMode")):
    """Print one config value."""

    async def get(ctx: ClientContext) -> Any:
        return ctx.store.get(key)

    value = _run(get)
    if value is None:
        console.print(f"[yellow]{key} is not set[/yellow]")
        raise typer.Exit(1)
    if key in SECRET_KEYS:
        value = mask_secret(value if isinstance(value, str) else json.dumps(value))
    console.print(value if isinstance(value, str) else json.dumps(value, indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key"),
    value: str = typer.Argument(..., help="Value (JSON is parsed when possible)"),
):
    """Set and persist one config value."""
    if key in SECRET_KEYS:
        console.print(f"[red]Use 'maas auth' commands to change {key}[/red]")
        raise typer.Exit(1)
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value

    async def set_value(ctx: ClientContext) -> None:
        await ctx.store.set_and_save(key, parsed)

    _run(set_value)
    console.print(f"[green]✓[/green] {key} updated")


@config_app.command("path")
def config_path():
    """Show where the config document lives."""

    async def path(ctx: ClientContext) -> str:
        return str(ctx.store.config_path)

    console.print(_run(path))


@config_app.command("discover")
def config_discover(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log each discovery URL")):
    """Re-run service discovery and show the endpoints in use."""

    async def discover(ctx: ClientContext):
        endpoints = await ctx.discovery.discover(verbose=verbose)
        return endpoints, list(ctx.events)

    endpoints, events = _run(discover)
    table = Table(title="Service Endpoints", box=box.ROUNDED)
    table.add_column("Endpoint", style="cyan")
    table.add_column("URL")
    for name, url in endpoints.model_dump().items():
        table.add_row(name, url)
    console.print(table)
    for event in events:
        if event.get("event") == "discovery_fallback":
            console.print(f"[yellow]Discovery failed, using {event['source']} endpoints[/yellow]")


# ═══════════════════════════════════════════════════════════════════════════════
# MCP
# ═══════════════════════════════════════════════════════════════════════════════


def _connect_options(mode: Optional[str], url: Optional[str], server_path: Optional[str]) -> dict[str, Any]:
    return {"mode": mode, "url": url, "server_path": server_path}


async def _with_connection(ctx: ClientContext, options: dict[str, Any], func):
    connector = ctx.connector()
    if not await connector.connect(**options):
        raise typer.Exit(1)
    api = ctx.api_client()
    try:
        return await func(connector, ctx.bridge(connector, api))
    finally:
        await connector.disconnect()
        await api.close()


def _status_table(status: dict[str, Any]) -> Table:
    table = Table(title="MCP Connection", box=box.ROUNDED)
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Connected", _yes_no(status["connected"]))
    table.add_row("Mode", status["mode"] or "-")
    table.add_row("Server", status["server"] or "-")
    table.add_row("State", status["state"])
    table.add_row("Failures", str(status["failure_count"]))
    table.add_row("Last health check", status["last_health_check"] or "-")
    return table


MODE_HELP = "Transport: local, remote or websocket"


@mcp_app.command("connect")
def mcp_connect(
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help=MODE_HELP),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Server URL override"),
    server_path: Optional[str] = typer.Option(None, "--server-path", help="Local server executable"),
):
    """Connect, verify the connection and remember the mode as default."""

    async def connect(ctx: ClientContext) -> dict[str, Any]:
        async def probe(connector, bridge):
            await connector.health_check()
            return connector.get_connection_status()

        return await _with_connection(ctx, _connect_options(mode, url, server_path), probe)

    status = _run(connect)
    console.print(_status_table(status))
    console.print(f"[green]✓[/green] {status['mode']} mode saved as default")


@mcp_app.command("status")
def mcp_status():
    """Show the saved connection preference."""

    async def status(ctx: ClientContext) -> dict[str, Any]:
        doc = ctx.store.doc
        return {
            "mode": doc.mcp_connection_mode or "websocket (default)",
            "websocket": doc.mcp_websocket_url,
            "remote": doc.mcp_server_url,
            "local": doc.mcp_server_path or ctx.settings.mcp_server_path,
        }

    info = _run(status)
    table = Table(title="MCP Preferences", box=box.ROUNDED)
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Mode", info["mode"])
    table.add_row("WebSocket URL", info["websocket"] or "-")
    table.add_row("Remote URL", info["remote"] or "-")
    table.add_row("Local server", info["local"] or "-")
    console.print(table)


@mcp_app.command("tools")
def mcp_tools(
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help=MODE_HELP),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Server URL override"),
    server_path: Optional[str] = typer.Option(None, "--server-path", help="Local server executable"),
):
    """List the tools the server offers."""

    async def tools(ctx: ClientContext) -> list[dict[str, Any]]:
        async def fetch(connector, bridge):
            return await bridge.list_tools()

        return await _with_connection(ctx, _connect_options(mode, url, server_path), fetch)

    table = Table(title="MCP Tools", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="dim")
    for tool in _run(tools):
        table.add_row(tool["name"], tool.get("description") or "")
    console.print(table)


@mcp_app.command("call")
def mcp_call(
    name: str = typer.Argument(..., help="Tool name"),
    args: str = typer.Option("{}", "--args", "-a", help="Tool arguments as a JSON object"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help=MODE_HELP),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Server URL override"),
    server_path: Optional[str] = typer.Option(None, "--server-path", help="Local server executable"),
):
    """Call one tool and print its JSON result."""
    try:
        arguments = json.loads(args)
    except json.JSONDecodeError as e:
        console.print(ValidationError(f"--args is not valid JSON: {e}").describe(), style="red", markup=False)
        raise typer.Exit(1)
    if not isinstance(arguments, dict):
        console.print("[red]ValidationError: --args must be a JSON object[/red]")
        raise typer.Exit(1)

    async def call(ctx: ClientContext):
        async def invoke(connector, bridge):
            return await bridge.call_tool(name, arguments)

        return await _with_connection(ctx, _connect_options(mode, url, server_path), invoke)

    result = _run(call)
    if not result.ok:
        console.print(f"ToolCallError ({result.code}): {result.error}", style="red", markup=False)
        raise typer.Exit(1)
    console.print_json(json.dumps(result.data, default=str))


def main():
    """Entry point for CLI."""
    app()

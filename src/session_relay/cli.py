"""Typer CLI interface for Session Relay."""

import asyncio
import os
import signal
import sys
from pathlib import Path

import httpx
import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel

app = typer.Typer(
    name="session-relay",
    help="Session Relay - drive AI coding-agent sessions from the browser",
    add_completion=False,
)
console = Console()


@app.callback()
def main() -> None:
    """Session Relay command line."""


async def check_service_running(host: str, port: int) -> bool:
    """Check if service is already running on port."""
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"http://{host}:{port}/healthz", timeout=2.0)
            return resp.status_code == 200
    except httpx.HTTPError:
        return False


@app.command()
def serve(
    host: str = typer.Option("localhost", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", help="HTTP/WebSocket port"),
    cwd: str = typer.Option(
        ".", "--cwd", help="Default working directory for new sessions"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    reload: bool = typer.Option(
        False, "--reload", help="Enable auto-reload (dev mode)"
    ),
    allow_bypass: bool = typer.Option(
        False,
        "--allow-bypass",
        help="Allow sessions to run in bypassPermissions mode",
    ),
):
    """Start the Session Relay server."""
    cwd_path = Path(cwd).expanduser().resolve()
    if not cwd_path.is_dir():
        console.print(f"[red]Error:[/red] Working directory not found: {cwd_path}")
        raise typer.Exit(1)

    # Set environment variables BEFORE the app factory reads settings
    os.environ["DEFAULT_CWD"] = str(cwd_path)
    os.environ["DEBUG"] = "true" if debug else "false"
    if allow_bypass:
        os.environ["ALLOW_BYPASS_PERMISSIONS"] = "true"

    from .config import Settings

    settings = Settings()
    if not settings.API_PASSWORD:
        console.print(
            "[red]Error:[/red] API_PASSWORD is not set. "
            "Export it or add it to .env.local before starting the server."
        )
        raise typer.Exit(1)

    # Check if already running
    if asyncio.run(check_service_running(host, port)):
        console.print(f"[red]Error:[/red] Service already running on port {port}")
        raise typer.Exit(1)

    def signal_handler(sig, frame):
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    providers = settings.DEFAULT_PROVIDER + (" (+echo)" if settings.ENABLE_ECHO_PROVIDER else "")
    console.print(
        Panel.fit(
            f"[bold]Session Relay[/bold]\n\n"
            f"📁 Working directory: {cwd_path}\n"
            f"🤖 Provider: {providers}\n"
            f"🔒 Default permission mode: {settings.DEFAULT_PERMISSION_MODE}"
            f"{' (bypass allowed)' if settings.ALLOW_BYPASS_PERMISSIONS else ''}\n"
            f"📡 API: http://{host}:{port}/api/sessions\n"
            f"🔍 Debug: {'enabled' if debug else 'disabled'}",
            border_style="green",
        )
    )

    uvicorn.run(
        "session_relay.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level="debug" if debug else "info",
        reload=reload,
        access_log=debug,
        # WebSocket keepalive - protocol-level pings
        ws_ping_interval=settings.WS_PROTOCOL_PING_INTERVAL,
        ws_ping_timeout=settings.WS_PROTOCOL_PING_TIMEOUT,
        timeout_keep_alive=120,
    )


if __name__ == "__main__":
    app()

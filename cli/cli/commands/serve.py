"""``groupbuy serve`` -- run the HTTP API under uvicorn.

Reads the same ``GROUPBUY_*`` and ``API_*`` environment as a deployed
instance.  With a SQLite ``GROUPBUY_DATABASE_URL`` the tables are created on
startup, so a local storefront needs no external services.
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console

logger = logging.getLogger(__name__)


def serve_command(
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Start the group-buy API server."""
    console = Console(stderr=True)

    import uvicorn

    uvicorn_config = uvicorn.Config(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(uvicorn_config)

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] Storefront orders at http://{host}:{port}/api/public/<tenant>/orders")
    console.print(f"[green]✓[/green] Readiness probe at http://{host}:{port}/ready")

    try:
        server.run()
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except OSError as exc:
        console.print(f"[red]Server error: {exc}[/red]")
        raise typer.Exit(code=3) from exc

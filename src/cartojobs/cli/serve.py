"""CLI command for running the submission API server.

Usage:
    cartojobs serve
    cartojobs serve --port 8080 --host 0.0.0.0
"""

from __future__ import annotations

import typer

from cartojobs.config import Settings

app = typer.Typer(help="Run the job submission API server")


@app.callback(invoke_without_command=True)
def serve(
    host: str | None = typer.Option(
        None,
        "--host",
        "-h",
        help="Host to bind to (defaults to CARTOJOBS_HOST)",
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port to listen on (defaults to CARTOJOBS_PORT)"
    ),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
    log_level: str = typer.Option("info", "--log-level", "-l", help="Uvicorn log level"),
) -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    settings = Settings()
    host = host or settings.host
    port = port or settings.port

    typer.echo(f"Starting cartojobs API on {host}:{port}")
    uvicorn.run(
        app="cartojobs.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )

"""CLI commands for cartojobs.

Provides command-line interface using Typer:
- cartojobs worker: Run a worker for one task family
- cartojobs status: Show one job's status
- cartojobs stats: Show queue counts for a family
- cartojobs serve: Run the submission API server

Usage:
    cartojobs --help
    cartojobs worker import --concurrency 4
    cartojobs worker export --once
    cartojobs status ai 5b1e4c2a-...
    cartojobs stats export
    cartojobs serve --port 8080
"""

import typer

from cartojobs.cli.serve import app as serve_app
from cartojobs.cli.status_cmd import stats, status
from cartojobs.cli.worker_cmd import worker

# Main CLI application
app = typer.Typer(
    name="cartojobs",
    help="cartojobs: asynchronous import, export and AI job processing",
    no_args_is_help=True,
)

app.add_typer(serve_app, name="serve")
app.command("worker")(worker)
app.command("status")(status)
app.command("stats")(stats)


@app.callback()
def callback() -> None:
    """cartojobs: asynchronous import, export and AI job processing."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

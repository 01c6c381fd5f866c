"""Standalone loupe CLI.

Usage:
    loupe mcp
    loupe serve [--no-open]
    loupe list
    loupe clean OLDER_THAN
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console

app = typer.Typer(
    name="loupe",
    help="Live browser previews for Mermaid diagrams.",
    no_args_is_help=True,
)
console = Console()


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def _error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


@app.command()
def mcp() -> None:
    """Run the MCP server over stdio."""
    from loupe.mcp_server import run

    run()


@app.command()
def serve(
    no_open: bool = typer.Option(False, "--no-open", help="Don't open browser."),
) -> None:
    """Serve every saved diagram until interrupted."""
    from loupe._logging import configure_logging
    from loupe._types import NoPortAvailable
    from loupe.server import LiveServer, serve_forever

    configure_logging()
    server = LiveServer()
    _info("Starting loupe preview server...")
    try:
        asyncio.run(serve_forever(server, no_open=no_open, announce=_success))
    except NoPortAvailable as e:
        _error(str(e))
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass
    _info("Server stopped.")


@app.command("list")
def list_() -> None:
    """List saved diagrams."""
    from loupe import list_diagrams

    result = list_diagrams()
    if not result:
        _info("No diagrams found.")
        return

    console.print()
    console.print(f"[bold]Diagrams ({len(result)}):[/bold]")
    console.print()
    for d in result:
        modified = d.modified_at.astimezone().strftime("%Y-%m-%d %H:%M")
        console.print(
            f"  [green]{d.id:<30s}[/green] {d.format.value:<4s} "
            f"{d.size_bytes:>9,d} B   {modified}"
        )


@app.command()
def clean(
    older_than: str = typer.Argument(
        help="Remove diagrams older than duration (e.g., '7d', '24h', '0d' for all)."
    ),
) -> None:
    """Remove saved diagrams older than a given duration."""
    from loupe import clean_diagrams

    try:
        removed = clean_diagrams(older_than=older_than)
    except ValueError as e:
        _error(str(e))
        raise typer.Exit(1)
    if removed > 0:
        _success(f"Removed {removed} diagram(s).")
    else:
        _info("No diagrams matched the age filter.")


if __name__ == "__main__":
    app()

"""MCP stdio server exposing the preview and save tools.

stdout carries the protocol, so logging goes to the log file configured
in the lifespan hook. The live preview server is started on the first
preview and shut down when the MCP session ends.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from loupe._logging import configure_logging
from loupe._types import ToolResult
from loupe.storage import DEFAULT_MAX_AGE
from loupe.tools import preview_diagram, save_diagram

logger = logging.getLogger(__name__)

Format = Literal["svg", "png", "pdf"]


@asynccontextmanager
async def server_lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Set up logging and prune old diagrams; stop the preview server on exit."""
    from loupe import get_live_server, shutdown

    configure_logging()
    try:
        removed = get_live_server().store.cleanup(DEFAULT_MAX_AGE)
    except (OSError, ValueError) as e:
        logger.warning(f"Startup cleanup failed: {e}")
    else:
        if removed:
            logger.info(f"Removed {removed} diagram(s) older than {DEFAULT_MAX_AGE}")
    try:
        yield
    finally:
        await shutdown()


mcp = FastMCP("loupe", lifespan=server_lifespan)


def _unwrap(result: ToolResult) -> str:
    if result.is_error:
        raise ToolError(result.text)
    return result.text


@mcp.tool()
async def mermaid_preview(
    diagram: Annotated[str, Field(description="The Mermaid diagram code to render")],
    preview_id: Annotated[
        str,
        Field(
            description=(
                "ID for this preview session. Reuse the same ID to update a "
                "diagram in place (letters, digits, '-' and '_')"
            )
        ),
    ],
    format: Annotated[Format, Field(description="Output format")] = "svg",
    theme: Annotated[
        str, Field(description="Mermaid theme: default, forest, dark or neutral")
    ] = "default",
    background: Annotated[
        str, Field(description="Background colour, e.g. 'white' or 'transparent'")
    ] = "white",
    width: Annotated[int, Field(description="Diagram width in pixels", gt=0)] = 800,
    height: Annotated[int, Field(description="Diagram height in pixels", gt=0)] = 600,
    scale: Annotated[int, Field(description="Scale factor for raster output", gt=0)] = 2,
) -> str:
    """Render a Mermaid diagram and open a live-reloading preview in the browser.

    Calling again with the same preview_id re-renders the diagram and the
    open browser tab refreshes automatically. Use this whenever you create
    or change a Mermaid diagram for the user.
    """
    result = await preview_diagram(
        diagram,
        preview_id,
        format=format,
        theme=theme,
        background=background,
        width=width,
        height=height,
        scale=scale,
    )
    return _unwrap(result)


@mcp.tool()
async def mermaid_save(
    preview_id: Annotated[
        str, Field(description="ID of a diagram previously rendered with mermaid_preview")
    ],
    save_path: Annotated[str, Field(description="Destination file path")],
    format: Annotated[
        Format, Field(description="Format the diagram was rendered in")
    ] = "svg",
) -> str:
    """Save a previewed diagram to a file, creating parent directories."""
    result = await save_diagram(preview_id, save_path, format=format)
    return _unwrap(result)


def run() -> None:
    """Run the MCP server over stdio."""
    mcp.run()

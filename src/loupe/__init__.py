"""loupe: Live browser previews for Mermaid diagrams.

Renders Mermaid source with the mermaid CLI, serves the result from a
local server, and pushes a reload to every open tab whenever the
rendered file changes.

Quick Start:
    import asyncio
    from loupe.tools import preview_diagram

    asyncio.run(preview_diagram("graph TD; A-->B", "architecture"))
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from loupe._types import (
    DiagramFormat,
    DiagramInfo,
    DiagramOptions,
    ErrorKind,
    LoupeError,
    ToolResult,
)

if TYPE_CHECKING:
    from loupe.server import LiveServer

__all__ = [
    "DiagramFormat",
    "DiagramInfo",
    "DiagramOptions",
    "ErrorKind",
    "LoupeError",
    "ToolResult",
    "clean_diagrams",
    "get_live_server",
    "list_diagrams",
    "shutdown",
]

logger = logging.getLogger(__name__)

# Process-wide preview server, created on first use. Only touched from
# the event loop thread, so no lock.
_live_server: LiveServer | None = None


def get_live_server() -> LiveServer:
    """Return the process-wide LiveServer, creating it on first use.

    Creating it does not start anything; the HTTP server is started by
    ``ensure_server()`` on the first preview.
    """
    global _live_server
    if _live_server is None:
        from loupe.server import LiveServer

        _live_server = LiveServer()
    return _live_server


async def shutdown() -> None:
    """Stop the preview server and close every watcher and connection."""
    global _live_server
    server, _live_server = _live_server, None
    if server is not None:
        await server.shutdown()


def list_diagrams() -> list[DiagramInfo]:
    """List persisted diagrams, newest first."""
    from loupe.storage import DiagramStore

    return DiagramStore().list_diagrams()


def clean_diagrams(older_than: str = "7d") -> int:
    """Remove persisted diagrams older than a duration string.

    Args:
        older_than: Age string (e.g., '7d', '24h', '0d' for all).

    Returns:
        Number of diagrams removed.
    """
    from loupe.storage import DiagramStore

    return DiagramStore().cleanup(older_than=older_than)

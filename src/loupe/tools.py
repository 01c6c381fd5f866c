"""Tool entry points: render a diagram into a live preview, save it elsewhere.

Both functions return a :class:`ToolResult` instead of raising, so the
MCP adapter and the tests see the same outcome. ``preview_diagram``
persists the source and options, renders into the live directory,
makes sure the preview server is up, and registers the session. The
browser is opened only when nobody is viewing the diagram yet;
otherwise the watcher triggers a reload in the open page.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from loupe._types import (
    DiagramFormat,
    DiagramOptions,
    ErrorKind,
    InvalidSessionId,
    NoPortAvailable,
    RenderFailure,
    ToolResult,
)
from loupe._utils import is_valid_session_id, open_browser
from loupe.renderer import render_diagram
from loupe.server import LiveServer

logger = logging.getLogger(__name__)


def _parse_format(value: str) -> DiagramFormat | None:
    try:
        return DiagramFormat(str(value).lower())
    except ValueError:
        return None


def _check_preview_id(preview_id: str) -> ToolResult | None:
    if not preview_id:
        return ToolResult.error(ErrorKind.INVALID_INPUT, "preview_id is required")
    if not is_valid_session_id(preview_id):
        return ToolResult.error(
            ErrorKind.INVALID_INPUT,
            f"Invalid preview_id {preview_id!r}: use letters, digits, '-' and '_' only",
        )
    return None


async def preview_diagram(
    diagram: str,
    preview_id: str,
    format: str = "svg",
    theme: str = "default",
    background: str = "white",
    width: int = 800,
    height: int = 600,
    scale: int = 2,
    server: LiveServer | None = None,
) -> ToolResult:
    """Render a Mermaid diagram and show it in a live-reloading browser tab.

    Args:
        diagram: Mermaid source text.
        preview_id: Session ID; reuse it to update the same preview.
        format: ``svg``, ``png`` or ``pdf``.
        theme: Mermaid theme name.
        background: Background colour (CSS value or ``transparent``).
        width: Page width passed to the renderer.
        height: Page height passed to the renderer.
        scale: Device scale factor for raster output.
        server: Live server to register with (default: the process-wide one).
    """
    if not diagram or not diagram.strip():
        return ToolResult.error(ErrorKind.INVALID_INPUT, "diagram is required")
    bad = _check_preview_id(preview_id)
    if bad is not None:
        return bad
    fmt = _parse_format(format)
    if fmt is None:
        return ToolResult.error(
            ErrorKind.INVALID_INPUT,
            f"Unsupported format {format!r}; expected one of: svg, png, pdf",
        )
    if width <= 0 or height <= 0 or scale <= 0:
        return ToolResult.error(
            ErrorKind.INVALID_INPUT, "width, height and scale must be positive"
        )

    if server is None:
        from loupe import get_live_server

        server = get_live_server()

    options = DiagramOptions(
        theme=theme, background=background, width=width, height=height, scale=scale
    )
    artifact = server.store.artifact_path(preview_id, fmt)
    try:
        server.store.save_source(preview_id, diagram, options)
        await render_diagram(diagram, artifact, options, fmt)
    except RenderFailure as e:
        logger.warning(f"Render failed for {preview_id}: {e}")
        return ToolResult.error(
            ErrorKind.RENDER_FAILED, f"Error rendering Mermaid diagram: {e}"
        )
    except OSError as e:
        logger.warning(f"Could not write diagram {preview_id}: {e}")
        return ToolResult.error(
            ErrorKind.RENDER_FAILED, f"Error rendering Mermaid diagram: {e}"
        )

    try:
        await server.ensure_server()
    except NoPortAvailable as e:
        return ToolResult.error(
            ErrorKind.RENDER_FAILED,
            f"Diagram rendered to {artifact}, but the preview server could not start: {e}",
        )

    # Read before registering: registration keeps existing viewers attached
    has_viewers = server.registry.has_active_connections(preview_id)
    server.registry.register(preview_id, artifact)
    url = server.session_url(preview_id)

    if has_viewers:
        text = (
            "Mermaid diagram updated successfully.\n"
            f"Working file: {artifact} ({fmt.value.upper()})\n"
            "Diagram updated. Browser will refresh automatically."
        )
    else:
        open_browser(url)
        text = (
            "Mermaid diagram rendered successfully and opened in browser.\n"
            f"Working file: {artifact} ({fmt.value.upper()})\n"
            f"Live reload URL: {url}\n"
            "The diagram will auto-refresh when you update it."
        )
    logger.info(f"Preview {preview_id} rendered ({fmt.value}, viewers={has_viewers})")
    return ToolResult(
        text=text,
        data={
            "preview_id": preview_id,
            "url": url,
            "path": str(artifact),
            "opened_browser": not has_viewers,
        },
    )


async def save_diagram(
    preview_id: str,
    save_path: str,
    format: str = "svg",
    server: LiveServer | None = None,
) -> ToolResult:
    """Copy a previewed diagram's rendered file to ``save_path``.

    The diagram must have been rendered in ``format`` by
    :func:`preview_diagram` first. Parent directories are created.
    """
    bad = _check_preview_id(preview_id)
    if bad is not None:
        return bad
    if not save_path:
        return ToolResult.error(ErrorKind.INVALID_INPUT, "save_path is required")
    fmt = _parse_format(format)
    if fmt is None:
        return ToolResult.error(
            ErrorKind.INVALID_INPUT,
            f"Unsupported format {format!r}; expected one of: svg, png, pdf",
        )

    if server is None:
        from loupe import get_live_server

        server = get_live_server()

    try:
        source = server.store.artifact_path(preview_id, fmt)
    except InvalidSessionId as e:
        return ToolResult.error(ErrorKind.INVALID_INPUT, str(e))

    target = Path(save_path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
    except OSError as e:
        logger.warning(f"Save failed for {preview_id}: {e}")
        return ToolResult.error(ErrorKind.SAVE_FAILED, f"Error saving diagram: {e}")

    return ToolResult(
        text=f"Diagram saved to: {target} ({fmt.value.upper()})",
        data={"preview_id": preview_id, "path": str(target)},
    )

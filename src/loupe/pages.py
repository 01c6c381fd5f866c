"""HTML page rendering for the preview server.

Pages are built from templates in ``loupe/static`` with ``{{NAME}}``
placeholders. Values that a caller can influence (diagram ID, background
colour, timestamp) are HTML-escaped; rendered diagram markup comes from
the external renderer and is inserted as-is.
"""

from __future__ import annotations

import base64
import html
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from loupe._types import AssetMissing

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

DIAGRAM_TEMPLATE = "template.html"
GALLERY_TEMPLATE = "gallery.html"

# default-src 'none': deny everything not listed below
# style-src 'unsafe-inline': the page sets the diagram background inline
# connect-src: same origin plus the live-reload WebSocket on localhost
CSP_HEADER = (
    "default-src 'none'; "
    "script-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data:; "
    "connect-src 'self' ws://localhost:* ws://127.0.0.1:*"
)

CACHE_NO_STORE = "no-store"
CACHE_PUBLIC_24H = "public, max-age=86400"

_template_cache: dict[str, str] = {}


def escape_html(value: Any) -> str:
    """Escape ``& < > " '`` for safe interpolation into HTML."""
    return html.escape("" if value is None else str(value), quote=True)


def read_asset(name: str) -> bytes:
    """Read a file from the static directory.

    Raises:
        AssetMissing: If the file does not exist.
    """
    path = STATIC_DIR / name
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise AssetMissing(f"Static asset not found: {name}") from None


def load_template(name: str) -> str:
    """Load a template, caching it for the life of the process."""
    cached = _template_cache.get(name)
    if cached is not None:
        return cached
    content = read_asset(name).decode("utf-8")
    _template_cache[name] = content
    logger.debug(f"Loaded template: {name}")
    return content


def clear_template_cache() -> None:
    _template_cache.clear()


def fill_template(
    template: str,
    data: dict[str, Any] | None = None,
    raw: dict[str, str] | None = None,
) -> str:
    """Replace ``{{KEY}}`` placeholders.

    Values in ``data`` are escaped; values in ``raw`` are inserted
    verbatim. Raw values are substituted last so text inside them is
    never treated as a placeholder.
    """
    result = template
    for key, value in (data or {}).items():
        result = result.replace(f"{{{{{key}}}}}", escape_html(value))
    for key, value in (raw or {}).items():
        result = result.replace(f"{{{{{key}}}}}", value)
    return result


def diagram_markup(path: Path) -> str:
    """Return HTML embedding a rendered artifact.

    SVG is inlined, PNG becomes a data-URI image (allowed by the
    ``img-src data:`` policy). PDF cannot be displayed under the page's
    content policy, so a pointer to the export route is shown instead.
    """
    suffix = path.suffix.lower()
    if suffix == ".svg":
        return path.read_text(encoding="utf-8")
    if suffix == ".png":
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return f'<img src="data:image/png;base64,{encoded}" alt="Diagram">'
    return (
        '<p class="notice">This diagram was rendered as '
        f"{escape_html(suffix.lstrip('.').upper())} and cannot be previewed "
        "inline.</p>"
    )


def render_diagram_page(
    content: str,
    diagram_id: str,
    port: int | None,
    background: str = "white",
    live: bool = True,
    timestamp: datetime | None = None,
) -> str:
    """Render the preview page for one diagram.

    Args:
        content: Diagram markup from :func:`diagram_markup` (not escaped).
        diagram_id: Session/diagram ID, used by the page script.
        port: Server port the page script connects back to.
        background: Page background colour from the diagram options.
        live: Whether the page opens a live-reload connection.
        timestamp: "Last updated" time shown in the status bar.
    """
    template = load_template(DIAGRAM_TEMPLATE)
    timestamp = timestamp or datetime.now()
    title = f"{diagram_id} - Loupe" + (" (Live)" if live else "")
    return fill_template(
        template,
        data={
            "PAGE_TITLE": title,
            "DIAGRAM_ID": diagram_id,
            "PORT": port if port is not None else "",
            "BACKGROUND": background,
            "TIMESTAMP": timestamp.strftime("%H:%M:%S"),
            "LIVE_ENABLED": "true" if live else "false",
        },
        raw={"CONTENT": content},
    )


def render_gallery_page(port: int | None) -> str:
    """Render the gallery page; the diagram list is fetched by gallery.js."""
    template = load_template(GALLERY_TEMPLATE)
    return fill_template(
        template,
        data={
            "PAGE_TITLE": "Diagram Gallery - Loupe",
            "PORT": port if port is not None else "",
        },
    )

"""Mermaid source-to-image rendering via the external mermaid CLI.

The renderer is an opaque subprocess: loupe writes the source to a
temporary ``.mmd`` file, runs the CLI with the diagram options, and
checks that an output file appeared. The command prefix defaults to
``npx -y @mermaid-js/mermaid-cli`` and can be overridden with
``LOUPE_RENDERER`` (e.g. ``mmdc`` for a global install).
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
from pathlib import Path

from loupe._types import DiagramFormat, DiagramOptions, RenderFailure

logger = logging.getLogger(__name__)

DEFAULT_RENDERER = "npx -y @mermaid-js/mermaid-cli"

# Cap on stderr echoed back in error messages
_MAX_ERROR_CHARS = 2000


def renderer_command() -> list[str]:
    """Return the renderer command prefix as an argv list."""
    return shlex.split(os.getenv("LOUPE_RENDERER") or DEFAULT_RENDERER)


def build_command(
    input_path: Path,
    output_path: Path,
    options: DiagramOptions,
    fmt: DiagramFormat,
) -> list[str]:
    """Build the full renderer argv for one render."""
    cmd = [
        *renderer_command(),
        "-i", str(input_path),
        "-o", str(output_path),
        "-t", options.theme,
        "-b", options.background,
        "-w", str(options.width),
        "-H", str(options.height),
        "-s", str(options.scale),
    ]  # fmt: skip
    if fmt == DiagramFormat.PDF:
        cmd.append("--pdfFit")
    return cmd


async def render_diagram(
    source: str,
    output_path: Path,
    options: DiagramOptions | None = None,
    fmt: DiagramFormat | str = DiagramFormat.SVG,
) -> Path:
    """Render ``source`` into ``output_path``.

    Args:
        source: Mermaid diagram text.
        output_path: Destination file; its parent is created if needed.
        options: Theme, background and size options.
        fmt: Output format.

    Returns:
        ``output_path`` once the renderer has written it.

    Raises:
        RenderFailure: If the renderer cannot be started, exits non-zero,
            or produces no output.
    """
    options = options or DiagramOptions()
    fmt = DiagramFormat(fmt)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix="loupe-") as tmp:
        tmp_dir = Path(tmp)
        input_path = tmp_dir / "diagram.mmd"
        tmp_output = tmp_dir / f"diagram.{fmt.value}"
        input_path.write_text(source, encoding="utf-8")

        cmd = build_command(input_path, tmp_output, options, fmt)
        logger.debug(f"Running renderer: {shlex.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RenderFailure(f"Could not start renderer {cmd[0]!r}: {e}") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise RenderFailure(
                f"Renderer exited with code {proc.returncode}: "
                f"{detail[:_MAX_ERROR_CHARS]}"
            )
        if not tmp_output.exists() or tmp_output.stat().st_size == 0:
            raise RenderFailure("Renderer produced no output")

        # Write in place so a watcher on output_path sees a modification
        output_path.write_bytes(tmp_output.read_bytes())

    logger.debug(f"Rendered {fmt.value} to {output_path}")
    return output_path

"""Type definitions for the loupe preview system.

Defines the data structures shared across the pipeline: diagram formats,
render options, persisted diagram metadata, tool results, and the error
taxonomy raised by the registry, server, and renderer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DiagramFormat(str, Enum):
    """Output formats supported by the external renderer."""

    SVG = "svg"
    PNG = "png"
    PDF = "pdf"


class ErrorKind(str, Enum):
    """Categories of tool failure, so callers can decide whether to retry."""

    INVALID_INPUT = "invalid_input"
    RENDER_FAILED = "render_failed"
    SAVE_FAILED = "save_failed"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LoupeError(Exception):
    """Base class for all loupe errors."""


class InvalidSessionId(LoupeError, ValueError):
    """A session or diagram ID failed the safe-character policy."""

    def __init__(self, session_id: object) -> None:
        super().__init__(f"Invalid diagram ID: {session_id!r}")
        self.session_id = session_id


class SessionNotFound(LoupeError, KeyError):
    """No session or persisted diagram exists for the given ID."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Diagram not found: {self.session_id}"


class NoPortAvailable(LoupeError, RuntimeError):
    """Every port in the configured range is taken."""

    def __init__(self, low: int, high: int) -> None:
        super().__init__(f"No available port in range {low}-{high}")
        self.low = low
        self.high = high


class RenderFailure(LoupeError, RuntimeError):
    """The external renderer failed or produced no output."""


class AssetMissing(LoupeError, FileNotFoundError):
    """A static asset expected on disk is absent."""


# ---------------------------------------------------------------------------
# Diagram data
# ---------------------------------------------------------------------------


@dataclass
class DiagramOptions:
    """Rendering options persisted alongside each diagram source."""

    theme: str = "default"
    background: str = "white"
    width: int = 800
    height: int = 600
    scale: int = 2

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiagramOptions:
        """Build options from a loaded JSON dict, ignoring unknown keys."""
        defaults = cls()
        return cls(
            theme=str(data.get("theme", defaults.theme)),
            background=str(data.get("background", defaults.background)),
            width=int(data.get("width", defaults.width)),
            height=int(data.get("height", defaults.height)),
            scale=int(data.get("scale", defaults.scale)),
        )


@dataclass
class DiagramInfo:
    """Metadata about a rendered diagram on disk."""

    id: str
    format: DiagramFormat
    modified_at: datetime
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "format": self.format.value,
            "modifiedAt": self.modified_at.isoformat(),
            "sizeBytes": self.size_bytes,
        }


@dataclass
class ToolResult:
    """Structured result of a tool invocation.

    ``error_kind`` is None on success. On failure it tells the caller
    whether the input was bad, the render failed, or the save failed.
    """

    text: str
    error_kind: ErrorKind | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None

    @classmethod
    def error(cls, kind: ErrorKind, text: str) -> ToolResult:
        return cls(text=text, error_kind=kind)

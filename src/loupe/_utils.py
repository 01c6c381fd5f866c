"""Shared utilities for the loupe package.

Deduplicates common patterns used across multiple modules:
data directory resolution, session ID validation, duration parsing,
atomic JSON writes, and browser opening.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from loupe._types import InvalidSessionId

logger = logging.getLogger(__name__)

APP_NAME = "loupe"

# ---------------------------------------------------------------------------
# Data directory resolution
# ---------------------------------------------------------------------------


def get_loupe_dir() -> Path:
    """Resolve the loupe data directory.

    Resolution order:
    1. ``LOUPE_DATA_DIR`` environment variable (explicit override)
    2. ``$XDG_CONFIG_HOME/loupe``
    3. Default: ``~/.config/loupe``
    """
    env = os.getenv("LOUPE_DATA_DIR")
    if env and env.strip():
        return Path(env)
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg and xdg.strip():
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def get_live_dir() -> Path:
    """Directory holding one subdirectory per persisted diagram."""
    return get_loupe_dir() / "live"


def get_logs_dir() -> Path:
    return get_loupe_dir() / "logs"


# ---------------------------------------------------------------------------
# Session ID validation
# ---------------------------------------------------------------------------

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_session_id(session_id: object) -> bool:
    """Check an ID against the safe-character policy.

    Uses ``fullmatch`` so a trailing newline cannot slip past ``$``.
    """
    return isinstance(session_id, str) and SESSION_ID_RE.fullmatch(session_id) is not None


def validate_session_id(session_id: object) -> str:
    """Return ``session_id`` unchanged, or raise InvalidSessionId."""
    if not is_valid_session_id(session_id):
        raise InvalidSessionId(session_id)
    return session_id  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Duration parsing
# ---------------------------------------------------------------------------


def parse_age(age_str: str) -> float:
    """Parse a duration string like '7d', '24h', '30m' into seconds.

    Supported suffixes: d (days), h (hours), m (minutes), s (seconds).
    Plain integer is treated as seconds.
    """
    age_str = age_str.strip()
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([dhms]?)$", age_str, re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid age string: {age_str!r} (expected e.g. '7d', '24h')")
    value = float(match.group(1))
    unit = match.group(2).lower() or "s"
    multipliers = {"d": 86400, "h": 3600, "m": 60, "s": 1}
    return value * multipliers[unit]


# ---------------------------------------------------------------------------
# Atomic JSON write
# ---------------------------------------------------------------------------


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to a file atomically using a temporary file + rename."""
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------


def open_browser(url: str) -> bool:
    """Open ``url`` in the default browser. Returns False if that failed."""
    try:
        import webbrowser

        return webbrowser.open(url)
    except Exception:
        logger.debug(f"Could not open browser for {url}")
        return False

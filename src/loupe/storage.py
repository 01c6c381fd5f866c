"""On-disk persistence for diagram sources, options, and rendered artifacts.

Storage layout:
    {data_dir}/
    ├── logs/
    │   └── loupe.log
    └── live/
        ├── architecture/
        │   ├── diagram.mmd        # Source text
        │   ├── options.json       # Render options
        │   └── diagram.svg        # Rendered artifact (svg, png or pdf)
        └── ...

Every method that takes a diagram ID validates it before touching the
filesystem, so an ID can never resolve outside the live directory.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

from loupe._types import DiagramFormat, DiagramInfo, DiagramOptions, SessionNotFound
from loupe._utils import atomic_write_json, get_live_dir, parse_age, validate_session_id

logger = logging.getLogger(__name__)

SOURCE_FILE = "diagram.mmd"
OPTIONS_FILE = "options.json"
DEFAULT_MAX_AGE = "7d"


class DiagramStore:
    """Reads and writes persisted diagrams under the live directory.

    Args:
        live_dir: Root directory holding one subdirectory per diagram.
            Defaults to ``get_live_dir()`` resolved at construction.
    """

    def __init__(self, live_dir: Path | None = None) -> None:
        self.live_dir = live_dir or get_live_dir()

    # --- Paths ---

    def diagram_dir(self, diagram_id: str) -> Path:
        return self.live_dir / validate_session_id(diagram_id)

    def artifact_path(self, diagram_id: str, fmt: DiagramFormat | str) -> Path:
        fmt = DiagramFormat(fmt)
        return self.diagram_dir(diagram_id) / f"diagram.{fmt.value}"

    def source_path(self, diagram_id: str) -> Path:
        return self.diagram_dir(diagram_id) / SOURCE_FILE

    def options_path(self, diagram_id: str) -> Path:
        return self.diagram_dir(diagram_id) / OPTIONS_FILE

    # --- Source and options ---

    def save_source(
        self, diagram_id: str, source: str, options: DiagramOptions
    ) -> Path:
        """Write the diagram source and its options, creating the directory."""
        target = self.diagram_dir(diagram_id)
        target.mkdir(parents=True, exist_ok=True)
        (target / SOURCE_FILE).write_text(source, encoding="utf-8")
        atomic_write_json(target / OPTIONS_FILE, options.to_dict())
        return target

    def load_source(self, diagram_id: str) -> str:
        """Return the saved source text.

        Raises:
            SessionNotFound: If no source was ever saved for this ID.
        """
        path = self.source_path(diagram_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise SessionNotFound(diagram_id) from None

    def load_options(self, diagram_id: str) -> DiagramOptions:
        """Return saved options, or defaults when missing or unreadable."""
        path = self.options_path(diagram_id)
        if not path.exists():
            return DiagramOptions()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return DiagramOptions.from_dict(data)
        except (json.JSONDecodeError, OSError, TypeError, ValueError):
            logger.debug(f"Unreadable options for {diagram_id}, using defaults")
        return DiagramOptions()

    # --- Queries ---

    def get_info(self, diagram_id: str) -> DiagramInfo | None:
        """Return info for the first rendered format found (svg, png, pdf)."""
        for fmt in DiagramFormat:
            path = self.artifact_path(diagram_id, fmt)
            try:
                stat = path.stat()
            except OSError:
                continue
            return DiagramInfo(
                id=diagram_id,
                format=fmt,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                size_bytes=stat.st_size,
            )
        return None

    def find_artifact(self, diagram_id: str) -> Path | None:
        info = self.get_info(diagram_id)
        if info is None:
            return None
        return self.artifact_path(diagram_id, info.format)

    def list_diagrams(self) -> list[DiagramInfo]:
        """List rendered diagrams, newest first.

        Directories whose names are not valid IDs, or that hold no rendered
        artifact, are skipped.
        """
        if not self.live_dir.exists():
            return []
        diagrams = []
        for entry in self.live_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                info = self.get_info(entry.name)
            except ValueError:
                logger.debug(f"Skipping diagram directory: {entry.name}")
                continue
            if info is not None:
                diagrams.append(info)
        diagrams.sort(key=lambda d: d.modified_at, reverse=True)
        return diagrams

    def exists(self, diagram_id: str) -> bool:
        return self.get_info(diagram_id) is not None

    # --- Removal ---

    def delete(self, diagram_id: str) -> None:
        """Delete a diagram directory and everything in it.

        Raises:
            SessionNotFound: If the diagram has no directory.
        """
        target = self.diagram_dir(diagram_id)
        if not target.is_dir():
            raise SessionNotFound(diagram_id)
        shutil.rmtree(target)
        logger.info(f"Deleted diagram: {diagram_id}")

    def cleanup(self, older_than: str = DEFAULT_MAX_AGE) -> int:
        """Remove diagrams whose source is older than a given age.

        Args:
            older_than: Age string (e.g., '7d', '24h', '0d' for all).

        Returns:
            Number of diagrams removed. Failures on individual
            directories are logged and skipped.
        """
        max_age_secs = parse_age(older_than)
        if not self.live_dir.exists():
            return 0

        now = time.time()
        removed = 0
        for entry in list(self.live_dir.iterdir()):
            if not entry.is_dir():
                continue
            source = entry / SOURCE_FILE
            try:
                age_secs = now - source.stat().st_mtime
                if age_secs < max_age_secs:
                    continue
                shutil.rmtree(entry)
            except OSError as e:
                logger.warning(f"Cleanup skipped {entry.name}: {e}")
                continue
            logger.info(f"Cleaned up old diagram: {entry.name}")
            removed += 1
        return removed

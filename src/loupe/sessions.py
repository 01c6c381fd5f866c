"""Live preview sessions: file watchers and viewer fan-out.

A session binds a diagram ID to a rendered file on disk. The registry
owns one file watcher per session and the set of browser connections
currently viewing it. When the watched file changes, every open
connection receives a single ``reload`` message.

All methods that mutate a session are synchronous. They run on the
event loop thread and never await between reading the current watcher
and replacing it, so a newer registration cannot be interleaved with
an older one and a closed watcher never delivers another event.

The watcher implementation is pluggable (``watcher_factory``) so the
fan-out can be exercised without touching the OS file-watch machinery.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from starlette.websockets import WebSocketState
from watchfiles import Change, awatch

from loupe._utils import is_valid_session_id, validate_session_id

logger = logging.getLogger(__name__)

RELOAD_MESSAGE = "reload"


class FileWatcher(Protocol):
    """Handle on an active file watch. ``close()`` must be synchronous."""

    closed: bool

    def close(self) -> None: ...


WatcherFactory = Callable[[Path, Callable[[], None]], FileWatcher]


class WatchfilesWatcher:
    """Watch a single file with ``watchfiles.awatch``.

    Watches the file's parent directory (non-recursively) and filters
    for the file itself, so replacing the file by rename is also seen.
    Must be constructed while an event loop is running.

    Args:
        path: File to watch.
        on_change: Called with no arguments after each batch of changes.
    """

    def __init__(self, path: Path, on_change: Callable[[], None]) -> None:
        self.path = Path(path).resolve()
        self.closed = False
        self._on_change = on_change
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _matches(self, change: Change, changed_path: str) -> bool:
        return change != Change.deleted and Path(changed_path) == self.path

    async def _run(self) -> None:
        try:
            async for _changes in awatch(
                self.path.parent,
                watch_filter=self._matches,
                stop_event=self._stop_event,
                recursive=False,
            ):
                if self.closed:
                    break
                try:
                    self._on_change()
                except Exception:
                    logger.exception(f"Change callback failed for {self.path}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Stopped watching {self.path}: {e}")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._stop_event.set()
        self._task.cancel()
        logger.debug(f"Closed watcher for {self.path}")


def is_connection_open(conn: Any) -> bool:
    """True while both sides of a WebSocket consider it connected."""
    return (
        getattr(conn, "client_state", None) == WebSocketState.CONNECTED
        and getattr(conn, "application_state", None) == WebSocketState.CONNECTED
    )


@dataclass
class Session:
    """State for one live preview.

    ``connections`` is keyed by ``id(conn)``: Starlette WebSockets are
    mappings and therefore unhashable, and membership must be by identity.
    """

    id: str
    watched_file_path: Path
    watcher: FileWatcher
    connections: dict[int, Any] = field(default_factory=dict)


class SessionRegistry:
    """In-process map from session ID to live preview state.

    Args:
        watcher_factory: Builds a watcher for ``(path, on_change)``.
            Defaults to :class:`WatchfilesWatcher`.
    """

    def __init__(self, watcher_factory: WatcherFactory | None = None) -> None:
        self._watcher_factory: WatcherFactory = watcher_factory or WatchfilesWatcher
        self._sessions: dict[str, Session] = {}
        self._pending: set[asyncio.Task] = set()
        self._queued: dict[str, asyncio.Task] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def session_ids(self) -> list[str]:
        return sorted(self._sessions)

    # --- Registration ---

    def register(self, session_id: str, file_path: Path | str) -> Session:
        """Create or update a session watching ``file_path``.

        An existing session's watcher is closed before the new one is
        created. Attached connections are kept, and are sent one reload
        directly: the file was rewritten before this call, so a change
        still batched in the old watcher is lost with it and the new
        watcher starts after the write.

        Raises:
            InvalidSessionId: If ``session_id`` fails the charset policy.
        """
        validate_session_id(session_id)
        path = Path(file_path)

        existing = self._sessions.get(session_id)
        if existing is not None:
            existing.watcher.close()

        watcher = self._watcher_factory(path, lambda: self._on_file_changed(session_id))

        if existing is not None:
            existing.watched_file_path = path
            existing.watcher = watcher
            logger.debug(f"Updated session {session_id} -> {path}")
            if existing.connections:
                self._on_file_changed(session_id)
            return existing

        session = Session(id=session_id, watched_file_path=path, watcher=watcher)
        self._sessions[session_id] = session
        logger.debug(f"Registered session {session_id} -> {path}")
        return session

    def remove(self, session_id: str) -> bool:
        """Close the session's watcher and forget it.

        Viewer connections are left open; they simply stop receiving
        reloads. Returns False if there was no such session.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.watcher.close()
        logger.debug(f"Removed session {session_id}")
        return True

    # --- Connections ---

    def has_active_connections(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and len(session.connections) > 0

    def attach_connection(self, session_id: str, conn: Any) -> bool:
        """Attach a viewer to an existing session.

        Returns False if the ID is invalid or no session has been
        registered under it; the caller is then responsible for closing
        the connection.
        """
        if not is_valid_session_id(session_id):
            return False
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.connections[id(conn)] = conn
        logger.debug(
            f"Viewer attached to {session_id} ({len(session.connections)} active)"
        )
        return True

    def detach_connection(self, session_id: str, conn: Any) -> bool:
        """Remove a viewer. Removing an unknown connection is a no-op."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        removed = session.connections.pop(id(conn), None) is not None
        if removed:
            logger.debug(
                f"Viewer detached from {session_id} ({len(session.connections)} active)"
            )
        return removed

    # --- Fan-out ---

    def _on_file_changed(self, session_id: str) -> None:
        """Schedule a notification for ``session_id``.

        A notification still pending for the session absorbs the
        new one, so a burst of changes produces a single reload.
        """
        if session_id not in self._sessions:
            return
        queued = self._queued.get(session_id)
        if queued is not None and not queued.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, reload for {session_id} not sent")
            return
        task = loop.create_task(self.notify(session_id))
        self._queued[session_id] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(lambda t: self._forget_queued(session_id, t))

    def _forget_queued(self, session_id: str, task: asyncio.Task) -> None:
        if self._queued.get(session_id) is task:
            del self._queued[session_id]

    async def notify(self, session_id: str) -> int:
        """Send ``reload`` to every open connection of a session.

        Closed connections are skipped and a failed send is logged
        without affecting the others.

        Returns:
            Number of connections the message was delivered to.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return 0
        targets = [c for c in session.connections.values() if is_connection_open(c)]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send_reload(c) for c in targets))
        delivered = sum(results)
        logger.debug(f"Reload sent to {delivered}/{len(targets)} viewer(s) of {session_id}")
        return delivered

    async def _send_reload(self, conn: Any) -> bool:
        try:
            await conn.send_text(RELOAD_MESSAGE)
            return True
        except Exception:
            logger.debug("Failed to send reload to a viewer")
            return False

    async def wait_idle(self) -> None:
        """Wait until every scheduled notification has finished.

        Called on shutdown so reloads already triggered reach viewers
        before their connections are closed.
        """
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- Teardown ---

    def close_all(self) -> list[Any]:
        """Close every watcher and clear the registry.

        Returns:
            The connections that were attached, for the caller to close.
        """
        connections: list[Any] = []
        for session in self._sessions.values():
            session.watcher.close()
            connections.extend(session.connections.values())
        self._sessions.clear()
        for task in list(self._pending):
            task.cancel()
        self._queued.clear()
        return connections

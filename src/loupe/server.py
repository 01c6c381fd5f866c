"""Preview server: Starlette + WebSocket live reload for rendered diagrams.

One uvicorn server per process, started lazily by ``ensure_server()`` as
a task on the caller's event loop. HTTP routes and the live-reload
WebSocket share the same port, picked from a fixed range.

Endpoints (matched in this order):
    GET    /                          → gallery page
    GET    /api/diagrams              → JSON list of rendered diagrams
    DELETE /api/diagrams/{id}         → delete a persisted diagram
    *      /api, /api/{rest}          → 404 JSON
    GET    /style.css, /script.js ... → static assets (no-store)
    GET    /favicon.svg, /favicon.ico → favicon (public, 24h)
    GET    /view, /export, /mermaid-live → 400, ID required
    GET    /view/{id}                 → static (non-live) preview
    GET    /export/{id}               → PNG download via the renderer
    GET    /mermaid-live/{id}         → JSON with a mermaid.live editor URL
    GET    /{id}                      → live preview page
    WS     /{id}                      → live-reload channel
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import signal
import socket
import tempfile
import zlib
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from loupe._types import (
    AssetMissing,
    DiagramFormat,
    NoPortAvailable,
    RenderFailure,
    SessionNotFound,
)
from loupe._utils import is_valid_session_id, open_browser
from loupe.pages import (
    CACHE_NO_STORE,
    CACHE_PUBLIC_24H,
    CSP_HEADER,
    diagram_markup,
    read_asset,
    render_diagram_page,
    render_gallery_page,
)
from loupe.renderer import render_diagram
from loupe.sessions import SessionRegistry
from loupe.storage import DiagramStore

logger = logging.getLogger(__name__)

PORT_RANGE_START = 3737
PORT_RANGE_END = 3747
_DEFAULT_HOST = "127.0.0.1"
_DISPLAY_HOST = "localhost"

MERMAID_LIVE_URL = "https://mermaid.live/edit#pako:"

# WebSocket close code for "policy violation" (unknown session)
_WS_POLICY_VIOLATION = 1008
# Seconds shutdown waits for in-flight reload messages
_DRAIN_TIMEOUT = 2

# (route path, file in static/, media type, cache policy)
_ASSETS = [
    ("/style.css", "style.css", "text/css", CACHE_NO_STORE),
    ("/shared.css", "shared.css", "text/css", CACHE_NO_STORE),
    ("/gallery.css", "gallery.css", "text/css", CACHE_NO_STORE),
    ("/script.js", "script.js", "application/javascript", CACHE_NO_STORE),
    ("/gallery.js", "gallery.js", "application/javascript", CACHE_NO_STORE),
    ("/favicon.svg", "favicon.svg", "image/svg+xml", CACHE_PUBLIC_24H),
    ("/favicon.ico", "favicon.svg", "image/svg+xml", CACHE_PUBLIC_24H),
]

# Prefixes that take a diagram ID; the bare name is reserved too
_ID_PREFIXES = ("view", "export", "mermaid-live")


def find_available_port(
    low: int = PORT_RANGE_START,
    high: int = PORT_RANGE_END,
    host: str = _DEFAULT_HOST,
) -> int:
    """Return the first port in ``[low, high]`` that can actually be bound.

    Each candidate is bound and released; nothing stays open afterwards.

    Raises:
        NoPortAvailable: If every port in the range is taken.
    """
    for port in range(low, high + 1):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((host, port))
        except OSError:
            continue
        return port
    raise NoPortAvailable(low, high)


def _bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket handed to uvicorn."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def mermaid_live_url(source: str, theme: str = "default") -> str:
    """Build a mermaid.live editor URL carrying the diagram source.

    The editor state is JSON, zlib-deflated and base64url-encoded
    without padding (the ``pako:`` serde).
    """
    state = {
        "code": source,
        "mermaid": json.dumps({"theme": theme}),
        "autoSync": True,
        "updateDiagram": True,
    }
    compressed = zlib.compress(json.dumps(state).encode("utf-8"), 9)
    encoded = base64.urlsafe_b64encode(compressed).decode("ascii").rstrip("=")
    return MERMAID_LIVE_URL + encoded


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class LiveServer:
    """Session registry plus the single HTTP/WebSocket server that serves it.

    Args:
        registry: Session registry (a fresh one by default).
        store: Persisted diagram store used by the view, export, editor
            and listing routes.
        host: Interface to bind (default: 127.0.0.1).
        port_range: Inclusive ``(low, high)`` range to pick a port from.
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        store: DiagramStore | None = None,
        host: str = _DEFAULT_HOST,
        port_range: tuple[int, int] = (PORT_RANGE_START, PORT_RANGE_END),
    ) -> None:
        self.registry = registry or SessionRegistry()
        self.store = store or DiagramStore()
        self.host = host
        self.port_low, self.port_high = port_range
        self.port: int | None = None

        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._socket: socket.socket | None = None
        self._starting: asyncio.Future | None = None
        self._connections: dict[int, WebSocket] = {}

        self._app = self._build_app()

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes, in priority order."""
        routes: list[Any] = [
            Route("/", self._gallery),
            Route("/api/diagrams", self._api_diagrams),
            Route(
                "/api/diagrams/{diagram_id:path}",
                self._api_diagram_delete,
                methods=["DELETE"],
            ),
            Route("/api", self._api_not_found),
            Route("/api/{rest:path}", self._api_not_found),
        ]
        for path, filename, media_type, cache in _ASSETS:
            routes.append(Route(path, self._asset_endpoint(filename, media_type, cache)))
        for prefix in _ID_PREFIXES:
            routes.append(Route(f"/{prefix}", self._missing_id))
        routes += [
            Route("/view/{diagram_id:path}", self._view),
            Route("/export/{diagram_id:path}", self._export),
            Route("/mermaid-live/{diagram_id:path}", self._mermaid_live),
            Route("/{session_id:path}", self._live_preview),
            WebSocketRoute("/{session_id:path}", self._ws_endpoint),
        ]
        return Starlette(routes=routes)

    @property
    def app(self) -> Starlette:
        return self._app

    # --- Helpers ---

    def _port_for(self, request: Request) -> int | None:
        return self.port or request.url.port

    @staticmethod
    def _bad_id(raw: str, as_json: bool = False) -> Response | None:
        """Return a 400 response if ``raw`` is empty or not a safe ID."""
        if not raw:
            message = "Diagram ID is required"
        elif not is_valid_session_id(raw):
            message = "Invalid diagram ID"
        else:
            return None
        if as_json:
            return JSONResponse({"error": message}, status_code=400)
        return PlainTextResponse(message, status_code=400)

    @staticmethod
    def _html(content: str) -> HTMLResponse:
        return HTMLResponse(
            content,
            headers={
                "Content-Security-Policy": CSP_HEADER,
                "Cache-Control": CACHE_NO_STORE,
            },
        )

    # --- HTTP Endpoints ---

    async def _gallery(self, request: Request) -> Response:
        """Serve the gallery page."""
        try:
            page = render_gallery_page(self._port_for(request))
        except AssetMissing as e:
            logger.error(f"Failed to serve gallery page: {e}")
            return PlainTextResponse("Not found", status_code=404)
        return self._html(page)

    async def _api_diagrams(self, request: Request) -> JSONResponse:
        """List rendered diagrams, newest first."""
        try:
            diagrams = self.store.list_diagrams()
        except OSError as e:
            logger.error(f"API error: list diagrams: {e}")
            return JSONResponse(
                {"error": "Failed to list diagrams", "message": str(e)},
                status_code=500,
            )
        return JSONResponse(
            {"diagrams": [d.to_dict() for d in diagrams], "count": len(diagrams)},
            headers={"Cache-Control": CACHE_NO_STORE},
        )

    async def _api_diagram_delete(self, request: Request) -> Response:
        """Delete a persisted diagram and drop its live session."""
        diagram_id = request.path_params["diagram_id"]
        bad = self._bad_id(diagram_id, as_json=True)
        if bad is not None:
            return bad
        try:
            self.store.delete(diagram_id)
        except SessionNotFound:
            return JSONResponse({"error": "Diagram not found"}, status_code=404)
        except OSError as e:
            logger.error(f"API error: delete diagram {diagram_id}: {e}")
            return JSONResponse(
                {"error": "Failed to delete diagram", "message": str(e)},
                status_code=500,
            )
        self.registry.remove(diagram_id)
        return JSONResponse(
            {"success": True}, headers={"Cache-Control": CACHE_NO_STORE}
        )

    async def _api_not_found(self, request: Request) -> JSONResponse:
        return JSONResponse({"error": "Not found"}, status_code=404)

    def _asset_endpoint(
        self, filename: str, media_type: str, cache: str
    ) -> Callable[[Request], Any]:
        async def endpoint(request: Request) -> Response:
            try:
                content = read_asset(filename)
            except AssetMissing as e:
                logger.error(str(e))
                return PlainTextResponse("Not found", status_code=404)
            return Response(
                content, media_type=media_type, headers={"Cache-Control": cache}
            )

        endpoint.__name__ = f"asset_{filename.replace('.', '_')}"
        return endpoint

    async def _missing_id(self, request: Request) -> Response:
        return PlainTextResponse("Diagram ID is required", status_code=400)

    async def _view(self, request: Request) -> Response:
        """Static preview of a persisted diagram, without live reload."""
        diagram_id = request.path_params["diagram_id"]
        bad = self._bad_id(diagram_id)
        if bad is not None:
            return bad
        artifact = self.store.find_artifact(diagram_id)
        if artifact is None:
            return PlainTextResponse("Diagram not found", status_code=404)
        try:
            content = diagram_markup(artifact)
            options = self.store.load_options(diagram_id)
            page = render_diagram_page(
                content,
                diagram_id,
                self._port_for(request),
                background=options.background,
                live=False,
            )
        except AssetMissing as e:
            logger.error(str(e))
            return PlainTextResponse("Not found", status_code=404)
        except OSError as e:
            logger.error(f"Error reading diagram {diagram_id}: {e}")
            return PlainTextResponse("Error reading diagram", status_code=500)
        return self._html(page)

    async def _export(self, request: Request) -> Response:
        """Render the saved source to PNG and return it as a download."""
        diagram_id = request.path_params["diagram_id"]
        bad = self._bad_id(diagram_id)
        if bad is not None:
            return bad
        try:
            source = self.store.load_source(diagram_id)
            options = self.store.load_options(diagram_id)
            with tempfile.TemporaryDirectory(prefix="loupe-export-") as tmp:
                output = Path(tmp) / f"{diagram_id}.png"
                await render_diagram(source, output, options, DiagramFormat.PNG)
                data = output.read_bytes()
        except (SessionNotFound, RenderFailure, OSError) as e:
            logger.error(f"Failed to export {diagram_id} as PNG: {e}")
            return PlainTextResponse("Failed to export PNG", status_code=500)
        logger.info(f"Exported {diagram_id} as PNG ({len(data)} bytes)")
        return Response(
            data,
            media_type="image/png",
            headers={
                "Content-Disposition": f'attachment; filename="{diagram_id}.png"',
                "Cache-Control": CACHE_NO_STORE,
            },
        )

    async def _mermaid_live(self, request: Request) -> Response:
        """Return a mermaid.live URL for editing the saved source."""
        diagram_id = request.path_params["diagram_id"]
        bad = self._bad_id(diagram_id, as_json=True)
        if bad is not None:
            return bad
        try:
            source = self.store.load_source(diagram_id)
        except SessionNotFound:
            return JSONResponse({"error": "Diagram not found"}, status_code=404)
        options = self.store.load_options(diagram_id)
        return JSONResponse(
            {"url": mermaid_live_url(source, options.theme)},
            headers={"Cache-Control": CACHE_NO_STORE},
        )

    async def _live_preview(self, request: Request) -> Response:
        """Live preview page for a registered session."""
        session_id = request.path_params["session_id"]
        bad = self._bad_id(session_id)
        if bad is not None:
            return bad
        session = self.registry.get(session_id)
        if session is None:
            return PlainTextResponse("Diagram not found", status_code=404)
        try:
            content = diagram_markup(session.watched_file_path)
            options = self.store.load_options(session_id)
            page = render_diagram_page(
                content,
                session_id,
                self._port_for(request),
                background=options.background,
                live=True,
            )
        except FileNotFoundError:
            return PlainTextResponse("Diagram not found", status_code=404)
        except OSError as e:
            logger.error(f"Error reading diagram {session_id}: {e}")
            return PlainTextResponse(f"Error reading diagram: {e}", status_code=500)
        return self._html(page)

    # --- WebSocket ---

    async def _ws_endpoint(self, websocket: WebSocket) -> None:
        """Attach a viewer to its session until it disconnects.

        The connection is attached before the handshake completes, so a
        viewer is registered by the time its client sees the socket open.
        Connections to unknown sessions are rejected during the handshake.
        No client-to-server messages are defined; anything received is
        ignored.
        """
        session_id = websocket.path_params.get("session_id", "")
        if not self.registry.attach_connection(session_id, websocket):
            logger.debug(f"Rejected viewer for unknown session {session_id!r}")
            await websocket.close(code=_WS_POLICY_VIOLATION)
            return

        self._connections[id(websocket)] = websocket
        try:
            await websocket.accept()
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            self.registry.detach_connection(session_id, websocket)
            self._connections.pop(id(websocket), None)

    # --- Lifecycle ---

    @property
    def is_running(self) -> bool:
        return self.port is not None

    @property
    def url(self) -> str:
        return f"http://{_DISPLAY_HOST}:{self.port}"

    def session_url(self, session_id: str) -> str:
        return f"{self.url}/{session_id}"

    async def ensure_server(self) -> int:
        """Start the server if needed and return its port.

        Concurrent callers share one startup: the first caller marks the
        server as starting before its first await, later callers wait on
        the same future.

        Raises:
            NoPortAvailable: If no port in the range can be bound.
        """
        if self.port is not None:
            return self.port
        if self._starting is not None:
            return await asyncio.shield(self._starting)

        starting = asyncio.get_running_loop().create_future()
        self._starting = starting
        try:
            port = await self._start()
        except BaseException as e:
            self._starting = None
            if isinstance(e, Exception):
                starting.set_exception(e)
                # Mark retrieved; callers that awaited already saw it
                starting.exception()
            else:
                starting.cancel()
            raise
        self._starting = None
        starting.set_result(port)
        return port

    def _bind_first_available(self) -> tuple[int, socket.socket]:
        low = self.port_low
        while low <= self.port_high:
            port = find_available_port(low, self.port_high, self.host)
            try:
                return port, _bind_socket(self.host, port)
            except OSError:
                # Lost the race for this port to another process
                logger.debug(f"Port {port} taken between check and bind")
                low = port + 1
        raise NoPortAvailable(self.port_low, self.port_high)

    async def _start(self) -> int:
        port, sock = self._bind_first_available()
        config = uvicorn.Config(
            app=self._app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        server = _EmbeddedServer(config)
        self._socket = sock
        self._server = server
        self._serve_task = asyncio.get_running_loop().create_task(
            server.serve(sockets=[sock])
        )
        try:
            while not server.started:
                if self._serve_task.done():
                    raise RuntimeError(f"Live server failed to start on port {port}")
                await asyncio.sleep(0.01)
        except BaseException:
            self._reset_state()
            raise

        self.port = port
        self._serve_task.add_done_callback(self._on_serve_done)
        logger.info(f"Live reload server started on port {port}")
        return port

    def _on_serve_done(self, task: asyncio.Task) -> None:
        if task is not self._serve_task:
            return
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Live server stopped unexpectedly: {task.exception()}")
        self._reset_state()

    def _reset_state(self) -> None:
        task = self._serve_task
        self._serve_task = None
        if task is not None and not task.done():
            task.cancel()
        if self._socket is not None:
            self._socket.close()
        self._socket = None
        self._server = None
        self.port = None

    async def shutdown(self) -> None:
        """Close watchers, viewer connections, and the server.

        Safe to call when nothing is running.
        """
        try:
            await asyncio.wait_for(self.registry.wait_idle(), timeout=_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Pending reloads still running at shutdown, dropping them")
        connections = {id(c): c for c in self.registry.close_all()}
        connections.update(self._connections)
        self._connections.clear()
        for ws in connections.values():
            try:
                await ws.close(code=1001)
            except Exception:
                logger.debug("Viewer connection already closed")

        server, task = self._server, self._serve_task
        if server is not None:
            server.should_exit = True
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Live server did not stop in time, cancelling")
            except Exception:
                logger.debug("Live server exited with an error during shutdown")
        self._reset_state()
        if server is not None:
            logger.info("Live reload server stopped")

    # --- Standalone mode ---

    def register_persisted(self) -> int:
        """Register a session for every persisted diagram with an artifact."""
        registered = 0
        for info in self.store.list_diagrams():
            self.registry.register(info.id, self.store.artifact_path(info.id, info.format))
            registered += 1
        return registered


async def serve_forever(
    server: LiveServer,
    no_open: bool = False,
    announce: Callable[[str], None] | None = None,
) -> None:
    """Run the server standalone until SIGINT/SIGTERM.

    Registers every persisted diagram, starts the server, and opens the
    gallery in a browser.
    """
    count = server.register_persisted()
    await server.ensure_server()
    gallery_url = f"{server.url}/"
    if announce is not None:
        announce(f"Serving {count} diagram(s) at {gallery_url}")
    if not no_open:
        open_browser(gallery_url)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: Ctrl-C surfaces as KeyboardInterrupt instead
            pass
    try:
        await stop.wait()
    finally:
        await server.shutdown()

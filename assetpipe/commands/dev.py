"""
Dev server for assetpipe.

Serves the project over HTTP and keeps a WebSocket channel open to every
page it served. When a watched step sequence finishes, the watch router
calls ``DevServer.notify`` and each browser either swaps its stylesheets
or reloads.
"""

from __future__ import annotations

import asyncio
import functools
import json
import threading
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterable, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve as ws_serve

from assetpipe.core.utils import log


# =============================================================================
# Browser Client
# =============================================================================

PORT_PLACEHOLDER = "__ASSETPIPE_WS_PORT__"

RELOAD_CLIENT = """
<script data-assetpipe-reload>
(function () {
  var port = __ASSETPIPE_WS_PORT__;
  var retryIn = 250;

  function swapStylesheets(name) {
    var links = document.querySelectorAll('link[rel="stylesheet"][href]');
    Array.prototype.forEach.call(links, function (link) {
      var url = new URL(link.href, location.href);
      if (name && url.pathname.split('/').pop() !== name) return;
      url.searchParams.set('assetpipe', String(Date.now()));
      link.href = url.toString();
    });
  }

  function open() {
    var socket = new WebSocket('ws://' + location.hostname + ':' + port + '/ws');
    socket.addEventListener('open', function () { retryIn = 250; });
    socket.addEventListener('message', function (event) {
      var data;
      try { data = JSON.parse(event.data); } catch (err) { return; }
      if (data.type === 'css-reload') swapStylesheets(data.file);
      else if (data.type === 'reload') location.reload();
    });
    socket.addEventListener('close', function () {
      setTimeout(open, retryIn);
      retryIn = Math.min(retryIn * 2, 4000);
    });
  }

  open();
})();
</script>"""

_CLOSING_TAGS = ("</body>", "</html>")


def inject_reload_script(html: str, ws_port: int) -> str:
    """Return ``html`` with the reload client added.

    The client goes in front of the first ``</body>``, failing that the
    first ``</html>``, and is appended to fragments that have neither.
    """
    client = RELOAD_CLIENT.replace(PORT_PLACEHOLDER, str(ws_port))
    for tag in _CLOSING_TAGS:
        at = html.find(tag)
        if at != -1:
            return f"{html[:at]}{client}\n{html[at:]}"
    return html + client


# =============================================================================
# HTTP Side
# =============================================================================


class InjectingHandler(SimpleHTTPRequestHandler):
    """Static file handler that adds the reload client to HTML pages."""

    def __init__(self, *args, ws_port: int = 3001, verbose: bool = False, **kwargs):
        # The base constructor serves the request, so these go first
        self.ws_port = ws_port
        self.verbose = verbose
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        if self.verbose:
            super().log_message(format, *args)

    def end_headers(self):
        self.send_header("Cache-Control", "no-store")
        super().end_headers()

    def _page(self) -> Optional[Path]:
        target = Path(self.translate_path(self.path))
        if target.is_dir():
            target = target / "index.html"
        if target.suffix in (".html", ".htm") and target.is_file():
            return target
        return None

    def do_GET(self):
        page = self._page()
        if page is None:
            super().do_GET()
            return

        try:
            html = page.read_text(encoding="utf-8", errors="replace")
        except OSError:
            self.send_error(HTTPStatus.NOT_FOUND)
            return

        body = inject_reload_script(html, self.ws_port).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


# =============================================================================
# WebSocket Side
# =============================================================================


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class ReloadBroadcaster:
    """Set of open browser connections.

    Everything here runs on the event loop thread.
    """

    def __init__(self):
        self._clients: set[ServerConnection] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def handler(self, websocket: ServerConnection) -> None:
        self._clients.add(websocket)
        log.info(f"Browser connected ({_plural(self.client_count, 'client')})")
        try:
            await websocket.wait_closed()
        finally:
            self._clients.discard(websocket)
            log.info(f"Browser disconnected ({_plural(self.client_count, 'client')})")

    async def _deliver(self, websocket: ServerConnection, payload: str) -> bool:
        try:
            await websocket.send(payload)
        except websockets.exceptions.ConnectionClosed:
            self._clients.discard(websocket)
            return False
        return True

    async def broadcast(self, message: dict) -> int:
        """Send ``message`` as JSON to every browser; return how many got it."""
        if not self._clients:
            return 0
        payload = json.dumps(message)
        delivered = await asyncio.gather(
            *(self._deliver(ws, payload) for ws in list(self._clients))
        )
        return sum(delivered)


def _reject_other_paths(connection, request):
    if request.path == "/ws":
        return None
    return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")


def reload_type_for(outputs: Iterable[Path]) -> tuple[str, Optional[str]]:
    """``css-reload`` when only stylesheets (and their maps) changed.

    The file name is included when exactly one stylesheet changed.
    """
    outputs = list(outputs)
    sheets = [p.name for p in outputs if p.suffix == ".css"]
    if not sheets or any(p.suffix not in (".css", ".map") for p in outputs):
        return "reload", None
    return "css-reload", sheets[0] if len(sheets) == 1 else None


# =============================================================================
# Dev Server
# =============================================================================


class DevServer:
    """HTTP server plus live reload channel, owned by the pipeline.

    ``start()`` may be called more than once, concurrently too; only the
    first call binds ports. Port 0 for HTTP also makes the WebSocket port
    ephemeral unless ``ws_port`` is given.
    """

    def __init__(
        self,
        root: Path,
        port: int = 3000,
        host: str = "localhost",
        ws_port: Optional[int] = None,
    ):
        self.root = root
        self.port = port
        self.host = host
        if ws_port is None:
            ws_port = 0 if port == 0 else port + 1
        self.ws_port = ws_port
        self.broadcaster = ReloadBroadcaster()
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._http_thread: Optional[threading.Thread] = None
        self._ws_server: Optional[Server] = None
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._httpd is not None

    async def start(self) -> None:
        """Bind the HTTP and WebSocket servers."""
        # Held across the binds so a concurrent caller sees the running server
        async with self._start_lock:
            if self.running:
                log.info(f"Dev server already running at http://{self.host}:{self.port}")
                return
            await self._bind()

    async def _bind(self) -> None:
        ws_server = await ws_serve(
            self.broadcaster.handler,
            self.host,
            self.ws_port,
            process_request=_reject_other_paths,
        )
        # Port 0 asks the OS for a free port; record the one actually bound
        self.ws_port = next(iter(ws_server.sockets)).getsockname()[1]

        handler_factory = functools.partial(
            InjectingHandler, directory=str(self.root), ws_port=self.ws_port
        )
        try:
            httpd = ThreadingHTTPServer((self.host, self.port), handler_factory)
        except OSError:
            ws_server.close()
            await ws_server.wait_closed()
            raise

        self.port = httpd.server_address[1]
        self._ws_server = ws_server
        self._httpd = httpd
        self._http_thread = threading.Thread(target=httpd.serve_forever, daemon=True)
        self._http_thread.start()

        log.success(f"HTTP server: http://{self.host}:{self.port}")
        log.success(f"Live reload: ws://{self.host}:{self.ws_port}/ws")

    async def notify(self, outputs: Iterable[Path] = ()) -> None:
        """Push a reload matched to what changed."""
        if not self.running:
            return

        reload_type, filename = reload_type_for(outputs)
        message: dict = {"type": reload_type}
        if filename:
            message["file"] = filename

        sent = await self.broadcaster.broadcast(message)
        if sent:
            log.info(f"Notified {_plural(sent, 'browser')}: {reload_type}")

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        if self._httpd is not None:
            # shutdown() blocks until serve_forever returns
            await asyncio.to_thread(self._httpd.shutdown)
            self._httpd.server_close()
            self._httpd = None
            self._http_thread = None

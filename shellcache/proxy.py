"""HTTP front that routes browser requests through the cache controller."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from . import store
from ._offline import OFFLINE_PAGE_HTML
from .config import ProxyConfig
from .controller import CacheController, ControllerStateError
from .fetcher import Fetcher, NetworkError
from .models import MODE_NAVIGATE, MODE_NO_CORS, CachedResponse, FetchRequest, FetchSource

logger = logging.getLogger(__name__)

# Reserved path for the front's own status endpoint.
HEALTH_PATH = "/_shellcache/health"

# Header naming where a relayed response came from (network, cache, fallback).
SOURCE_HEADER = "X-Shellcache"

# Response headers recomputed by the front for every reply.
_RESPONSE_SKIP_HEADERS = frozenset({"content-length", "connection", "transfer-encoding", "date", "server"})


class ProxyError(Exception):
    """Raised when the HTTP front cannot be started."""
    pass


def _detect_mode(method: str, headers: Dict[str, str]) -> str:
    """Infer the request mode the browser used.

    Sec-Fetch-Mode is authoritative. Without it, an HTML GET is treated as
    a navigation. Header names are matched case-insensitively.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    fetch_mode = lowered.get("sec-fetch-mode")
    if fetch_mode:
        return fetch_mode.lower()
    if method == "GET" and "text/html" in lowered.get("accept", ""):
        return MODE_NAVIGATE
    return MODE_NO_CORS


class ProxyHandler(BaseHTTPRequestHandler):
    """HTTP request handler that answers through the cache controller."""

    # Class-level references set by factory
    controller: Optional[CacheController] = None
    fetcher: Optional[Fetcher] = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_body(self, code: int, body: bytes, headers: Dict[str, str], message: Optional[str] = None) -> None:
        self.send_response(code, message)
        for name, value in headers.items():
            if name.lower() not in _RESPONSE_SKIP_HEADERS:
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self._send_body(code, body, {"Content-Type": "application/json"})

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_cached(self, response: CachedResponse, source: FetchSource) -> None:
        headers = dict(response.headers)
        headers[SOURCE_HEADER] = source.value
        self._send_body(response.status, response.body, headers, response.status_text or None)

    def _send_offline_page(self) -> None:
        self._send_body(
            503,
            OFFLINE_PAGE_HTML.encode("utf-8"),
            {"Content-Type": "text/html; charset=utf-8", "Cache-Control": "no-store", SOURCE_HEADER: "offline"},
        )

    def _build_request(self) -> FetchRequest:
        """Translate the incoming HTTP request into a FetchRequest."""
        if self.path.startswith(("http://", "https://")):
            # Absolute-form target: keep its own origin
            url = self.path
        else:
            url = self.fetcher.origin + self.path

        headers = {name: value for name, value in self.headers.items()}
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else None

        return FetchRequest(
            url=url,
            method=self.command,
            mode=_detect_mode(self.command, headers),
            headers=headers,
            body=body,
        )

    def _handle(self) -> None:
        try:
            if self.command == "GET" and self.path == HEALTH_PATH:
                self._handle_health()
                return
            self._handle_intercept()
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    do_GET = _handle
    do_HEAD = _handle
    do_POST = _handle
    do_PUT = _handle
    do_PATCH = _handle
    do_DELETE = _handle
    do_OPTIONS = _handle

    def _handle_health(self) -> None:
        """Handle GET /_shellcache/health - controller and cache status."""
        controller = self.controller
        try:
            entries = controller.entry_count()
        except store.StoreError as e:
            logger.error("Storage error in health check: %s", e)
            self._send_error_json(500, "Storage error")
            return

        self._send_json(
            200,
            {
                "status": "ok",
                "state": controller.state.value,
                "cache": controller.cache_name,
                "entries": entries,
            },
        )

    def _handle_intercept(self) -> None:
        request = self._build_request()

        # The front only relays to the app origin, never to arbitrary hosts
        if request.origin.lower() != self.fetcher.origin:
            logger.warning("Rejected request for foreign origin %s", request.origin)
            self._send_error_json(403, "Only the app origin is served")
            return

        try:
            outcome = self.controller.handle_fetch(request)
        except ControllerStateError as e:
            logger.warning("Request %s while controller not serving: %s", request.url, e)
            self._send_error_json(503, "Cache controller is not serving yet")
            return
        except NetworkError as e:
            logger.info("Asset request failed with no cached copy: %s", e)
            self._send_error_json(502, "Upstream unreachable")
            return

        if outcome.source is FetchSource.BYPASS:
            self._forward(request)
        elif outcome.response is None:
            self._send_offline_page()
        else:
            self._send_cached(outcome.response, outcome.source)

    def _forward(self, request: FetchRequest) -> None:
        """Pass a bypassed app-origin request straight to the network."""
        try:
            response = self.fetcher.fetch(request)
        except NetworkError as e:
            logger.info("Bypassed request failed: %s", e)
            self._send_error_json(502, "Upstream unreachable")
            return
        self._send_body(response.status, response.body, response.headers, response.status_text or None)


def _create_handler_class(controller: CacheController, fetcher: Fetcher) -> type:
    """Create a handler class with the controller and fetcher bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.controller = controller
    BoundProxyHandler.fetcher = fetcher
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP front for the offline cache controller."""

    def __init__(
        self,
        config: ProxyConfig,
        controller: CacheController,
        fetcher: Fetcher,
    ) -> None:
        """Initialize the front.

        Args:
            config: Proxy configuration.
            controller: Controller that decides how requests are answered.
            fetcher: Network access used for bypassed requests.
        """
        self.config = config
        self.controller = controller
        self.fetcher = fetcher
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the front in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(self.controller, self.fetcher)
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d", self.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or shellcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the front gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def port(self) -> int:
        """Port actually bound (useful when configured with an ephemeral port)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()

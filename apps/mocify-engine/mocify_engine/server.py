"""HTTP listener serving one collection's routes."""

from __future__ import annotations

import json
import os
import socket
import socketserver
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import structlog

from .errors import ConflictError, NoRouteError, NotFoundError, PortInUseError
from .matcher import RouteMatch, match_route, normalize_request_path
from .registry import CollectionRegistry
from .models import Route

LOGGER = structlog.get_logger("mocify.server")

DEFAULT_CONTENT_TYPE = "application/json"
DEFAULT_GRACE_SECONDS = 5.0
PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, HEAD, OPTIONS",
    "Access-Control-Max-Age": "86400",
}


@dataclass
class MockRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class MockResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    match: RouteMatch | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def build_response(route: Route) -> MockResponse:
    """Canned response of ``route`` with the engine's default headers added."""

    headers = dict(route.response_headers)
    if route.header("Content-Type") is None:
        headers["Content-Type"] = DEFAULT_CONTENT_TYPE
    if route.header("Access-Control-Allow-Origin") is None:
        headers["Access-Control-Allow-Origin"] = "*"
    return MockResponse(
        status=route.status_code,
        headers=headers,
        body=route.response_body.encode("utf-8"),
    )


def json_response(status: int, payload: dict[str, Any]) -> MockResponse:
    return MockResponse(
        status=int(status),
        headers={"Content-Type": "application/json", "Access-Control-Allow-Origin": "*"},
        body=json.dumps(payload).encode("utf-8"),
    )


def not_found_response(method: str, path: str) -> MockResponse:
    return json_response(HTTPStatus.NOT_FOUND, {"error": "Route not found", "method": method, "path": path})


def failure_response() -> MockResponse:
    return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "mock failure"})


def bad_request_response(message: str) -> MockResponse:
    return json_response(HTTPStatus.BAD_REQUEST, {"error": message})


def preflight_response(request: MockRequest) -> MockResponse:
    headers = dict(PREFLIGHT_HEADERS)
    requested = request.header("Access-Control-Request-Headers")
    if requested:
        headers["Access-Control-Allow-Headers"] = requested
    return MockResponse(status=int(HTTPStatus.NO_CONTENT), headers=headers)


def dispatch(registry: CollectionRegistry, collection_id: str, request: MockRequest) -> MockResponse:
    """Resolve ``request`` against the collection's current routes.

    Applies the matched route's delay in the calling thread. Unmatched
    requests, and requests for a collection deleted meanwhile, get a 404.
    """

    try:
        collection = registry.get(collection_id)
        routes = registry.routes_snapshot(collection_id)
    except NotFoundError:
        return not_found_response(request.method, normalize_request_path(request.path))
    try:
        matched = match_route(routes, request.method, request.path, collection.base_path)
    except NoRouteError as exc:
        if request.method.upper() == "OPTIONS" and request.header("Access-Control-Request-Method"):
            return preflight_response(request)
        return not_found_response(exc.method, exc.path)
    return serve_route(matched)


def serve_route(matched: RouteMatch) -> MockResponse:
    """Sleep for the route's delay in the calling thread, then build its response."""

    delay_ms = matched.route.delay_ms
    if delay_ms > 0:
        time.sleep(delay_ms / 1000)
    response = build_response(matched.route)
    response.match = matched
    return response


def body_allowed(status: int, method: str) -> bool:
    if method.upper() == "HEAD":
        return False
    return not (100 <= status < 200 or status in (HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED))


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ThreadedHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    """Thread-per-connection server that tracks open connections and in-flight requests."""

    daemon_threads = True
    block_on_close = False
    # SO_REUSEADDR on Windows would let two listeners share a port.
    allow_reuse_address = os.name != "nt"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._connections: set[socket.socket] = set()
        self._in_flight = 0
        self._idle = threading.Condition()
        self.draining = False
        super().__init__(*args, **kwargs)

    def process_request(self, request: Any, client_address: Any) -> None:
        with self._idle:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request: Any) -> None:
        with self._idle:
            self._connections.discard(request)
        super().shutdown_request(request)

    def request_started(self) -> None:
        with self._idle:
            self._in_flight += 1

    def request_finished(self) -> None:
        with self._idle:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def wait_for_idle(self, timeout: float) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def close_connections(self) -> int:
        with self._idle:
            remaining = list(self._connections)
        for connection in remaining:
            try:
                connection.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        return len(remaining)


class MockServerInstance:
    """Runs a single HTTP listener for one collection."""

    def __init__(
        self,
        registry: CollectionRegistry,
        collection_id: str,
        port: int,
        host: str = "127.0.0.1",
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self._registry = registry
        self.collection_id = collection_id
        self.port = port
        self.host = host
        self.grace_seconds = grace_seconds
        self._httpd: ThreadedHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._state = ServerState.STOPPED
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._logger = LOGGER.bind(collection_id=collection_id, port=port)

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServerState.RUNNING

    @property
    def address(self) -> tuple[str, int]:
        if self._httpd is None:
            return self.host, self.port
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        with self._lock:
            if self._state != ServerState.STOPPED:
                raise ConflictError(f"Server on port {self.port} is already {self._state.value}")
            self._state = ServerState.STARTING
            self._logger.info("server_starting", host=self.host)
            try:
                httpd = ThreadedHTTPServer((self.host, self.port), self._build_handler_factory())
            except OSError as exc:
                self._state = ServerState.STOPPED
                self._logger.warning("server_bind_failed", error=exc.strerror or str(exc))
                raise PortInUseError(self.port, exc.strerror or str(exc)) from exc
            self._httpd = httpd
            self._thread = threading.Thread(
                target=httpd.serve_forever,
                name=f"mocify-{self.port}",
                daemon=True,
            )
            self._thread.start()
            self._state = ServerState.RUNNING
            self._ready.set()
        self._logger.info("server_started", host=self.address[0])

    def stop(self) -> None:
        """Stop accepting connections and let in-flight requests finish.

        Requests still running after the grace period, and idle keep-alive
        connections, are cut off. Stopping a stopped instance does nothing.
        """

        with self._lock:
            if self._state != ServerState.RUNNING or self._httpd is None:
                return
            self._state = ServerState.STOPPING
            httpd = self._httpd
            self._logger.info("server_stopping", in_flight=httpd.in_flight)
            httpd.draining = True
            try:
                httpd.shutdown()
                httpd.server_close()
                if not httpd.wait_for_idle(self.grace_seconds):
                    self._logger.warning("server_grace_expired", in_flight=httpd.in_flight)
                severed = httpd.close_connections()
                if severed:
                    self._logger.debug("server_connections_closed", count=severed)
            finally:
                if self._thread:
                    self._thread.join(timeout=2)
                self._httpd = None
                self._thread = None
                self._ready.clear()
                self._state = ServerState.STOPPED
        self._logger.info("server_stopped")

    def wait_until_ready(self, timeout: float = 1.0) -> bool:
        return self._ready.wait(timeout=timeout)

    def _build_handler_factory(self) -> type[BaseHTTPRequestHandler]:
        registry = self._registry
        collection_id = self.collection_id
        handler_logger = self._logger

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"
            server: ThreadedHTTPServer

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - avoid stderr
                handler_logger.debug(
                    "http_trace",
                    client_ip=self.client_address[0],
                    message=format % args,
                )

            def do_GET(self) -> None:  # noqa: N802 (BaseHTTPRequestHandler requirement)
                self._handle()

            def do_POST(self) -> None:  # noqa: N802
                self._handle()

            def do_PUT(self) -> None:  # noqa: N802
                self._handle()

            def do_DELETE(self) -> None:  # noqa: N802
                self._handle()

            def do_PATCH(self) -> None:  # noqa: N802
                self._handle()

            def do_HEAD(self) -> None:  # noqa: N802
                self._handle()

            def do_OPTIONS(self) -> None:  # noqa: N802
                self._handle()

            def _content_length(self) -> int | None:
                raw = (self.headers.get("Content-Length") or "0").strip()
                try:
                    length = int(raw)
                except ValueError:
                    return None
                return length if length >= 0 else None

            def _read_body(self, length: int) -> bytes:
                if "chunked" in (self.headers.get("Transfer-Encoding") or "").lower():
                    # Chunked request bodies are not decoded; drop the connection after replying.
                    self.close_connection = True
                    return b""
                return self.rfile.read(length) if length > 0 else b""

            def _handle(self) -> None:
                self.server.request_started()
                try:
                    self._serve()
                except (BrokenPipeError, ConnectionResetError):
                    self.close_connection = True
                    handler_logger.info("client_disconnected", method=self.command, path=self.path)
                finally:
                    self.server.request_finished()

            def _serve(self) -> None:
                headers = {key: value for key, value in self.headers.items()}
                length = self._content_length()
                if length is None:
                    # Body cannot be delimited; the connection is not reusable.
                    self.close_connection = True
                    request = MockRequest(method=self.command, path=self.path, headers=headers)
                    handler_logger.warning(
                        "request_rejected",
                        method=request.method,
                        path=request.path,
                        content_length=self.headers.get("Content-Length"),
                    )
                    self._write(request, bad_request_response("Invalid Content-Length header"))
                    return
                request = MockRequest(
                    method=self.command,
                    path=self.path,
                    headers=headers,
                    body=self._read_body(length),
                )
                handler_logger.info(
                    "request_received",
                    method=request.method,
                    path=request.path,
                    content_length=len(request.body),
                )
                started = time.perf_counter()
                try:
                    response = dispatch(registry, collection_id, request)
                except Exception:
                    handler_logger.exception("request_failed", method=request.method, path=request.path)
                    response = failure_response()
                self._write(request, response)
                elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
                if response.match is None:
                    handler_logger.warning(
                        "request_unmatched",
                        method=request.method,
                        path=request.path,
                        status=response.status,
                    )
                    return
                route = response.match.route
                handler_logger.info(
                    "request_served",
                    method=request.method,
                    path=request.path,
                    route_id=route.id,
                    route=route.name,
                    params=response.match.params or None,
                    status=response.status,
                    delay_ms=route.delay_ms,
                    elapsed_ms=elapsed_ms,
                )

            def _write(self, request: MockRequest, response: MockResponse) -> None:
                include_body = body_allowed(response.status, request.method)
                self.send_response(response.status)
                for key, value in response.headers.items():
                    if key.lower() in ("content-length", "connection", "transfer-encoding"):
                        continue
                    self.send_header(key, value)
                if include_body or request.method.upper() == "HEAD":
                    self.send_header("Content-Length", str(len(response.body)))
                if self.server.draining or response.status < 200:
                    # Clients never treat a 1xx status as final.
                    self.close_connection = True
                if self.close_connection:
                    self.send_header("Connection", "close")
                self.end_headers()
                if include_body:
                    self.wfile.write(response.body)
                self.wfile.flush()

        return Handler

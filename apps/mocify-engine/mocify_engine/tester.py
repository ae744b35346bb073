"""On-demand test invocations of a single route."""

from __future__ import annotations

import time
from urllib import error, request

import structlog

from .config import EngineSettings, InvocationMode
from .errors import InvocationError, MocifyError, NotFoundError
from .manager import ServerManager
from .matcher import RouteMatch, match_path, sample_path
from .models import Collection, Route, TestResult, TestRouteResponse
from .registry import CollectionRegistry
from .server import body_allowed, serve_route

LOGGER = structlog.get_logger("mocify.tester")


class _NoRedirect(request.HTTPRedirectHandler):
    """Report 3xx responses as configured instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: D401 - urllib hook
        return None


class RouteTester:
    """Synthesizes a request against one route and measures the outcome.

    In ``direct`` mode the tested route answers through the same delay and
    response construction a live server uses, without opening a socket, so a
    route can be tested while its collection is stopped. Sibling routes never
    take its place, even when one of them would win the sample path. In
    ``loopback`` mode a real HTTP request is sent to the collection's running
    server, so the live matcher decides which route answers.
    """

    def __init__(
        self,
        registry: CollectionRegistry,
        manager: ServerManager | None = None,
        settings: EngineSettings | None = None,
        mode: InvocationMode | None = None,
    ) -> None:
        self._registry = registry
        self._manager = manager
        self._settings = settings or EngineSettings()
        self.mode = mode or self._settings.test_mode

    def invoke(self, route_id: str) -> TestRouteResponse:
        route = self._registry.get_route(route_id)
        collection = self._registry.get(route.collection_id)
        path = self._request_path(collection, route)
        logger = LOGGER.bind(route_id=route.id, collection_id=collection.id, mode=self.mode.value)
        logger.info("route_test_started", method=route.method.value, path=path)
        if self.mode == InvocationMode.LOOPBACK:
            result = self._invoke_loopback(collection, route, path)
        else:
            result = self._invoke_direct(collection, route, path)
        logger.info(
            "route_test_finished",
            status=result.status_code,
            response_time_ms=result.response_time_ms,
        )
        return result

    def run(self, route_id: str) -> TestResult:
        """Like :meth:`invoke` but reports engine errors as a failed result."""

        try:
            route = self._registry.get_route(route_id)
            outcome = self.invoke(route_id)
        except MocifyError as exc:
            LOGGER.warning("route_test_failed", route_id=route_id, error=exc.message)
            return self._failure(route_id, exc.message)
        return TestResult(
            route_id=route.id,
            route_name=route.name,
            method=outcome.method,
            path=route.path,
            url=outcome.url,
            success=True,
            status_code=outcome.status_code,
            response_time_ms=outcome.response_time_ms,
            body=outcome.body,
            headers=outcome.headers,
        )

    def _failure(self, route_id: str, message: str) -> TestResult:
        try:
            route = self._registry.get_route(route_id)
        except NotFoundError:
            return TestResult(route_id=route_id, success=False, error=message)
        return TestResult(
            route_id=route.id,
            route_name=route.name,
            method=route.method.value,
            path=route.path,
            success=False,
            error=message,
        )

    @staticmethod
    def _request_path(collection: Collection, route: Route) -> str:
        path = sample_path(route.path)
        if not collection.base_path:
            return path
        if path == "/":
            return collection.base_path
        return f"{collection.base_path}{path}"

    def _invoke_direct(self, collection: Collection, route: Route, path: str) -> TestRouteResponse:
        method = route.method.value
        start = time.perf_counter()
        params = match_path(route.path, sample_path(route.path)) or {}
        response = serve_route(RouteMatch(route=route, params=params))
        elapsed_ms = (time.perf_counter() - start) * 1000
        include_body = body_allowed(response.status, method)
        headers = dict(response.headers)
        if include_body or method == "HEAD":
            headers["Content-Length"] = str(len(response.body))
        return TestRouteResponse(
            url=f"{self._settings.base_url(collection.port)}{path}",
            method=method,
            status_code=response.status,
            response_time_ms=int(elapsed_ms),
            body=response.text if include_body else "",
            headers=headers,
        )

    def _invoke_loopback(self, collection: Collection, route: Route, path: str) -> TestRouteResponse:
        port = self._manager.running_port(collection.id) if self._manager else None
        if port is None:
            raise NotFoundError("Server not running. Please start the server first.")
        target_host = self._settings.host if self._settings.host not in ("0.0.0.0", "::", "") else "127.0.0.1"
        method = route.method.value
        req = request.Request(f"http://{target_host}:{port}{path}", method=method)
        opener = request.build_opener(_NoRedirect)
        start = time.perf_counter()
        try:
            with opener.open(req, timeout=self._settings.test_timeout_seconds) as response:
                payload = response.read().decode("utf-8", errors="replace")
                status = response.getcode()
                headers = {key: value for key, value in response.headers.items()}
        except error.HTTPError as exc:
            payload = exc.read().decode("utf-8", errors="replace")
            status = exc.code
            headers = {key: value for key, value in exc.headers.items()} if exc.headers else {}
        except (error.URLError, OSError) as exc:
            raise InvocationError(f"HTTP request failed for {method} {path}: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000
        return TestRouteResponse(
            url=f"{self._settings.base_url(port)}{path}",
            method=method,
            status_code=status,
            response_time_ms=int(elapsed_ms),
            body=payload,
            headers=headers,
        )

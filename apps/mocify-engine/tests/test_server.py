from __future__ import annotations

import json
import socket
import threading
import time
from http.client import HTTPConnection, RemoteDisconnected
from typing import Iterator

import pytest

from mocify_engine import server as server_module
from mocify_engine.errors import PortInUseError
from mocify_engine.registry import CollectionRegistry
from mocify_engine.server import MockRequest, MockServerInstance, ServerState, dispatch


@pytest.fixture
def users_api(registry: CollectionRegistry, free_port: int):
    collection = registry.create(name="User API", port=free_port)
    registry.create_route(
        collection.id,
        name="List users",
        method="GET",
        path="/users",
        status_code=200,
        response_body="[]",
        response_headers={"X-Mock": "users"},
    )
    return collection


@pytest.fixture
def instance(registry: CollectionRegistry, users_api) -> Iterator[MockServerInstance]:
    server = MockServerInstance(registry, users_api.id, users_api.port, grace_seconds=2.0)
    server.start()
    try:
        yield server
    finally:
        server.stop()


def _request(port: int, method: str, path: str, headers: dict[str, str] | None = None):
    connection = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        connection.request(method, path, headers=headers or {})
        response = connection.getresponse()
        return response.status, dict(response.getheaders()), response.read().decode("utf-8")
    finally:
        connection.close()


def test_serves_configured_route(instance: MockServerInstance) -> None:
    assert instance.state is ServerState.RUNNING

    status, headers, body = _request(instance.port, "GET", "/users")

    assert status == 200
    assert body == "[]"
    assert headers["X-Mock"] == "users"
    assert headers["Content-Type"] == "application/json"
    assert headers["Content-Length"] == "2"
    assert headers["Access-Control-Allow-Origin"] == "*"


def test_unmatched_request_returns_404(instance: MockServerInstance) -> None:
    status, _, body = _request(instance.port, "POST", "/users")
    assert status == 404
    assert json.loads(body)["error"] == "Route not found"

    status, _, _ = _request(instance.port, "GET", "/missing")
    assert status == 404


def test_configured_content_type_is_kept(registry: CollectionRegistry, users_api, instance) -> None:
    registry.create_route(
        users_api.id,
        name="Health",
        method="GET",
        path="/health",
        status_code=503,
        response_body="down",
        response_headers={"content-type": "text/plain"},
    )

    status, headers, body = _request(instance.port, "GET", "/health")

    assert status == 503
    assert body == "down"
    assert headers["content-type"] == "text/plain"
    assert "Content-Type" not in headers


def test_route_edits_apply_without_restart(registry: CollectionRegistry, users_api, instance) -> None:
    route = registry.list_routes(users_api.id)[0]

    registry.update_route(route.id, status_code=201, response_body='{"ok": true}')
    status, _, body = _request(instance.port, "GET", "/users")
    assert status == 201
    assert json.loads(body) == {"ok": True}

    registry.delete_route(route.id)
    status, _, _ = _request(instance.port, "GET", "/users")
    assert status == 404


def test_head_request_has_no_body(instance: MockServerInstance, registry: CollectionRegistry, users_api) -> None:
    registry.create_route(users_api.id, name="Head", method="HEAD", path="/users", status_code=200, response_body="[]")

    status, headers, body = _request(instance.port, "HEAD", "/users")

    assert status == 200
    assert body == ""
    assert headers["Content-Length"] == "2"


def test_cors_preflight_without_options_route(instance: MockServerInstance) -> None:
    status, headers, _ = _request(
        instance.port,
        "OPTIONS",
        "/users",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )

    assert status == 204
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert "GET" in headers["Access-Control-Allow-Methods"]


def test_delay_is_applied(registry: CollectionRegistry, users_api, instance) -> None:
    registry.create_route(users_api.id, name="Slow", method="GET", path="/slow", status_code=200, delay_ms=200)

    started = time.perf_counter()
    status, _, _ = _request(instance.port, "GET", "/slow")
    elapsed_ms = (time.perf_counter() - started) * 1000

    assert status == 200
    assert elapsed_ms >= 200


def test_slow_route_does_not_block_other_requests(registry: CollectionRegistry, users_api, instance) -> None:
    registry.create_route(users_api.id, name="Slow", method="GET", path="/slow", status_code=200, delay_ms=1000)
    results: list[int] = []
    slow = threading.Thread(target=lambda: results.append(_request(instance.port, "GET", "/slow")[0]))
    slow.start()
    time.sleep(0.1)

    started = time.perf_counter()
    status, _, _ = _request(instance.port, "GET", "/users")
    fast_ms = (time.perf_counter() - started) * 1000
    slow.join(timeout=5)

    assert status == 200
    assert fast_ms < 900
    assert results == [200]


def test_stop_waits_for_in_flight_request(registry: CollectionRegistry, users_api, instance) -> None:
    registry.create_route(users_api.id, name="Slow", method="GET", path="/slow", status_code=200, delay_ms=300)
    results: list[int] = []
    slow = threading.Thread(target=lambda: results.append(_request(instance.port, "GET", "/slow")[0]))
    slow.start()
    time.sleep(0.1)

    instance.stop()
    slow.join(timeout=5)

    assert results == [200]
    assert instance.state is ServerState.STOPPED


def test_stop_is_idempotent_and_refuses_new_connections(instance: MockServerInstance) -> None:
    port = instance.port

    instance.stop()
    instance.stop()

    assert instance.state is ServerState.STOPPED
    with pytest.raises(OSError):
        _request(port, "GET", "/users")


def test_instance_can_restart_after_stop(instance: MockServerInstance) -> None:
    instance.stop()
    instance.start()

    status, _, _ = _request(instance.port, "GET", "/users")
    assert status == 200


def test_bind_failure_raises_port_in_use(registry: CollectionRegistry, users_api) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", users_api.port))
        blocker.listen(1)
        server = MockServerInstance(registry, users_api.id, users_api.port)

        with pytest.raises(PortInUseError):
            server.start()
        assert server.state is ServerState.STOPPED


def test_dispatch_for_deleted_collection_returns_404(registry: CollectionRegistry, users_api) -> None:
    registry.delete(users_api.id)

    response = dispatch(registry, users_api.id, MockRequest(method="GET", path="/users"))

    assert response.status == 404
    assert response.match is None


def _raw_exchange(port: int, payload: bytes) -> bytes:
    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        client.sendall(payload)
        chunks = []
        while True:
            chunk = client.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


def test_invalid_content_length_gets_400_and_closes(instance: MockServerInstance) -> None:
    raw = _raw_exchange(
        instance.port,
        b"POST /users HTTP/1.1\r\nHost: localhost\r\nContent-Length: abc\r\n\r\n",
    )

    head, _, body = raw.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 400")
    assert b"Connection: close" in head
    assert json.loads(body)["error"] == "Invalid Content-Length header"

    status, _, _ = _request(instance.port, "GET", "/users")
    assert status == 200


def test_negative_content_length_is_rejected(instance: MockServerInstance) -> None:
    raw = _raw_exchange(
        instance.port,
        b"POST /users HTTP/1.1\r\nHost: localhost\r\nContent-Length: -5\r\n\r\n",
    )

    assert raw.startswith(b"HTTP/1.1 400")


def test_handler_fault_becomes_500_and_server_keeps_serving(
    instance: MockServerInstance,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original = server_module.dispatch

    def failing_dispatch(registry, collection_id, request):
        if request.path == "/boom":
            raise RuntimeError("route table exploded")
        return original(registry, collection_id, request)

    monkeypatch.setattr(server_module, "dispatch", failing_dispatch)

    status, headers, body = _request(instance.port, "GET", "/boom")
    assert status == 500
    assert json.loads(body) == {"error": "mock failure"}
    assert headers["Content-Type"] == "application/json"

    status, _, body = _request(instance.port, "GET", "/users")
    assert status == 200
    assert body == "[]"


def test_informational_status_closes_connection(registry: CollectionRegistry, users_api, instance) -> None:
    registry.create_route(users_api.id, name="Continue", method="GET", path="/continue", status_code=100)
    registry.create_route(users_api.id, name="Processing", method="GET", path="/processing", status_code=102)

    with pytest.raises(RemoteDisconnected):
        _request(instance.port, "GET", "/continue")

    status, headers, body = _request(instance.port, "GET", "/processing")
    assert status == 102
    assert body == ""
    assert headers["Connection"] == "close"

    status, _, _ = _request(instance.port, "GET", "/users")
    assert status == 200

from __future__ import annotations

import threading
from http.client import HTTPConnection

import pytest

from mocify_engine.errors import ConflictError, MocifyError, NotFoundError
from mocify_engine.manager import ServerManager
from mocify_engine.registry import CollectionRegistry


def _get(port: int, path: str) -> int:
    connection = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        connection.request("GET", path)
        response = connection.getresponse()
        response.read()
        return response.status
    finally:
        connection.close()


@pytest.fixture
def collection(registry: CollectionRegistry, free_port: int):
    created = registry.create(name="User API", port=free_port)
    registry.create_route(created.id, name="Users", method="GET", path="/users", status_code=200, response_body="[]")
    return created


def test_start_returns_handle_and_serves(manager: ServerManager, collection) -> None:
    handle = manager.start(collection.id)

    assert handle.port == collection.port
    assert handle.collection_id == collection.id
    assert handle.collection_name == "User API"
    assert handle.is_running is True
    assert handle.base_url == f"http://localhost:{collection.port}"
    assert _get(collection.port, "/users") == 200
    assert manager.handle(collection.port) == handle


def test_start_unknown_collection(manager: ServerManager) -> None:
    with pytest.raises(NotFoundError):
        manager.start("missing")


def test_double_start_conflicts_and_keeps_first_instance(manager: ServerManager, collection) -> None:
    manager.start(collection.id)

    with pytest.raises(ConflictError):
        manager.start(collection.id)
    assert _get(collection.port, "/users") == 200


def test_port_taken_by_another_collection_conflicts(
    manager: ServerManager,
    registry: CollectionRegistry,
    collection,
    free_port: int,
) -> None:
    spare = free_port + 1 if free_port < 65535 else free_port - 1
    other = registry.create(name="Other API", port=spare)
    manager.start(collection.id)
    # The running instance keeps its bound port after the collection moves away.
    registry.update(collection.id, port=spare + 1 if spare < 65535 else spare - 2)
    registry.update(other.id, port=collection.port)

    with pytest.raises(ConflictError):
        manager.start(other.id)
    assert _get(collection.port, "/users") == 200


def test_stop_then_stop_again_raises_not_found(manager: ServerManager, collection) -> None:
    manager.start(collection.id)

    manager.stop(collection.port)

    with pytest.raises(NotFoundError):
        manager.stop(collection.port)
    with pytest.raises(OSError):
        _get(collection.port, "/users")


def test_list_reports_every_collection(manager: ServerManager, registry: CollectionRegistry, collection) -> None:
    idle = registry.create(name="Idle API", port=collection.port + 1 if collection.port < 65535 else 1024)
    manager.start(collection.id)

    statuses = {status.collection_id: status for status in manager.list()}

    assert statuses[collection.id].is_running is True
    assert statuses[idle.id].is_running is False
    assert statuses[idle.id].port == idle.port


def test_port_change_of_running_collection_applies_on_next_start(
    manager: ServerManager,
    registry: CollectionRegistry,
    collection,
    free_port: int,
) -> None:
    manager.start(collection.id)
    new_port = free_port + 7 if free_port < 65000 else free_port - 7

    registry.update(collection.id, port=new_port)

    status = manager.list()[0]
    assert status.is_running is True
    assert status.port == collection.port
    assert _get(collection.port, "/users") == 200

    assert manager.stop_collection(collection.id) is True
    assert manager.stop_collection(collection.id) is False


def test_concurrent_starts_for_same_port_only_one_wins(manager: ServerManager, collection) -> None:
    barrier = threading.Barrier(4)
    outcomes: list[str] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            manager.start(collection.id)
            result = "started"
        except MocifyError as exc:
            result = exc.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert outcomes.count("started") == 1
    assert outcomes.count("conflict") == 3


def test_stop_all(manager: ServerManager, collection) -> None:
    manager.start(collection.id)

    manager.stop_all()

    assert all(not status.is_running for status in manager.list())

"""Test bootstrap for mocify-engine."""

from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import Iterator

import pytest

APP_ROOT = Path(__file__).resolve().parents[1]
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from mocify_engine.commands import MocifyService  # noqa: E402
from mocify_engine.config import EngineSettings  # noqa: E402
from mocify_engine.manager import ServerManager  # noqa: E402
from mocify_engine.registry import CollectionRegistry  # noqa: E402


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return find_free_port()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(shutdown_grace_seconds=2.0)


@pytest.fixture
def registry() -> CollectionRegistry:
    return CollectionRegistry()


@pytest.fixture
def manager(registry: CollectionRegistry, settings: EngineSettings) -> Iterator[ServerManager]:
    manager = ServerManager(registry, settings)
    try:
        yield manager
    finally:
        manager.stop_all()


@pytest.fixture
def service(registry: CollectionRegistry, manager: ServerManager, settings: EngineSettings) -> MocifyService:
    return MocifyService(registry, manager=manager, settings=settings)

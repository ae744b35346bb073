"""Lifecycle management for the per-port mock servers."""

from __future__ import annotations

import threading
from typing import Iterable

import structlog

from .config import EngineSettings
from .errors import ConflictError, NotFoundError
from .models import Collection, ServerStatus
from .registry import CollectionRegistry
from .server import MockServerInstance

LOGGER = structlog.get_logger("mocify.manager")


class ServerManager:
    """Starts and stops one :class:`MockServerInstance` per port."""

    def __init__(self, registry: CollectionRegistry, settings: EngineSettings | None = None) -> None:
        self._registry = registry
        self._settings = settings or EngineSettings()
        self._servers: dict[int, MockServerInstance] = {}
        self._lock = threading.Lock()

    def start(self, collection_id: str) -> ServerStatus:
        collection = self._registry.get(collection_id)
        with self._lock:
            if collection.port in self._servers:
                raise ConflictError(f"Server already running on port {collection.port}")
            for port, running in self._servers.items():
                if running.collection_id == collection_id:
                    raise ConflictError(f"Collection '{collection.name}' is already running on port {port}")
            instance = MockServerInstance(
                self._registry,
                collection_id,
                collection.port,
                host=self._settings.host,
                grace_seconds=self._settings.shutdown_grace_seconds,
            )
            instance.start()
            self._servers[collection.port] = instance
        LOGGER.info("manager_server_registered", collection_id=collection_id, port=collection.port)
        return self._status(collection, instance.port, True)

    def stop(self, port: int) -> None:
        """Stop the server on ``port``; ``NotFoundError`` if none is running."""

        with self._lock:
            instance = self._servers.pop(port, None)
        if instance is None:
            raise NotFoundError(f"No server running on port {port}")
        instance.stop()
        LOGGER.info("manager_server_removed", collection_id=instance.collection_id, port=port)

    def stop_collection(self, collection_id: str) -> bool:
        """Stop the server of a collection if it has one; report whether it did."""

        port = self.running_port(collection_id)
        if port is None:
            return False
        try:
            self.stop(port)
        except NotFoundError:
            return False
        return True

    def running_port(self, collection_id: str) -> int | None:
        with self._lock:
            for port, instance in self._servers.items():
                if instance.collection_id == collection_id:
                    return port
        return None

    def instance(self, port: int) -> MockServerInstance | None:
        with self._lock:
            return self._servers.get(port)

    def handle(self, port: int) -> ServerStatus:
        instance = self.instance(port)
        if instance is None:
            raise NotFoundError(f"No server running on port {port}")
        return self._status(self._registry.get(instance.collection_id), port, True)

    def list(self) -> list[ServerStatus]:
        """One status per known collection, running or not."""

        with self._lock:
            running = {instance.collection_id: port for port, instance in self._servers.items()}
        statuses = []
        for collection in self._registry.list():
            port = running.get(collection.id)
            statuses.append(self._status(collection, port or collection.port, port is not None))
        return statuses

    def start_all(self, collection_ids: Iterable[str] | None = None) -> list[ServerStatus]:
        ids = list(collection_ids) if collection_ids is not None else [c.id for c in self._registry.list()]
        LOGGER.info("manager_starting_servers", server_count=len(ids))
        started = [self.start(collection_id) for collection_id in ids]
        LOGGER.info("manager_running", active_servers=len(self._servers))
        return started

    def stop_all(self) -> None:
        with self._lock:
            ports = list(self._servers)
        LOGGER.info("manager_stopping_servers", active_servers=len(ports))
        for port in ports:
            try:
                self.stop(port)
            except NotFoundError:
                continue
        LOGGER.info("manager_stopped_servers")

    def _status(self, collection: Collection, port: int, is_running: bool) -> ServerStatus:
        return ServerStatus(
            port=port,
            collection_id=collection.id,
            collection_name=collection.name,
            is_running=is_running,
            base_url=self._settings.base_url(port),
        )

    def __enter__(self) -> "ServerManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - context helper
        self.stop_all()

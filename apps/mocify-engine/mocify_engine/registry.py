"""Collection registry owning collections and their route tables."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from .errors import ConflictError, NotFoundError, ValidationError
from .matcher import pattern_key
from .models import Collection, Route, utcnow
from .store import MemoryStore, Store, StoreSnapshot

LOGGER = structlog.get_logger("mocify.registry")

COLLECTION_FIELDS = ("name", "description", "port", "base_path")
ROUTE_FIELDS = (
    "name",
    "method",
    "path",
    "status_code",
    "response_body",
    "response_headers",
    "delay_ms",
)

T = TypeVar("T")


@dataclass(frozen=True)
class _State:
    """Immutable view of the registry.

    Mutations build a new state and swap it in, so a reader holding a state
    (or a route tuple taken from it) never observes a half-applied change.
    """

    collections: dict[str, Collection] = field(default_factory=dict)
    routes: dict[str, tuple[Route, ...]] = field(default_factory=dict)
    route_owner: dict[str, str] = field(default_factory=dict)

    def to_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            collections=list(self.collections.values()),
            routes=[route for table in self.routes.values() for route in table],
        )


def _validated(factory: Callable[..., T], **data: Any) -> T:
    try:
        return factory(**data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


class CollectionRegistry:
    """Owns every collection and route; persists through a :class:`Store`."""

    def __init__(self, store: Store | None = None) -> None:
        self._store = store or MemoryStore()
        self._lock = threading.RLock()
        self._state = self._load(self._store.load())

    @property
    def store(self) -> Store:
        return self._store

    @staticmethod
    def _load(snapshot: StoreSnapshot) -> _State:
        collections = {item.id: item for item in snapshot.collections}
        tables: dict[str, list[Route]] = {collection_id: [] for collection_id in collections}
        owners: dict[str, str] = {}
        for route in snapshot.routes:
            if route.collection_id not in tables:
                LOGGER.warning("orphan_route_skipped", route_id=route.id, collection_id=route.collection_id)
                continue
            tables[route.collection_id].append(route)
            owners[route.id] = route.collection_id
        return _State(
            collections=collections,
            routes={key: tuple(value) for key, value in tables.items()},
            route_owner=owners,
        )

    def _commit(self, state: _State) -> None:
        # Persist first: a failed save leaves the current state untouched.
        self._store.save(state.to_snapshot())
        self._state = state

    # Collections

    def list(self) -> list[Collection]:
        return list(self._state.collections.values())

    def get(self, collection_id: str) -> Collection:
        collection = self._state.collections.get(collection_id)
        if collection is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    def find_by_port(self, port: int) -> Collection | None:
        for collection in self._state.collections.values():
            if collection.port == port:
                return collection
        return None

    def create(
        self,
        name: str,
        port: int,
        description: str | None = None,
        base_path: str | None = None,
    ) -> Collection:
        collection = _validated(
            Collection,
            name=name,
            port=port,
            description=description,
            base_path=base_path,
        )
        with self._lock:
            state = self._state
            self._ensure_port_free(state, collection.port)
            collections = dict(state.collections)
            collections[collection.id] = collection
            routes = dict(state.routes)
            routes[collection.id] = ()
            self._commit(_State(collections, routes, state.route_owner))
        LOGGER.info("collection_created", collection_id=collection.id, name=collection.name, port=collection.port)
        return collection

    def update(self, collection_id: str, **changes: Any) -> Collection:
        """Apply the non-``None`` entries of ``changes`` to a collection."""

        unknown = set(changes) - set(COLLECTION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown collection fields: {', '.join(sorted(unknown))}")
        with self._lock:
            state = self._state
            current = self.get(collection_id)
            payload = current.model_dump()
            payload.update({key: value for key, value in changes.items() if value is not None})
            payload["updated_at"] = utcnow()
            updated = _validated(Collection.model_validate, obj=payload)
            if updated.port != current.port:
                self._ensure_port_free(state, updated.port, ignore=collection_id)
            collections = dict(state.collections)
            collections[collection_id] = updated
            self._commit(_State(collections, state.routes, state.route_owner))
        LOGGER.info("collection_updated", collection_id=collection_id, port=updated.port)
        return updated

    def delete(self, collection_id: str) -> Collection:
        """Remove a collection together with all of its routes."""

        with self._lock:
            state = self._state
            removed = self.get(collection_id)
            collections = dict(state.collections)
            del collections[collection_id]
            routes = dict(state.routes)
            dropped = routes.pop(collection_id, ())
            owners = {key: value for key, value in state.route_owner.items() if value != collection_id}
            self._commit(_State(collections, routes, owners))
        LOGGER.info("collection_deleted", collection_id=collection_id, routes_removed=len(dropped))
        return removed

    @staticmethod
    def _ensure_port_free(state: _State, port: int, ignore: str | None = None) -> None:
        for other in state.collections.values():
            if other.id != ignore and other.port == port:
                raise ConflictError(f"Port {port} is already used by collection '{other.name}'")

    # Routes

    def routes_snapshot(self, collection_id: str) -> tuple[Route, ...]:
        """Current route table of a collection, in registration order."""

        table = self._state.routes.get(collection_id)
        if table is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return table

    def list_routes(self, collection_id: str) -> list[Route]:
        return list(self.routes_snapshot(collection_id))

    def get_route(self, route_id: str) -> Route:
        state = self._state
        owner = state.route_owner.get(route_id)
        if owner is not None:
            for route in state.routes.get(owner, ()):
                if route.id == route_id:
                    return route
        raise NotFoundError(f"Route {route_id} not found")

    def create_route(
        self,
        collection_id: str,
        *,
        name: str,
        method: str,
        path: str,
        status_code: int,
        response_body: str | None = None,
        response_headers: dict[str, Any] | None = None,
        delay_ms: int | None = None,
    ) -> Route:
        with self._lock:
            state = self._state
            self.get(collection_id)
            route = _validated(
                Route,
                collection_id=collection_id,
                name=name,
                method=method,
                path=path,
                status_code=status_code,
                response_body=response_body,
                response_headers=response_headers,
                delay_ms=delay_ms,
            )
            table = state.routes.get(collection_id, ())
            self._ensure_unique(table, route)
            routes = dict(state.routes)
            routes[collection_id] = table + (route,)
            owners = dict(state.route_owner)
            owners[route.id] = collection_id
            self._commit(_State(state.collections, routes, owners))
        LOGGER.info(
            "route_created",
            collection_id=collection_id,
            route_id=route.id,
            method=route.method.value,
            path=route.path,
        )
        return route

    def update_route(self, route_id: str, **changes: Any) -> Route:
        """Apply the non-``None`` entries of ``changes`` to a route."""

        unknown = set(changes) - set(ROUTE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown route fields: {', '.join(sorted(unknown))}")
        with self._lock:
            state = self._state
            current = self.get_route(route_id)
            payload = current.model_dump()
            payload.update({key: value for key, value in changes.items() if value is not None})
            payload["updated_at"] = utcnow()
            updated = _validated(Route.model_validate, obj=payload)
            table = state.routes[current.collection_id]
            self._ensure_unique(table, updated, ignore=route_id)
            routes = dict(state.routes)
            routes[current.collection_id] = tuple(updated if item.id == route_id else item for item in table)
            self._commit(_State(state.collections, routes, state.route_owner))
        LOGGER.info("route_updated", collection_id=updated.collection_id, route_id=route_id)
        return updated

    def delete_route(self, route_id: str) -> Route:
        with self._lock:
            state = self._state
            removed = self.get_route(route_id)
            routes = dict(state.routes)
            routes[removed.collection_id] = tuple(
                item for item in state.routes[removed.collection_id] if item.id != route_id
            )
            owners = dict(state.route_owner)
            del owners[route_id]
            self._commit(_State(state.collections, routes, owners))
        LOGGER.info("route_deleted", collection_id=removed.collection_id, route_id=route_id)
        return removed

    @staticmethod
    def _ensure_unique(table: tuple[Route, ...], candidate: Route, ignore: str | None = None) -> None:
        key = pattern_key(candidate.path)
        for existing in table:
            if existing.id == ignore:
                continue
            if existing.method == candidate.method and pattern_key(existing.path) == key:
                raise ConflictError(
                    f"Route {candidate.method.value} {candidate.path} already exists as '{existing.name}'"
                )

"""Typed command surface consumed by the desktop front-end and the CLI."""

from __future__ import annotations

import functools
from typing import Any, Callable, Mapping, TypeVar, Union

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import EngineSettings
from .errors import MocifyError, ValidationError
from .manager import ServerManager
from .models import (
    Collection,
    CreateCollectionRequest,
    CreateRouteRequest,
    DeleteCollectionResponse,
    Route,
    ServerStatus,
    SuccessResponse,
    TestRouteRequest,
    TestRouteResponse,
    UpdateCollectionRequest,
    UpdateRouteRequest,
)
from .registry import CollectionRegistry
from .store import MemoryStore, Store, YamlStore
from .tester import RouteTester

LOGGER = structlog.get_logger("mocify.commands")

M = TypeVar("M", bound=BaseModel)
F = TypeVar("F", bound=Callable[..., Any])


def _coerce(model: type[M], payload: Union[M, Mapping[str, Any]]) -> M:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def command(name: str) -> Callable[[F], F]:
    """Log failures of a command with its name and re-raise them."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except MocifyError as exc:
                LOGGER.warning("command_failed", command=name, error=exc.code, message=exc.message)
                raise

        return wrapper  # type: ignore[return-value]

    return decorator


class MocifyService:
    """One method per front-end command; shares a registry, manager and tester."""

    def __init__(
        self,
        registry: CollectionRegistry,
        manager: ServerManager | None = None,
        tester: RouteTester | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.registry = registry
        self.manager = manager or ServerManager(registry, self.settings)
        self.tester = tester or RouteTester(registry, self.manager, self.settings)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "MocifyService":
        store: Store = YamlStore(settings.store_path) if settings.store_path else MemoryStore()
        return cls(CollectionRegistry(store), settings=settings)

    # Collections

    @command("get_collections")
    def get_collections(self) -> list[Collection]:
        return self.registry.list()

    @command("create_collection")
    def create_collection(self, request: Union[CreateCollectionRequest, Mapping[str, Any]]) -> Collection:
        payload = _coerce(CreateCollectionRequest, request)
        LOGGER.debug("create_collection", request=payload.model_dump())
        return self.registry.create(
            name=payload.name,
            port=payload.port,
            description=payload.description,
            base_path=payload.base_path,
        )

    @command("update_collection")
    def update_collection(self, request: Union[UpdateCollectionRequest, Mapping[str, Any]]) -> Collection:
        payload = _coerce(UpdateCollectionRequest, request)
        changes = payload.model_dump(exclude={"id"})
        updated = self.registry.update(payload.id, **changes)
        running_port = self.manager.running_port(updated.id)
        if running_port is not None and running_port != updated.port:
            LOGGER.info(
                "collection_port_change_deferred",
                collection_id=updated.id,
                running_port=running_port,
                configured_port=updated.port,
            )
        return updated

    @command("delete_collection")
    def delete_collection(self, collection_id: str) -> DeleteCollectionResponse:
        self.registry.get(collection_id)
        server_stopped = False
        warning = None
        try:
            server_stopped = self.manager.stop_collection(collection_id)
        except Exception as exc:
            warning = f"Failed to stop server: {exc}"
            LOGGER.exception("collection_server_stop_failed", collection_id=collection_id)
        self.registry.delete(collection_id)
        return DeleteCollectionResponse(success=True, server_stopped=server_stopped, warning=warning)

    # Routes

    @command("get_routes")
    def get_routes(self, collection_id: str) -> list[Route]:
        return self.registry.list_routes(collection_id)

    @command("create_route")
    def create_route(self, request: Union[CreateRouteRequest, Mapping[str, Any]]) -> Route:
        payload = _coerce(CreateRouteRequest, request)
        return self.registry.create_route(
            payload.collection_id,
            **payload.model_dump(exclude={"collection_id"}),
        )

    @command("update_route")
    def update_route(self, request: Union[UpdateRouteRequest, Mapping[str, Any]]) -> Route:
        payload = _coerce(UpdateRouteRequest, request)
        return self.registry.update_route(payload.id, **payload.model_dump(exclude={"id"}))

    @command("delete_route")
    def delete_route(self, route_id: str) -> SuccessResponse:
        self.registry.delete_route(route_id)
        return SuccessResponse()

    # Servers

    @command("get_running_servers")
    def get_running_servers(self) -> list[ServerStatus]:
        return self.manager.list()

    @command("start_server")
    def start_server(self, collection_id: str) -> ServerStatus:
        return self.manager.start(collection_id)

    @command("stop_server")
    def stop_server(self, port: int) -> SuccessResponse:
        self.manager.stop(port)
        return SuccessResponse()

    @command("test_route")
    def test_route(self, request: Union[TestRouteRequest, Mapping[str, Any], str]) -> TestRouteResponse:
        if isinstance(request, str):
            request = {"route_id": request}
        payload = _coerce(TestRouteRequest, request)
        return self.tester.invoke(payload.route_id)

    def shutdown(self) -> None:
        self.manager.stop_all()

    def __enter__(self) -> "MocifyService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - context helper
        self.shutdown()

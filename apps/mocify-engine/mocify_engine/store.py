"""Persistence backends for the collection registry."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import Collection, Route

LOGGER = structlog.get_logger("mocify.store")


@dataclass
class StoreSnapshot:
    collections: list[Collection] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)


class Store(Protocol):
    def load(self) -> StoreSnapshot: ...

    def save(self, snapshot: StoreSnapshot) -> None: ...


class MemoryStore:
    """Keeps the last saved snapshot in memory only."""

    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self._snapshot = snapshot or StoreSnapshot()

    def load(self) -> StoreSnapshot:
        return StoreSnapshot(
            collections=list(self._snapshot.collections),
            routes=list(self._snapshot.routes),
        )

    def save(self, snapshot: StoreSnapshot) -> None:
        self._snapshot = StoreSnapshot(
            collections=list(snapshot.collections),
            routes=list(snapshot.routes),
        )


class YamlStore:
    """Stores collections and routes in a single YAML document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> StoreSnapshot:
        if not self.path.exists():
            LOGGER.info("store_missing", path=str(self.path))
            return StoreSnapshot()
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"Store file {self.path} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"Store file {self.path} must contain a mapping")
        try:
            snapshot = StoreSnapshot(
                collections=[Collection.model_validate(item) for item in data.get("collections") or []],
                routes=[Route.model_validate(item) for item in data.get("routes") or []],
            )
        except PydanticValidationError as exc:
            invalid = ValidationError.from_pydantic(exc)
            raise ValidationError(f"Store file {self.path} is invalid: {invalid.message}") from exc
        LOGGER.info(
            "store_loaded",
            path=str(self.path),
            collections=len(snapshot.collections),
            routes=len(snapshot.routes),
        )
        return snapshot

    def save(self, snapshot: StoreSnapshot) -> None:
        payload = {
            "collections": [item.model_dump(mode="json") for item in snapshot.collections],
            "routes": [item.model_dump(mode="json") for item in snapshot.routes],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        LOGGER.debug("store_saved", path=str(self.path))

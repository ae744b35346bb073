"""Pydantic models describing collections, routes and command payloads."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_PATH_FORBIDDEN = re.compile(r"[\s?#]")

PORT_MIN = 1
PORT_MAX = 65535
STATUS_MIN = 100
STATUS_MAX = 599


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class HttpMethod(str, Enum):
    """Methods a route can be bound to."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


def normalize_path(value: str) -> str:
    """Return ``value`` with a leading slash and without a trailing one."""

    path = (value or "").strip()
    if not path:
        raise ValueError("path must not be empty")
    if _PATH_FORBIDDEN.search(path):
        raise ValueError("path must not contain whitespace, '?' or '#'")
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def normalize_base_path(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    if stripped in {"", "/"}:
        return None
    return normalize_path(stripped)


def normalize_headers(value: Any) -> dict[str, str]:
    """Coerce a JSON header object into a ``name -> value`` mapping.

    Names are unique case-insensitively; a later spelling of the same name
    replaces the earlier one.
    """

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("response_headers must be an object")
    headers: dict[str, str] = {}
    seen: dict[str, str] = {}
    for raw_name, raw_value in value.items():
        name = str(raw_name).strip()
        if not _HEADER_NAME.match(name):
            raise ValueError(f"invalid header name {raw_name!r}")
        if raw_value is None:
            continue
        if isinstance(raw_value, bool):
            text = "true" if raw_value else "false"
        else:
            text = str(raw_value)
        if "\r" in text or "\n" in text:
            raise ValueError(f"header {name} must not contain line breaks")
        previous = seen.get(name.lower())
        if previous is not None:
            headers.pop(previous)
        seen[name.lower()] = name
        headers[name] = text
    return headers


def _normalize_method(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


def _normalize_name(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
    return value


class Collection(BaseModel):
    """Named group of routes served on one port."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    port: int = Field(ge=PORT_MIN, le=PORT_MAX)
    base_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    check_name = field_validator("name", mode="before")(_normalize_name)

    @field_validator("base_path", mode="before")
    @classmethod
    def check_base_path(cls, value: Any) -> Any:
        return normalize_base_path(value)


class Route(BaseModel):
    """Method + path pattern mapped to a canned HTTP response."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    collection_id: str
    name: str = Field(min_length=1)
    method: HttpMethod
    path: str
    status_code: int = Field(ge=STATUS_MIN, le=STATUS_MAX)
    response_body: str = ""
    response_headers: dict[str, str] = Field(default_factory=dict)
    delay_ms: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    check_name = field_validator("name", mode="before")(_normalize_name)
    check_method = field_validator("method", mode="before")(_normalize_method)

    @field_validator("path", mode="before")
    @classmethod
    def check_path(cls, value: Any) -> str:
        return normalize_path(value)

    @field_validator("response_body", mode="before")
    @classmethod
    def check_body(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("response_headers", mode="before")
    @classmethod
    def check_headers(cls, value: Any) -> dict[str, str]:
        return normalize_headers(value)

    @field_validator("delay_ms", mode="before")
    @classmethod
    def check_delay(cls, value: Any) -> Any:
        return 0 if value is None else value

    def header(self, name: str) -> str | None:
        """Case-insensitive lookup in the configured response headers."""

        wanted = name.lower()
        for key, value in self.response_headers.items():
            if key.lower() == wanted:
                return value
        return None


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateCollectionRequest(_Request):
    name: str
    description: Optional[str] = None
    port: int
    base_path: Optional[str] = None


class UpdateCollectionRequest(_Request):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    port: Optional[int] = None
    base_path: Optional[str] = None


class CreateRouteRequest(_Request):
    collection_id: str = Field(alias="collectionId")
    name: str
    method: str
    path: str
    status_code: int
    response_body: Optional[str] = None
    response_headers: Optional[dict[str, Any]] = None
    delay_ms: Optional[int] = None


class UpdateRouteRequest(_Request):
    id: str
    name: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Optional[dict[str, Any]] = None
    delay_ms: Optional[int] = None


class TestRouteRequest(_Request):
    route_id: str = Field(alias="routeId")


class ServerStatus(BaseModel):
    """Runtime descriptor of a collection's listener."""

    port: int
    collection_id: str
    collection_name: str
    is_running: bool
    base_url: str


class TestRouteResponse(BaseModel):
    """Outcome of a successful test invocation, as returned by ``test_route``."""

    url: str
    method: str
    status_code: int
    response_time_ms: int
    body: str
    headers: dict[str, str] = Field(default_factory=dict)


class TestResult(BaseModel):
    """Record of one test invocation, successful or not."""

    route_id: str
    route_name: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    url: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    success: bool
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    body: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    error: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool = True


class DeleteCollectionResponse(SuccessResponse):
    server_stopped: bool = False
    warning: Optional[str] = None

"""Request matching against a collection's route table."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable
from urllib.parse import unquote, urlsplit

from .errors import NoRouteError
from .models import Route

_PLACEHOLDER = re.compile(r"^(?::([A-Za-z_][A-Za-z0-9_]*)|\{([A-Za-z_][A-Za-z0-9_]*)\})$")


@dataclass(frozen=True)
class RouteMatch:
    route: Route
    params: dict[str, str] = field(default_factory=dict)


def split_path(path: str) -> list[str]:
    stripped = path.strip("/")
    if not stripped:
        return []
    return stripped.split("/")


def placeholder_name(segment: str) -> str | None:
    """Name of a ``:name`` or ``{name}`` segment, ``None`` for literals."""

    found = _PLACEHOLDER.match(segment)
    if not found:
        return None
    return found.group(1) or found.group(2)


def pattern_key(path: str) -> str:
    """Shape of a route path with every placeholder collapsed to ``*``.

    ``/users/:id`` and ``/users/{user_id}`` share the key ``/users/*``.
    """

    parts = ["*" if placeholder_name(segment) else segment for segment in split_path(path)]
    return "/" + "/".join(parts)


def placeholder_count(path: str) -> int:
    return sum(1 for segment in split_path(path) if placeholder_name(segment))


def normalize_request_path(raw_path: str) -> str:
    path = urlsplit(raw_path).path or "/"
    path = unquote(path)
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def strip_base_path(base_path: str | None, request_path: str) -> str | None:
    """Remove ``base_path`` from ``request_path``; ``None`` if it is not a prefix."""

    if not base_path:
        return request_path
    if request_path.rstrip("/") == base_path:
        return "/"
    if request_path.startswith(base_path + "/"):
        return request_path[len(base_path):]
    return None


def match_path(pattern: str, request_path: str) -> dict[str, str] | None:
    """Return captured placeholder values when ``request_path`` fits ``pattern``."""

    pattern_parts = split_path(pattern)
    request_parts = split_path(request_path)
    if len(pattern_parts) != len(request_parts):
        return None
    params: dict[str, str] = {}
    for pattern_part, request_part in zip(pattern_parts, request_parts):
        name = placeholder_name(pattern_part)
        if name is not None:
            if not request_part:
                return None
            params[name] = request_part
            continue
        if pattern_part != request_part:
            return None
    return params


def match_route(
    routes: Iterable[Route],
    method: str,
    path: str,
    base_path: str | None = None,
) -> RouteMatch:
    """Find the route serving ``method`` + ``path``.

    Literal segments beat placeholders: among matching routes the one with the
    fewest placeholder segments wins, ties go to the first registered route.
    Raises :class:`NoRouteError` when nothing matches.
    """

    wanted = method.upper()
    request_path = normalize_request_path(path)
    relative = strip_base_path(base_path, request_path)
    if relative is None:
        raise NoRouteError(wanted, request_path)

    best: tuple[int, int, RouteMatch] | None = None
    for index, route in enumerate(routes):
        if route.method.value != wanted:
            continue
        params = match_path(route.path, relative)
        if params is None:
            continue
        rank = (placeholder_count(route.path), index)
        if best is None or rank < best[:2]:
            best = (rank[0], rank[1], RouteMatch(route=route, params=params))
    if best is None:
        raise NoRouteError(wanted, request_path)
    return best[2]


def sample_path(path: str, samples: dict[str, str] | None = None) -> str:
    """Fill placeholder segments of ``path`` with sample values."""

    samples = samples or {}
    parts = []
    for segment in split_path(path):
        name = placeholder_name(segment)
        if name is None:
            parts.append(segment)
        else:
            parts.append(samples.get(name, "1" if name.lower().endswith("id") else "sample"))
    return "/" + "/".join(parts)

from __future__ import annotations

import pytest

from mocify_engine.errors import NoRouteError
from mocify_engine.matcher import match_route, pattern_key, sample_path, strip_base_path
from mocify_engine.models import Route


def _route(method: str, path: str, name: str | None = None) -> Route:
    return Route(
        collection_id="c1",
        name=name or f"{method} {path}",
        method=method,
        path=path,
        status_code=200,
    )


def test_literal_match_requires_same_method() -> None:
    get_users = _route("GET", "/users")
    post_users = _route("POST", "/users")

    assert match_route([get_users, post_users], "GET", "/users").route is get_users
    assert match_route([get_users, post_users], "post", "/users").route is post_users
    with pytest.raises(NoRouteError):
        match_route([get_users], "DELETE", "/users")


def test_query_string_and_trailing_slash_are_ignored() -> None:
    users = _route("GET", "/users")

    assert match_route([users], "GET", "/users/?page=2").route is users


def test_placeholders_capture_params() -> None:
    route = _route("GET", "/users/:id/orders/{order_id}")

    matched = match_route([route], "GET", "/users/42/orders/a%20b")

    assert matched.route is route
    assert matched.params == {"id": "42", "order_id": "a b"}


def test_literal_route_beats_placeholder_route() -> None:
    by_id = _route("GET", "/users/:id")
    me = _route("GET", "/users/me")

    assert match_route([by_id, me], "GET", "/users/me").route is me
    assert match_route([by_id, me], "GET", "/users/7").route is by_id


def test_fewest_placeholders_win_and_ties_go_to_first_registered() -> None:
    both = _route("GET", "/:kind/:id")
    first = _route("GET", "/users/:id", name="first")
    second = _route("GET", "/:kind/7", name="second")

    assert match_route([both, first, second], "GET", "/users/7").route is first
    assert match_route([both, second, first], "GET", "/users/7").route is second


def test_segment_count_must_match() -> None:
    with pytest.raises(NoRouteError):
        match_route([_route("GET", "/users/:id")], "GET", "/users")
    with pytest.raises(NoRouteError):
        match_route([_route("GET", "/users")], "GET", "/users/1/extra")


def test_root_route() -> None:
    root = _route("GET", "/")

    assert match_route([root], "GET", "/").route is root
    assert match_route([root], "GET", "").route is root


def test_base_path_is_required_and_stripped() -> None:
    users = _route("GET", "/users")
    root = _route("GET", "/")

    assert match_route([users], "GET", "/api/users", base_path="/api").route is users
    assert match_route([root], "GET", "/api", base_path="/api").route is root
    with pytest.raises(NoRouteError):
        match_route([users], "GET", "/users", base_path="/api")
    with pytest.raises(NoRouteError):
        match_route([users], "GET", "/apiusers", base_path="/api")


def test_no_route_error_carries_request() -> None:
    with pytest.raises(NoRouteError) as exc_info:
        match_route([], "get", "/missing")

    assert exc_info.value.method == "GET"
    assert exc_info.value.path == "/missing"


def test_helpers() -> None:
    assert pattern_key("/users/:id") == pattern_key("/users/{user_id}") == "/users/*"
    assert strip_base_path(None, "/x") == "/x"
    assert strip_base_path("/api", "/api/") == "/"
    assert sample_path("/users/:id/tags/{tag}") == "/users/1/tags/sample"
    assert sample_path("/") == "/"

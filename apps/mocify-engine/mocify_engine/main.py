"""CLI entrypoint for managing and serving mock collections."""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

if __package__ in {None, ""}:
    sys.path.append(str(Path(__file__).resolve().parents[1]))
    __package__ = "mocify_engine"

from .commands import MocifyService
from .config import EngineSettings, InvocationMode, load_config, resolve_log_format
from .errors import MocifyError
from .logging_utils import configure_logging
from .tester import RouteTester

app = typer.Typer(help="Define mock API collections and serve them on local ports.")
collections_app = typer.Typer(help="Create, inspect and remove collections.")
routes_app = typer.Typer(help="Create, inspect and remove routes of a collection.")
app.add_typer(collections_app, name="collections")
app.add_typer(routes_app, name="routes")

DEFAULT_STORE_PATH = Path("mocify.yaml")


def _service(ctx: typer.Context) -> MocifyService:
    return ctx.obj["service"]


def _emit(data: Any) -> None:
    if isinstance(data, BaseModel):
        payload: Any = data.model_dump(mode="json")
    elif isinstance(data, list):
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    else:
        payload = data
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _run(action: Callable[[], Any]) -> Any:
    try:
        return action()
    except MocifyError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _parse_headers(pairs: list[str]) -> dict[str, str] | None:
    if not pairs:
        return None
    headers: dict[str, str] = {}
    for item in pairs:
        separator = ":" if ":" in item else "="
        if separator not in item:
            raise typer.BadParameter("Headers must use 'Name: value' or 'Name=value' format")
        name, value = item.split(separator, 1)
        if not name.strip():
            raise typer.BadParameter("Header name cannot be empty")
        headers[name.strip()] = value.strip()
    return headers


def _read_body(body: Optional[str], body_file: Optional[Path]) -> Optional[str]:
    if body is not None and body_file is not None:
        raise typer.BadParameter("Use either --body or --body-file, not both")
    if body_file is not None:
        return body_file.read_text(encoding="utf-8")
    return body


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="Engine settings YAML file.",
    ),
    store: Optional[Path] = typer.Option(
        None,
        "--store",
        help="Collections store file (default: settings store_path or ./mocify.yaml).",
    ),
    log_level: Optional[str] = typer.Option(None, help="Log level override (DEBUG, INFO, ...)."),
    log_format: Optional[str] = typer.Option(
        None,
        help="Log format: console, plain or json (default from settings or CONSOLE_OUTPUT_FORMAT).",
    ),
) -> None:
    """Load settings, configure logging and open the collection store."""

    try:
        settings = load_config(config)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Cannot load config: {exc}") from exc
    updates: dict[str, Any] = {"store_path": store or settings.store_path or DEFAULT_STORE_PATH}
    if log_level:
        updates["log_level"] = log_level
    settings = settings.model_copy(update=updates)
    configure_logging(
        settings.log_level,
        resolve_log_format(log_format, settings.log_format),
        stream=sys.stderr,
    )
    try:
        service = MocifyService.from_settings(settings)
    except (OSError, MocifyError) as exc:
        raise typer.BadParameter(f"Cannot open store: {exc}", param_hint="--store") from exc
    ctx.obj = {"settings": settings, "service": service}


# Collections


@collections_app.command("list")
def list_collections(ctx: typer.Context) -> None:
    """Print every collection as JSON."""

    _emit(_run(_service(ctx).get_collections))


@collections_app.command("create")
def create_collection(
    ctx: typer.Context,
    name: str = typer.Option(..., help="Collection name."),
    port: int = typer.Option(..., help="Port the collection is served on (1-65535)."),
    description: Optional[str] = typer.Option(None, help="Free-form description."),
    base_path: Optional[str] = typer.Option(None, help="Prefix prepended to every route path."),
) -> None:
    """Create a collection."""

    service = _service(ctx)
    request = {"name": name, "port": port, "description": description, "base_path": base_path}
    _emit(_run(lambda: service.create_collection(request)))


@collections_app.command("update")
def update_collection(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Collection id."),
    name: Optional[str] = typer.Option(None, help="New name."),
    port: Optional[int] = typer.Option(None, help="New port, applied on next start."),
    description: Optional[str] = typer.Option(None, help="New description."),
    base_path: Optional[str] = typer.Option(None, help="New base path ('/' clears it)."),
) -> None:
    """Update fields of a collection."""

    service = _service(ctx)
    request = {
        "id": collection_id,
        "name": name,
        "port": port,
        "description": description,
        "base_path": base_path,
    }
    _emit(_run(lambda: service.update_collection(request)))


@collections_app.command("delete")
def delete_collection(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Collection id."),
) -> None:
    """Delete a collection and all of its routes."""

    service = _service(ctx)
    result = _run(lambda: service.delete_collection(collection_id))
    if result.warning:
        typer.secho(result.warning, fg=typer.colors.YELLOW, err=True)
    _emit(result)


# Routes


@routes_app.command("list")
def list_routes(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Collection id."),
) -> None:
    """Print the routes of a collection as JSON."""

    service = _service(ctx)
    _emit(_run(lambda: service.get_routes(collection_id)))


@routes_app.command("create")
def create_route(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Collection id."),
    name: str = typer.Option(..., help="Route name."),
    method: str = typer.Option("GET", "--method", "-m", help="HTTP method."),
    path: str = typer.Option(..., "--path", "-p", help="Path, placeholders as :id or {id}."),
    status_code: int = typer.Option(200, "--status", "-s", help="Response status code."),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="Response body, stored verbatim."),
    body_file: Optional[Path] = typer.Option(None, exists=True, readable=True, help="Read the body from a file."),
    header: list[str] = typer.Option([], "--header", "-H", help="Response header 'Name: value' (repeatable)."),
    delay_ms: int = typer.Option(0, "--delay", help="Artificial delay in milliseconds."),
) -> None:
    """Add a route to a collection."""

    service = _service(ctx)
    request = {
        "collection_id": collection_id,
        "name": name,
        "method": method,
        "path": path,
        "status_code": status_code,
        "response_body": _read_body(body, body_file),
        "response_headers": _parse_headers(header),
        "delay_ms": delay_ms,
    }
    _emit(_run(lambda: service.create_route(request)))


@routes_app.command("update")
def update_route(
    ctx: typer.Context,
    route_id: str = typer.Argument(..., help="Route id."),
    name: Optional[str] = typer.Option(None, help="New name."),
    method: Optional[str] = typer.Option(None, "--method", "-m", help="New HTTP method."),
    path: Optional[str] = typer.Option(None, "--path", "-p", help="New path."),
    status_code: Optional[int] = typer.Option(None, "--status", "-s", help="New status code."),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="New response body."),
    body_file: Optional[Path] = typer.Option(None, exists=True, readable=True, help="Read the body from a file."),
    header: list[str] = typer.Option([], "--header", "-H", help="Replace response headers (repeatable)."),
    delay_ms: Optional[int] = typer.Option(None, "--delay", help="New delay in milliseconds."),
) -> None:
    """Update fields of a route."""

    service = _service(ctx)
    request = {
        "id": route_id,
        "name": name,
        "method": method,
        "path": path,
        "status_code": status_code,
        "response_body": _read_body(body, body_file),
        "response_headers": _parse_headers(header),
        "delay_ms": delay_ms,
    }
    _emit(_run(lambda: service.update_route(request)))


@routes_app.command("delete")
def delete_route(
    ctx: typer.Context,
    route_id: str = typer.Argument(..., help="Route id."),
) -> None:
    """Delete a route."""

    service = _service(ctx)
    _emit(_run(lambda: service.delete_route(route_id)))


# Servers


@app.command()
def servers(ctx: typer.Context) -> None:
    """Show the server status of every collection."""

    statuses = _run(_service(ctx).get_running_servers)
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Collection")
    table.add_column("Port", justify="right")
    table.add_column("Status")
    table.add_column("Base URL")
    for status in statuses:
        table.add_row(
            status.collection_name,
            str(status.port),
            "[green]running[/]" if status.is_running else "[dim]stopped[/]",
            status.base_url,
        )
    Console().print(table)


@app.command()
def serve(
    ctx: typer.Context,
    collection: list[str] = typer.Option(
        [],
        "--collection",
        help="Collection id to serve (repeatable, default: all collections).",
    ),
    duration: Optional[float] = typer.Option(
        None,
        help="Stop after this many seconds instead of waiting for Ctrl+C.",
    ),
) -> None:
    """Start mock servers and keep them running until interrupted."""

    service = _service(ctx)
    try:
        started = _run(lambda: service.manager.start_all(collection or None))
        for status in started:
            routes = service.registry.list_routes(status.collection_id)
            typer.secho(
                f"[mocify] {status.collection_name} listening on {status.base_url}",
                fg=typer.colors.CYAN,
            )
            if routes:
                for route in routes:
                    typer.echo(f"      - {route.method.value} {route.path} -> {route.status_code}")
            else:
                typer.echo("      (no routes configured)")
        if not started:
            typer.secho("No collections to serve", fg=typer.colors.YELLOW)
            return
        deadline = time.monotonic() + duration if duration is not None else None
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        typer.echo("")
    finally:
        service.shutdown()


@app.command("test")
def test_route(
    ctx: typer.Context,
    route_id: str = typer.Argument(..., help="Route id."),
    mode: Optional[InvocationMode] = typer.Option(None, help="direct (default) or loopback."),
) -> None:
    """Invoke a route once and print status, timing, headers and body."""

    service = _service(ctx)
    settings: EngineSettings = ctx.obj["settings"]
    tester = RouteTester(service.registry, service.manager, settings, mode=mode)
    result = tester.run(route_id)
    _emit(result)
    if not result.success:
        raise typer.Exit(code=1)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()

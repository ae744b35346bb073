"""Structured logging helpers for the mocify engine."""

from __future__ import annotations

import logging
import sys
from io import StringIO
from typing import Any, TextIO

import structlog
from rich.console import Console
from rich.text import Text

from .config import LogFormat

LOGGER_NAME = "mocify"


class RichConsoleRenderer:
    """Render events as one colored line each.

    Request events lead with ``METHOD path -> status`` so served and unmatched
    traffic reads like an access log; every other key follows as ``key=value``.
    """

    level_styles = {
        "debug": "dim cyan",
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "critical": "bold white on red",
    }
    leading_keys = ("collection_id", "port")
    hidden_keys = ("color_message", "stack")
    event_width = 28

    def __init__(self, width: int = 200) -> None:
        self.width = width

    @staticmethod
    def status_style(status: Any) -> str:
        try:
            code = int(status)
        except (TypeError, ValueError):
            return "white"
        if code >= 500:
            return "bold red"
        if code >= 400:
            return "yellow"
        if code >= 300:
            return "cyan"
        return "green"

    def __call__(self, logger: Any, name: str, event_dict: dict[str, Any]) -> str:
        fields = dict(event_dict)
        exception = fields.pop("exception", None)
        level = fields.pop("level", "info")
        event = str(fields.pop("event", ""))

        line = Text(str(fields.pop("timestamp", "")), style="dim white")
        line.append(f" {level.upper():<7} ", style=self.level_styles.get(level, "white"))
        line.append(event.ljust(self.event_width), style="bold white")

        method = fields.pop("method", None)
        path = fields.pop("path", None)
        if method is not None and path is not None:
            line.append(f" {method} {path}", style="bold")
            if "status" in fields:
                status = fields.pop("status")
                line.append(" -> ")
                line.append(str(status), style=self.status_style(status))

        ordered = [key for key in self.leading_keys if key in fields]
        ordered += sorted(key for key in fields if key not in self.leading_keys and key not in self.hidden_keys)
        for key in ordered:
            line.append(f" {key}=", style="dim white")
            line.append(str(fields[key]), style="bright_cyan")
        if exception:
            line.append(f"\n{exception}", style="red")

        buffer = StringIO()
        Console(file=buffer, force_terminal=True, width=self.width, legacy_windows=False).print(line, end="")
        return buffer.getvalue()


def build_renderer(log_format: LogFormat) -> Any:
    """Final processor for ``log_format``; unknown values render JSON."""

    if log_format == "console":
        return RichConsoleRenderer()
    if log_format == "plain":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer()


def configure_logging(
    log_level: str,
    log_format: LogFormat = "console",
    stream: TextIO | None = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog for the engine and return the root engine logger.

    Events go to stdout unless another ``stream`` is given; the CLI logs to
    stderr so its JSON output stays parseable.
    """

    normalized_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=normalized_level,
        stream=stream or sys.stdout,
        format="%(message)s",
        force=True,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.format_exc_info,
        build_renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(normalized_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger(LOGGER_NAME)

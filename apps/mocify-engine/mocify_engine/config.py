"""Engine settings loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

LogFormat = Literal["json", "console", "plain"]

ENV_PREFIX = "MOCIFY_"
ENV_OVERRIDES: dict[str, str] = {
    "HOST": "host",
    "PUBLIC_HOST": "public_host",
    "STORE_PATH": "store_path",
    "SHUTDOWN_GRACE": "shutdown_grace_seconds",
    "TEST_MODE": "test_mode",
    "TEST_TIMEOUT": "test_timeout_seconds",
    "LOG_LEVEL": "log_level",
    "LOG_FORMAT": "log_format",
}
# Shared with the other console tools; "auto" and "rich" both mean colored output.
CONSOLE_FORMAT_ENV = "CONSOLE_OUTPUT_FORMAT"
CONSOLE_FORMAT_ALIASES: dict[str, LogFormat] = {
    "json": "json",
    "plain": "plain",
    "console": "console",
    "auto": "console",
    "rich": "console",
}


class InvocationMode(str, Enum):
    """How ``test_route`` reaches a route."""

    DIRECT = "direct"
    LOOPBACK = "loopback"


class EngineSettings(BaseModel):
    """Runtime knobs shared by the registry, servers and CLI."""

    host: str = "127.0.0.1"
    public_host: str = "localhost"
    store_path: Optional[Path] = None
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)
    test_mode: InvocationMode = InvocationMode.DIRECT
    test_timeout_seconds: float = Field(default=10.0, gt=0)
    log_level: str = "INFO"
    log_format: Optional[LogFormat] = None

    @field_validator("test_mode", "log_format", mode="before")
    @classmethod
    def lower_case(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def base_url(self, port: int) -> str:
        return f"http://{self.public_host}:{port}"


def resolve_log_format(cli_override: str | None = None, configured: str | None = None) -> LogFormat:
    """Pick the log renderer.

    The first recognised value wins: ``cli_override``, then ``configured``
    (settings file or ``MOCIFY_LOG_FORMAT``), then ``CONSOLE_OUTPUT_FORMAT``.
    Falls back to ``console``.
    """

    for candidate in (cli_override, configured, os.environ.get(CONSOLE_FORMAT_ENV)):
        if candidate:
            resolved = CONSOLE_FORMAT_ALIASES.get(candidate.strip().lower())
            if resolved:
                return resolved
    return "console"


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for suffix, key in ENV_OVERRIDES.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value:
            overrides[key] = value
    return overrides


def load_config(path: Path | None = None) -> EngineSettings:
    """Load settings from ``path`` (YAML) and apply ``MOCIFY_*`` variables."""

    data: dict[str, Any] = {}
    if path is not None:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        data.update(raw)
    data.update(_env_overrides())
    return EngineSettings.model_validate(data)

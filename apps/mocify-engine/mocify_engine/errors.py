"""Error taxonomy shared by the registry, server manager and command layer."""

from __future__ import annotations

from pydantic import ValidationError as PydanticValidationError


class MocifyError(Exception):
    """Base class for every error the engine reports to its callers."""

    code = "mocify_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(MocifyError):
    """Bad input shape or range."""

    code = "validation_error"

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        parts = []
        for error in exc.errors():
            location = ".".join(str(item) for item in error.get("loc", ())) or "request"
            parts.append(f"{location}: {error.get('msg', 'invalid value')}")
        return cls("; ".join(parts) or "invalid request")


class NotFoundError(MocifyError):
    """Unknown collection, route or port."""

    code = "not_found"


class ConflictError(MocifyError):
    """Duplicate port, duplicate route or double start."""

    code = "conflict"


class PortInUseError(MocifyError):
    """The operating system refused to bind the listening socket."""

    code = "port_in_use"

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"Cannot bind port {port}: {reason}")
        self.port = port
        self.reason = reason


class NoRouteError(MocifyError):
    """No route of a collection matches a request. Always answered with a 404."""

    code = "no_route"

    def __init__(self, method: str, path: str) -> None:
        super().__init__(f"No route matches {method} {path}")
        self.method = method
        self.path = path


class InvocationError(MocifyError):
    """A test invocation could not reach the route."""

    code = "invocation_failed"

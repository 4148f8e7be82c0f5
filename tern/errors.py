"""Error taxonomy shared by every tern subsystem.

Exception Hierarchy:
    TernError (base)
    ├── ConfigError
    │   └── ToolRegistrationError
    ├── TransportError (retryable flag per cause)
    ├── ProtocolError
    ├── ParseError (offending JSON fragment)
    ├── ContextOverflow
    ├── UnknownTool
    ├── InvalidArguments (field, reason)
    ├── PermissionDenied (operation)
    │   └── PathEscape
    ├── UserDeclined
    ├── Timeout (elapsed, Tool | StreamRead)
    ├── ToolFailed (name, message)
    ├── Cancelled
    ├── StorageError
    └── IoError

Each error carries a stable ErrorKind tag so callers branch on the tag,
never on message text.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tern.models import Turn


class ErrorKind(StrEnum):
    CONFIG_ERROR = "config_error"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_ERROR = "protocol_error"
    PARSE_ERROR = "parse_error"
    CONTEXT_OVERFLOW = "context_overflow"
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    PERMISSION_DENIED = "permission_denied"
    PATH_ESCAPE = "path_escape"
    USER_DECLINED = "user_declined"
    TIMEOUT = "timeout"
    TOOL_FAILED = "tool_failed"
    CANCELLED = "cancelled"
    STORAGE_ERROR = "storage_error"
    IO_ERROR = "io_error"


class TimeoutKind(StrEnum):
    TOOL = "tool"
    STREAM_READ = "stream_read"


class TernError(Exception):
    """Base exception for all tern errors."""

    kind: ErrorKind = ErrorKind.IO_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, partial: Turn | None = None) -> None:
        self.message = message
        # Assistant turn assembled before the failure, if any
        self.partial = partial
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        """Structured fields of this error (shown in debug mode)."""
        return {"kind": str(self.kind), "message": self.message}

    def describe(self) -> str:
        """One-line user-facing summary with the stable error tag."""
        return f"[{self.kind}] {self.message}"


class ConfigError(TernError):
    kind = ErrorKind.CONFIG_ERROR


class ToolRegistrationError(ConfigError):
    """Raised when a tool name is registered twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class TransportError(TernError):
    """Connect/read failure or retryable upstream status."""

    kind = ErrorKind.TRANSPORT_ERROR

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
        retry_after: float | None = None,
        partial: Turn | None = None,
    ) -> None:
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message, partial=partial)

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


class ProtocolError(TernError):
    """Malformed SSE framing or illegal event ordering."""

    kind = ErrorKind.PROTOCOL_ERROR


class ParseError(TernError):
    kind = ErrorKind.PARSE_ERROR

    def __init__(self, message: str, fragment: str, *, partial: Turn | None = None) -> None:
        self.fragment = fragment
        super().__init__(message, partial=partial)

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "fragment": self.fragment}


class ContextOverflow(TernError):
    kind = ErrorKind.CONTEXT_OVERFLOW

    def __init__(self, estimated_tokens: int, max_tokens: int) -> None:
        self.estimated_tokens = estimated_tokens
        self.max_tokens = max_tokens
        super().__init__(
            f"Context holds ~{estimated_tokens} tokens after compression, "
            f"budget is {max_tokens}. Use /compact or /clear."
        )

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "estimated_tokens": self.estimated_tokens,
            "max_tokens": self.max_tokens,
        }


class UnknownTool(TernError):
    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "name": self.name}


class InvalidArguments(TernError):
    kind = ErrorKind.INVALID_ARGUMENTS

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid argument '{field}': {reason}")

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "field": self.field, "reason": self.reason}


class PermissionDenied(TernError):
    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(message or f"Permission denied: {operation}")

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "operation": self.operation}


class PathEscape(PermissionDenied):
    """Raised when a requested path resolves outside the working directory."""

    kind = ErrorKind.PATH_ESCAPE

    def __init__(self, path: str, root: str) -> None:
        self.path = path
        self.root = root
        super().__init__(
            f"access {path}",
            f"Path '{path}' is outside working directory '{root}'",
        )

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "path": self.path, "root": self.root}


class UserDeclined(TernError):
    kind = ErrorKind.USER_DECLINED

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"User declined to run {tool_name}")


class Timeout(TernError):
    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        elapsed: float,
        timeout_kind: TimeoutKind,
        *,
        partial: Turn | None = None,
    ) -> None:
        self.elapsed = elapsed
        self.timeout_kind = timeout_kind
        # Only stream-read timeouts are retried
        self.retryable = timeout_kind == TimeoutKind.STREAM_READ
        label = "Tool execution" if timeout_kind == TimeoutKind.TOOL else "Stream read"
        super().__init__(f"{label} timed out after {elapsed:.1f}s", partial=partial)

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "elapsed": round(self.elapsed, 3),
            "timeout_kind": str(self.timeout_kind),
        }


class ToolFailed(TernError):
    kind = ErrorKind.TOOL_FAILED

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "name": self.name}


class Cancelled(TernError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Cancelled", *, partial: Turn | None = None) -> None:
        super().__init__(message, partial=partial)


class StorageError(TernError):
    """Persistence failed; the previous on-disk state is left untouched."""

    kind = ErrorKind.STORAGE_ERROR


class IoError(TernError):
    kind = ErrorKind.IO_ERROR

"""Tool registry -- definitions, validation, permission gate and execution.

Each tool is a (ToolDefinition, handler) pair. A handler is an async
callable taking validated arguments and the per-invocation ToolContext
and returning a ToolOutput. ToolRegistry.execute() never raises for tool
problems: unknown tools, bad arguments, denied permissions, declined
confirmations, timeouts and handler failures all come back as a
ToolOutcome tagged with an ErrorKind, ready to become a ToolResult block.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tern.cancellation import CancelToken, run_cancellable
from tern.errors import (
    Cancelled,
    ErrorKind,
    InvalidArguments,
    PermissionDenied,
    TernError,
    Timeout,
    TimeoutKind,
    ToolFailed,
    ToolRegistrationError,
    UnknownTool,
    UserDeclined,
)
from tern.models import ToolResultBlock

logger = logging.getLogger(__name__)

# Extra time a cancelled handler gets to clean up before execute() returns
_CANCEL_GRACE = 0.5


class SecurityLevel(StrEnum):
    SAFE = "safe"
    MEDIUM = "medium"
    DANGEROUS = "dangerous"


# Capability a session must hold to run tools of each level
REQUIRED_CAPABILITY: dict[SecurityLevel, str] = {
    SecurityLevel.MEDIUM: "write",
    SecurityLevel.DANGEROUS: "execute",
}


class ParamType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ToolParameter(BaseModel):
    """One declared parameter.

    Supported constraint keys: minimum, maximum (numbers), min_length,
    max_length (strings and arrays), enum, pattern (strings).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType
    description: str = ""
    required: bool = False
    default: Any = None
    constraints: dict[str, Any] = Field(default_factory=dict)

    def json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": str(self.type)}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        for key, schema_key in (
            ("minimum", "minimum"),
            ("maximum", "maximum"),
            ("enum", "enum"),
            ("pattern", "pattern"),
        ):
            if key in self.constraints:
                schema[schema_key] = self.constraints[key]
        if self.type == ParamType.STRING:
            if "min_length" in self.constraints:
                schema["minLength"] = self.constraints["min_length"]
            if "max_length" in self.constraints:
                schema["maxLength"] = self.constraints["max_length"]
        if self.type == ParamType.ARRAY:
            if "min_length" in self.constraints:
                schema["minItems"] = self.constraints["min_length"]
            if "max_length" in self.constraints:
                schema["maxItems"] = self.constraints["max_length"]
        return schema


class ToolDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "1.0.0"
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)
    category: str = "general"
    security_level: SecurityLevel = SecurityLevel.SAFE
    requires_confirmation: bool = False

    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def api_format(self) -> dict[str, Any]:
        """Definition in the upstream tools[] format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }


@dataclass
class ToolContext:
    """Per-invocation execution context."""

    working_directory: Path
    session_id: str
    environment: dict[str, str] = field(default_factory=dict)
    capabilities: frozenset[str] = frozenset({"read", "write"})
    debug: bool = False
    interactive: bool = True
    allowed_tools: frozenset[str] = frozenset()
    denied_tools: frozenset[str] = frozenset()
    tool_timeout: float | None = None  # session default, overrides the registry default
    cancel: CancelToken | None = None


@dataclass
class ToolOutput:
    """What a handler returns. success=False reports a tool-level failure."""

    data: Any = None
    success: bool = True
    error: str | None = None
    logs: list[str] = field(default_factory=list)


@dataclass
class ToolOutcome:
    """Result of ToolRegistry.execute()."""

    tool_name: str
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    elapsed_ms: int = 0
    logs: list[str] = field(default_factory=list)

    @property
    def fatal(self) -> bool:
        """Fatal outcomes stop the remaining tool calls of a round."""
        return self.error_kind == ErrorKind.CANCELLED

    def content(self) -> str:
        """Tool result content string sent back to the model."""
        if self.success:
            return json.dumps(self.data, ensure_ascii=False, default=str)
        text = f"[{self.error_kind}] {self.error}"
        if self.data is not None:
            text += "\n" + json.dumps(self.data, ensure_ascii=False, default=str)
        return text

    def to_block(self, call_id: str) -> ToolResultBlock:
        return ToolResultBlock(call_id=call_id, content=self.content(), is_error=not self.success)


@dataclass
class ToolStats:
    call_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_elapsed_ms: int = 0

    @property
    def average_ms(self) -> float:
        return self.total_elapsed_ms / self.call_count if self.call_count else 0.0


@dataclass(frozen=True)
class ConfirmationRequest:
    tool_name: str
    arguments: dict[str, Any]
    security_level: SecurityLevel
    description: str


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolOutput]]
Confirmer = Callable[[ConfirmationRequest], Awaitable[bool]]


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    handler: ToolHandler


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _type_matches(value: Any, kind: ParamType) -> bool:
    match kind:
        case ParamType.STRING:
            return isinstance(value, str)
        case ParamType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        case ParamType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        case ParamType.BOOLEAN:
            return isinstance(value, bool)
        case ParamType.ARRAY:
            return isinstance(value, list)
        case ParamType.OBJECT:
            return isinstance(value, dict)
    return False


def _check_constraints(param: ToolParameter, value: Any) -> None:
    c = param.constraints
    if "enum" in c and value not in c["enum"]:
        raise InvalidArguments(param.name, f"must be one of {c['enum']}")
    if param.type in (ParamType.INTEGER, ParamType.NUMBER):
        if "minimum" in c and value < c["minimum"]:
            raise InvalidArguments(param.name, f"must be >= {c['minimum']}")
        if "maximum" in c and value > c["maximum"]:
            raise InvalidArguments(param.name, f"must be <= {c['maximum']}")
    if param.type in (ParamType.STRING, ParamType.ARRAY):
        if "min_length" in c and len(value) < c["min_length"]:
            raise InvalidArguments(param.name, f"length must be >= {c['min_length']}")
        if "max_length" in c and len(value) > c["max_length"]:
            raise InvalidArguments(param.name, f"length must be <= {c['max_length']}")
    if param.type == ParamType.STRING and "pattern" in c and not re.search(c["pattern"], value):
        raise InvalidArguments(param.name, f"must match pattern {c['pattern']!r}")


def validate_arguments(definition: ToolDefinition, raw_input: Any) -> dict[str, Any]:
    """Check raw_input against the schema; returns arguments with defaults applied."""
    if not isinstance(raw_input, dict):
        raise InvalidArguments("input", "must be a JSON object")
    declared = {p.name: p for p in definition.parameters}
    for key in raw_input:
        if key not in declared:
            raise InvalidArguments(key, "unknown parameter")

    args: dict[str, Any] = {}
    for param in definition.parameters:
        if param.name not in raw_input or raw_input[param.name] is None:
            if param.required:
                raise InvalidArguments(param.name, "required parameter missing")
            if param.default is not None:
                args[param.name] = param.default
            continue
        value = raw_input[param.name]
        if not _type_matches(value, param.type):
            raise InvalidArguments(param.name, f"expected {param.type}, got {type(value).__name__}")
        _check_constraints(param, value)
        args[param.name] = value
    return args


def check_permission(definition: ToolDefinition, ctx: ToolContext) -> None:
    if definition.name in ctx.denied_tools:
        raise PermissionDenied(
            f"run {definition.name}",
            f"Tool '{definition.name}' is denied for this session",
        )
    capability = REQUIRED_CAPABILITY.get(definition.security_level)
    if capability and capability not in ctx.capabilities:
        raise PermissionDenied(
            f"run {definition.name}",
            f"{definition.security_level.capitalize()} tool '{definition.name}' "
            f"requires the '{capability}' capability",
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed registry of tools with usage accounting."""

    def __init__(self, confirmer: Confirmer | None = None, default_timeout: float = 30.0) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._stats: dict[str, ToolStats] = {}
        self._confirmer = confirmer
        self._default_timeout = default_timeout

    def set_confirmer(self, confirmer: Confirmer | None) -> None:
        self._confirmer = confirmer

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register a tool. A duplicate name raises and keeps the first."""
        if definition.name in self._tools:
            raise ToolRegistrationError(definition.name)
        self._tools[definition.name] = RegisteredTool(definition, handler)
        self._stats[definition.name] = ToolStats()
        logger.info("Registered tool %s v%s (%s)", definition.name, definition.version, definition.security_level)

    def get(self, name: str) -> ToolDefinition | None:
        tool = self._tools.get(name)
        return tool.definition if tool else None

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in upstream API format."""
        return [t.definition.api_format() for t in self._tools.values()]

    def stats(self, name: str) -> ToolStats | None:
        return self._stats.get(name)

    def all_stats(self) -> dict[str, ToolStats]:
        return dict(self._stats)

    async def execute(
        self,
        name: str,
        raw_input: Any,
        ctx: ToolContext,
        timeout: float | None = None,
    ) -> ToolOutcome:
        """Resolve, validate, gate, confirm and run one tool call."""
        start = time.monotonic()
        outcome: ToolOutcome
        try:
            tool = self._tools.get(name)
            if tool is None:
                raise UnknownTool(name)
            args = validate_arguments(tool.definition, raw_input)
            check_permission(tool.definition, ctx)
            await self._confirm(tool.definition, args, ctx)
            output = await self._run(tool, args, ctx, self._deadline(tool.definition, args, timeout, ctx.tool_timeout))
            outcome = ToolOutcome(
                tool_name=name,
                success=output.success,
                data=output.data,
                error=output.error if not output.success else None,
                error_kind=None if output.success else ErrorKind.TOOL_FAILED,
                logs=list(output.logs),
            )
            if not output.success and not outcome.error:
                outcome.error = f"{name} reported failure"
        except TernError as e:
            outcome = ToolOutcome(tool_name=name, success=False, error=e.message, error_kind=e.kind)
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            failure = ToolFailed(name, f"Tool error: {e}")
            outcome = ToolOutcome(tool_name=name, success=False, error=failure.message, error_kind=failure.kind)

        outcome.elapsed_ms = int((time.monotonic() - start) * 1000)
        self._record(name, outcome)
        return outcome

    def _deadline(
        self,
        definition: ToolDefinition,
        args: dict[str, Any],
        override: float | None,
        ctx_timeout: float | None = None,
    ) -> float:
        if override is not None:
            return override
        # Tools declaring a numeric `timeout` parameter let the caller pick the bound
        declared = {p.name for p in definition.parameters}
        if "timeout" in declared and isinstance(args.get("timeout"), (int, float)):
            return float(args["timeout"])
        if ctx_timeout is not None:
            return ctx_timeout
        return self._default_timeout

    async def _confirm(self, definition: ToolDefinition, args: dict[str, Any], ctx: ToolContext) -> None:
        if not definition.requires_confirmation or not ctx.interactive:
            return
        if definition.name in ctx.allowed_tools:
            return
        if self._confirmer is None:
            raise UserDeclined(definition.name)
        request = ConfirmationRequest(
            tool_name=definition.name,
            arguments=args,
            security_level=definition.security_level,
            description=definition.description,
        )
        approved = await run_cancellable(self._confirmer(request), ctx.cancel)
        if not approved:
            raise UserDeclined(definition.name)

    async def _run(
        self,
        tool: RegisteredTool,
        args: dict[str, Any],
        ctx: ToolContext,
        timeout: float,
    ) -> ToolOutput:
        """Run the handler racing the deadline and the cancel token."""
        start = time.monotonic()
        task = asyncio.create_task(tool.handler(args, ctx))
        waiters: set[asyncio.Future] = {task}
        cancel_wait = asyncio.ensure_future(ctx.cancel.wait()) if ctx.cancel else None
        if cancel_wait is not None:
            waiters.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if task in done:
            return task.result()

        # Best-effort cancellation; the handler gets a short grace period
        task.cancel()
        await asyncio.wait({task}, timeout=_CANCEL_GRACE)
        if task.done() and not task.cancelled():
            task.exception()
        if ctx.cancel is not None and ctx.cancel.cancelled:
            raise Cancelled(f"{tool.definition.name} cancelled")
        raise Timeout(time.monotonic() - start, TimeoutKind.TOOL)

    def _record(self, name: str, outcome: ToolOutcome) -> None:
        stats = self._stats.get(name)
        if stats is None:
            return
        stats.call_count += 1
        stats.total_elapsed_ms += outcome.elapsed_ms
        if outcome.success:
            stats.success_count += 1
        else:
            stats.error_count += 1
        if not outcome.success:
            logger.info("Tool %s failed [%s]: %s", name, outcome.error_kind, outcome.error)

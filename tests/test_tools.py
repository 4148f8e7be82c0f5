"""Tests for the tool registry.

- TestRegistration: duplicate names, definitions in API format
- TestValidation: schema checks and defaults
- TestPermissions: capabilities, deny list, confirmation
- TestExecution: outcomes, stats, timeout and cancellation
"""

import asyncio
import time
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from tern.cancellation import CancelToken
from tern.errors import ErrorKind, InvalidArguments, ToolRegistrationError
from tern.tools.builtin import register_builtin_tools
from tern.tools.registry import (
    ConfirmationRequest,
    ParamType,
    SecurityLevel,
    ToolDefinition,
    ToolOutput,
    ToolParameter,
    ToolRegistry,
    validate_arguments,
)


async def _echo(args, ctx):
    return ToolOutput(data={"echo": args})


async def _boom(args, ctx):
    raise RuntimeError("kaboom")


async def _sleepy(args, ctx):
    await asyncio.sleep(args.get("seconds", 10))
    return ToolOutput(data="woke")


ECHO = ToolDefinition(
    name="echo",
    description="Echo arguments",
    parameters=[
        ToolParameter(name="text", type=ParamType.STRING, required=True, constraints={"max_length": 10}),
        ToolParameter(name="count", type=ParamType.INTEGER, default=1, constraints={"minimum": 1, "maximum": 3}),
        ToolParameter(name="mode", type=ParamType.STRING, constraints={"enum": ["a", "b"]}),
        ToolParameter(name="tags", type=ParamType.ARRAY),
    ],
)

SLEEPY = ToolDefinition(
    name="sleepy",
    description="Sleeps",
    parameters=[ToolParameter(name="seconds", type=ParamType.NUMBER)],
)


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry(default_timeout=5.0)
    reg.register(ECHO, _echo)
    reg.register(SLEEPY, _sleepy)
    reg.register(ToolDefinition(name="boom", description="Raises"), _boom)
    return reg


class TestRegistration:
    def test_duplicate_name_rejected_and_first_kept(self, registry):
        async def other(args, ctx):
            return ToolOutput(data="other")

        with pytest.raises(ToolRegistrationError) as exc:
            registry.register(ToolDefinition(name="echo", description="Second"), other)
        assert exc.value.kind == ErrorKind.CONFIG_ERROR
        assert registry.get("echo").description == "Echo arguments"

    def test_builtins_registered_once(self):
        reg = ToolRegistry()
        register_builtin_tools(reg)
        assert reg.names() == ["read", "write", "list", "shell"]
        with pytest.raises(ToolRegistrationError):
            register_builtin_tools(reg)

    def test_api_format(self, registry):
        api = {d["name"]: d for d in registry.tool_definitions()}
        schema = api["echo"]["input_schema"]
        assert schema["type"] == "object"
        assert schema["required"] == ["text"]
        assert schema["properties"]["text"] == {"type": "string", "maxLength": 10}
        assert schema["properties"]["count"]["minimum"] == 1
        assert schema["properties"]["mode"]["enum"] == ["a", "b"]

    def test_unknown_name(self, registry):
        assert registry.get("nope") is None


class TestValidation:
    def test_defaults_applied(self):
        assert validate_arguments(ECHO, {"text": "hi"}) == {"text": "hi", "count": 1}

    @pytest.mark.parametrize(
        "raw, field",
        [
            ({}, "text"),
            ({"text": 5}, "text"),
            ({"text": "x" * 11}, "text"),
            ({"text": "x", "count": 0}, "count"),
            ({"text": "x", "count": True}, "count"),
            ({"text": "x", "mode": "c"}, "mode"),
            ({"text": "x", "tags": "notalist"}, "tags"),
            ({"text": "x", "extra": 1}, "extra"),
        ],
    )
    def test_rejections(self, raw, field):
        with pytest.raises(InvalidArguments) as exc:
            validate_arguments(ECHO, raw)
        assert exc.value.field == field

    def test_non_object_input(self):
        with pytest.raises(InvalidArguments):
            validate_arguments(ECHO, ["text"])

    def test_pattern(self):
        definition = ToolDefinition(
            name="p",
            description="",
            parameters=[ToolParameter(name="id", type=ParamType.STRING, constraints={"pattern": r"^[a-f0-9]+$"})],
        )
        assert validate_arguments(definition, {"id": "abc1"}) == {"id": "abc1"}
        with pytest.raises(InvalidArguments):
            validate_arguments(definition, {"id": "xyz"})


class TestPermissions:
    @pytest.mark.asyncio
    async def test_dangerous_tool_needs_execute(self, tool_ctx):
        reg = ToolRegistry()
        register_builtin_tools(reg)
        ctx = replace(tool_ctx, capabilities=frozenset({"read", "write"}))
        outcome = await reg.execute("shell", {"command": "echo hi"}, ctx)
        assert outcome.error_kind == ErrorKind.PERMISSION_DENIED
        assert "execute" in outcome.error

    @pytest.mark.asyncio
    async def test_denied_tool(self, registry, tool_ctx):
        ctx = replace(tool_ctx, denied_tools=frozenset({"echo"}))
        outcome = await registry.execute("echo", {"text": "hi"}, ctx)
        assert outcome.error_kind == ErrorKind.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_confirmation_approved(self, tool_ctx):
        requests: list[ConfirmationRequest] = []

        async def approve(request):
            requests.append(request)
            return True

        reg = ToolRegistry(confirmer=approve)
        register_builtin_tools(reg)
        ctx = replace(tool_ctx, interactive=True)
        outcome = await reg.execute("write", {"path": "a.txt", "content": "x"}, ctx)
        assert outcome.success
        assert requests[0].tool_name == "write"
        assert requests[0].security_level == SecurityLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_confirmation_declined(self, tool_ctx):
        decline = AsyncMock(return_value=False)
        reg = ToolRegistry(confirmer=decline)
        register_builtin_tools(reg)
        ctx = replace(tool_ctx, interactive=True)
        outcome = await reg.execute("write", {"path": "a.txt", "content": "x"}, ctx)
        assert outcome.error_kind == ErrorKind.USER_DECLINED
        decline.assert_awaited_once()
        assert not (tool_ctx.working_directory / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_allowed_tool_skips_confirmation(self, tool_ctx):
        never = AsyncMock()
        reg = ToolRegistry(confirmer=never)
        register_builtin_tools(reg)
        ctx = replace(tool_ctx, interactive=True, allowed_tools=frozenset({"write"}))
        outcome = await reg.execute("write", {"path": "a.txt", "content": "x"}, ctx)
        assert outcome.success
        never.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_interactive_without_confirmer_declines(self, tool_ctx):
        reg = ToolRegistry()
        register_builtin_tools(reg)
        outcome = await reg.execute("write", {"path": "a.txt", "content": "x"}, replace(tool_ctx, interactive=True))
        assert outcome.error_kind == ErrorKind.USER_DECLINED


class TestExecution:
    @pytest.mark.asyncio
    async def test_success_and_stats(self, registry, tool_ctx):
        outcome = await registry.execute("echo", {"text": "hi"}, tool_ctx)
        assert outcome.success
        assert outcome.data == {"echo": {"text": "hi", "count": 1}}
        assert outcome.content() == '{"echo": {"text": "hi", "count": 1}}'
        stats = registry.stats("echo")
        assert stats.call_count == 1
        assert stats.success_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_outcome(self, registry, tool_ctx):
        outcome = await registry.execute("nope", {}, tool_ctx)
        assert outcome.error_kind == ErrorKind.UNKNOWN_TOOL
        assert registry.stats("nope") is None

    @pytest.mark.asyncio
    async def test_invalid_arguments_outcome(self, registry, tool_ctx):
        outcome = await registry.execute("echo", {"text": 1}, tool_ctx)
        assert outcome.error_kind == ErrorKind.INVALID_ARGUMENTS
        block = outcome.to_block("c1")
        assert block.is_error
        assert block.content.startswith("[invalid_arguments]")
        assert registry.stats("echo").error_count == 1

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_tool_failed(self, registry, tool_ctx):
        outcome = await registry.execute("boom", {}, tool_ctx)
        assert outcome.error_kind == ErrorKind.TOOL_FAILED
        assert "kaboom" in outcome.error

    @pytest.mark.asyncio
    async def test_timeout_bound(self, registry, tool_ctx):
        start = time.monotonic()
        outcome = await registry.execute("sleepy", {"seconds": 10}, tool_ctx, timeout=0.1)
        elapsed = time.monotonic() - start
        assert outcome.error_kind == ErrorKind.TIMEOUT
        assert elapsed < 0.1 + 0.6

    @pytest.mark.asyncio
    async def test_context_timeout_used_when_no_override(self, registry, tool_ctx):
        ctx = replace(tool_ctx, tool_timeout=0.05)
        outcome = await registry.execute("sleepy", {"seconds": 10}, ctx)
        assert outcome.error_kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_is_fatal(self, registry, tool_ctx):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        outcome = await registry.execute("sleepy", {"seconds": 10}, replace(tool_ctx, cancel=token))
        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.fatal

    @pytest.mark.asyncio
    async def test_path_escape_is_counted(self, tool_ctx):
        reg = ToolRegistry()
        register_builtin_tools(reg)
        outcome = await reg.execute("read", {"path": "../../etc/passwd"}, tool_ctx)
        assert outcome.error_kind == ErrorKind.PATH_ESCAPE
        stats = reg.stats("read")
        assert stats.call_count == 1
        assert stats.error_count == 1
        assert stats.success_count == 0

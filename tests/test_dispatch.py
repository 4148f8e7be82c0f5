"""Tests for the dispatch loop.

- TestTextReply: a plain answer in one round-trip
- TestToolRounds: tool calls, results and the max_turns cap
- TestRetry: retryable and fatal upstream failures
- TestCancel: cancellation while streaming and while running tools
"""

import asyncio

import pytest

from factories import make_settings
from sse_helpers import ScriptedOpener, message_start, stalling_stream, text_block, text_reply, tool_reply
from tern.api.dispatch import DispatchLoop, DispatchStatus
from tern.cancellation import CancelToken
from tern.context.manager import ContextManager
from tern.errors import ErrorKind, ParseError, TransportError
from tern.events import EventBus, EventType, UiEvent
from tern.models import Role, Turn
from tern.tools.builtin import register_builtin_tools
from tern.tools.registry import ToolContext, ToolDefinition, ToolOutput, ToolRegistry


async def _sleepy(args, ctx):
    await asyncio.sleep(10)
    return ToolOutput(data="woke")


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg)
    reg.register(ToolDefinition(name="sleepy", description="Sleeps"), _sleepy)
    return reg


@pytest.fixture
def events() -> tuple[EventBus, list[UiEvent]]:
    bus = EventBus()
    seen: list[UiEvent] = []
    bus.on("*", seen.append)
    return bus, seen


@pytest.fixture
def token() -> CancelToken:
    return CancelToken()


@pytest.fixture
def ctx(tool_ctx, token) -> ToolContext:
    tool_ctx.cancel = token
    return tool_ctx


def _loop(settings, registry, opener, bus=None, **kwargs):
    context = ContextManager(settings)
    context.append(Turn.user(kwargs.pop("prompt", "hi")))
    loop = DispatchLoop(context, registry, opener, settings, events=bus, **kwargs)
    return loop, context


def _types(seen: list[UiEvent]) -> list[EventType]:
    return [e.type for e in seen]


class TestTextReply:
    @pytest.mark.asyncio
    async def test_single_round_trip(self, settings, registry, events, ctx):
        bus, seen = events
        opener = ScriptedOpener(text_reply("Hel", "lo"))
        loop, context = _loop(settings, registry, opener, bus)

        result = await loop.run(ctx)

        assert result.status == DispatchStatus.COMPLETED
        assert result.ok
        assert result.round_trips == 1
        assert result.final_text() == "Hello"
        assert [t.role for t in result.turns] == [Role.ASSISTANT]
        assert len(context) == 2
        deltas = [e.data["text"] for e in seen if e.type == EventType.TEXT_DELTA]
        assert deltas == ["Hel", "lo"]
        assert EventType.TURN_SEALED in _types(seen)
        assert opener.payloads[0]["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        assert {t["name"] for t in opener.payloads[0]["tools"]} == {"read", "write", "list", "shell", "sleepy"}

    @pytest.mark.asyncio
    async def test_on_turn_sees_every_sealed_turn(self, settings, registry, ctx):
        sealed: list[Turn] = []

        async def on_turn(turn: Turn) -> None:
            sealed.append(turn)

        loop, _ = _loop(settings, registry, ScriptedOpener(text_reply("ok")), on_turn=on_turn)
        result = await loop.run(ctx)
        assert sealed == result.turns


class TestToolRounds:
    @pytest.mark.asyncio
    async def test_read_then_answer(self, settings, registry, events, ctx, workdir):
        (workdir / "notes.txt").write_text("hi there")
        bus, seen = events
        opener = ScriptedOpener(
            tool_reply(("c1", "read", {"path": "notes.txt"}), text="Let me read it."),
            text_reply("It says hi there."),
        )
        loop, context = _loop(settings, registry, opener, bus, prompt="what is in notes.txt?")

        result = await loop.run(ctx)

        assert result.ok
        assert [t.role for t in result.turns] == [Role.ASSISTANT, Role.TOOL_RESULT, Role.ASSISTANT]
        tool_result = result.turns[1].tool_results()[0]
        assert tool_result.call_id == "c1"
        assert not tool_result.is_error
        assert "hi there" in tool_result.content
        assert result.final_text() == "It says hi there."
        assert result.round_trips == 2

        second = opener.payloads[1]["messages"]
        assert second[-1]["role"] == "user"
        assert second[-1]["content"][0]["type"] == "tool_result"
        started = [e for e in seen if e.type == EventType.TOOL_STARTED]
        finished = [e for e in seen if e.type == EventType.TOOL_FINISHED]
        assert started[0].data["name"] == "read"
        assert finished[0].data["success"] is True

    @pytest.mark.asyncio
    async def test_calls_answered_in_order(self, settings, registry, ctx, workdir):
        (workdir / "a.txt").write_text("A")
        opener = ScriptedOpener(
            tool_reply(("c1", "read", {"path": "a.txt"}), ("c2", "list", {"path": "."})),
            text_reply("done"),
        )
        loop, _ = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert [b.call_id for b in result.turns[1].tool_results()] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_tool_errors_go_back_to_the_model(self, settings, registry, ctx):
        opener = ScriptedOpener(
            tool_reply(("c1", "nope", {}), ("c2", "read", {"path": "../../etc/passwd"})),
            text_reply("Sorry."),
        )
        loop, _ = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.ok
        first, second = result.turns[1].tool_results()
        assert first.is_error and first.content.startswith("[unknown_tool]")
        assert second.is_error and second.content.startswith("[path_escape]")
        assert registry.stats("read").error_count == 1

    @pytest.mark.asyncio
    async def test_max_turns_withholds_tools(self, tmp_path, workdir, registry, ctx):
        settings = make_settings(tmp_path, working_directory=workdir, max_turns=1)
        opener = ScriptedOpener(
            tool_reply(("c1", "list", {})),
            text_reply("That is all."),
        )
        loop, _ = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.ok
        assert "tools" in opener.payloads[0]
        assert "tools" not in opener.payloads[1]


class TestRetry:
    @pytest.mark.asyncio
    async def test_retryable_error_then_success(self, settings, registry, events, ctx):
        bus, seen = events
        opener = ScriptedOpener(TransportError("overloaded", retryable=True), text_reply("ok"))
        loop, _ = _loop(settings, registry, opener, bus)

        result = await loop.run(ctx)

        assert result.ok
        assert result.round_trips == 2
        retries = [e for e in seen if e.type == EventType.RETRYING]
        assert len(retries) == 1
        assert retries[0].data["attempt"] == 2
        assert retries[0].data["max_attempts"] == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings, registry, ctx):
        opener = ScriptedOpener(*[TransportError("down", retryable=True) for _ in range(3)])
        loop, _ = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.status == DispatchStatus.FAILED
        assert result.error.kind == ErrorKind.TRANSPORT_ERROR
        assert result.round_trips == 3

    @pytest.mark.asyncio
    async def test_truncated_stream_is_retried(self, settings, registry, ctx):
        cut = [message_start(), *text_block(0, "half")]
        opener = ScriptedOpener(cut, text_reply("whole"))
        loop, context = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.final_text() == "whole"
        assert len(context) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(self, settings, registry, ctx):
        opener = ScriptedOpener(TransportError("bad request", retryable=False, status_code=400))
        loop, context = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.status == DispatchStatus.FAILED
        assert result.round_trips == 1
        assert result.turns == []
        assert len(context) == 1

    @pytest.mark.asyncio
    async def test_parse_error_fails(self, settings, registry, ctx):
        opener = ScriptedOpener(ParseError("bad json", fragment="{"))
        loop, _ = _loop(settings, registry, opener)
        result = await loop.run(ctx)
        assert result.status == DispatchStatus.FAILED
        assert result.error.kind == ErrorKind.PARSE_ERROR


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_while_streaming_keeps_partial(self, settings, registry, events, ctx, token):
        bus, _ = events
        bus.on(EventType.TEXT_DELTA, lambda event: token.cancel())
        chunks = [message_start(), *text_block(0, "Part of an answer")[:2]]
        opener = ScriptedOpener(lambda: stalling_stream(chunks))
        loop, context = _loop(settings, registry, opener, bus)

        result = await loop.run(ctx, token)

        assert result.status == DispatchStatus.CANCELLED
        assert result.error.kind == ErrorKind.CANCELLED
        partial = result.turns[-1]
        assert partial.role == Role.ASSISTANT
        assert partial.stop_reason == "cancelled"
        assert partial.text() == "Part of an answer"
        assert context.snapshot().turns[-1].id == partial.id

    @pytest.mark.asyncio
    async def test_cancel_during_tools_answers_every_call(self, settings, registry, ctx, token):
        opener = ScriptedOpener(tool_reply(("c1", "sleepy", {}), ("c2", "sleepy", {})))
        loop, context = _loop(settings, registry, opener)
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        result = await loop.run(ctx, token)

        assert result.status == DispatchStatus.CANCELLED
        results = result.turns[-1].tool_results()
        assert [r.call_id for r in results] == ["c1", "c2"]
        assert all(r.is_error for r in results)
        assert results[0].content.startswith("[cancelled]")
        assert "Not run" in results[1].content
        assert len(opener.payloads) == 1

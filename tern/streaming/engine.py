"""Streaming engine -- SSE byte stream to an assembled assistant Turn.

Three layers:
  parse_stream_event()  JSON payload of one SSE message -> StreamEvent
  TurnAssembler         state machine over StreamEvents -> Turn
  StreamingEngine       drives decoder + assembler over an async byte
                        stream with heartbeat, read-gap timeout and
                        cancellation

Text deltas are pushed to the on_text callback as they arrive; the
assembled Turn is only published at message_stop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tern.cancellation import CancelToken
from tern.errors import (
    Cancelled,
    ParseError,
    ProtocolError,
    TernError,
    Timeout,
    TimeoutKind,
    TransportError,
)
from tern.models import ContentBlock, Role, TextBlock, TokenUsage, ToolUseBlock, Turn
from tern.streaming.sse import SseDecoder, SseMessage

logger = logging.getLogger(__name__)

# In-stream error types worth another attempt
_RETRYABLE_STREAM_ERRORS = frozenset({"overloaded_error", "api_error", "rate_limit_error"})

STOP_CANCELLED = "cancelled"
STOP_ERROR = "error"

TextCallback = Callable[[str], None]
HeartbeatCallback = Callable[[float], None]


class EventKind(StrEnum):
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"
    PING = "ping"
    DONE = "done"  # literal [DONE] sentinel


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: EventKind
    index: int | None = None
    block: dict[str, Any] = field(default_factory=dict)  # initial content block
    delta: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, Any] = field(default_factory=dict)
    message: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] = field(default_factory=dict)


_BLOCK_EVENTS = frozenset({
    EventKind.CONTENT_BLOCK_START,
    EventKind.CONTENT_BLOCK_DELTA,
    EventKind.CONTENT_BLOCK_STOP,
})


def parse_stream_event(data: dict[str, Any]) -> StreamEvent | None:
    """Map one decoded event payload to a StreamEvent.

    Unknown event types return None so newer upstream events are skipped.
    stop_reason lives in message_delta.delta, not message_start.
    """
    try:
        kind = EventKind(data.get("type"))
    except ValueError:
        logger.debug("Skipping unknown stream event type: %s", data.get("type"))
        return None
    if kind == EventKind.DONE:
        return None

    index = data.get("index")
    if kind in _BLOCK_EVENTS and (not isinstance(index, int) or isinstance(index, bool) or index < 0):
        raise ProtocolError(f"{kind} without a valid index: {index!r}")

    return StreamEvent(
        type=kind,
        index=index if kind in _BLOCK_EVENTS else None,
        block=data.get("content_block") or {},
        delta=data.get("delta") or {},
        usage=data.get("usage") or {},
        message=data.get("message") or {},
        error=data.get("error") or {},
    )


def decode_message(message: SseMessage) -> StreamEvent | None:
    """Decode one SSE message; the [DONE] sentinel becomes a DONE event."""
    if message.data.strip() == "[DONE]":
        return StreamEvent(type=EventKind.DONE)
    try:
        data = json.loads(message.data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed event data for '{message.event}': {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Event data for '{message.event}' is not an object")
    data.setdefault("type", message.event)
    return parse_stream_event(data)


# ---------------------------------------------------------------------------
# Assembly state machine
# ---------------------------------------------------------------------------


class AssemblyState(StrEnum):
    IDLE = "idle"
    AWAIT_MESSAGE_START = "await_message_start"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class _OpenBlock:
    kind: str  # text | tool_use | other upstream block types (discarded)
    parts: list[str] = field(default_factory=list)
    call_id: str = ""
    name: str = ""
    initial_input: dict[str, Any] = field(default_factory=dict)


class TurnAssembler:
    """Reconstructs one assistant turn from StreamEvents.

    Blocks are held in a sparse index -> block map while open and sealed
    on content_block_stop. Unknown block kinds (e.g. thinking) take part
    in index bookkeeping but are dropped from the turn.
    """

    def __init__(self, on_text: TextCallback | None = None) -> None:
        self.state = AssemblyState.IDLE
        self._on_text = on_text
        self._open: dict[int, _OpenBlock] = {}
        self._sealed: dict[int, ContentBlock | None] = {}
        self._stop_reason: str | None = None
        self._input_tokens = 0
        self._output_tokens = 0
        self._seen_usage = False

    def begin(self) -> None:
        if self.state != AssemblyState.IDLE:
            raise ProtocolError(f"Assembler already started (state {self.state})")
        self.state = AssemblyState.AWAIT_MESSAGE_START

    @property
    def completed(self) -> bool:
        return self.state == AssemblyState.COMPLETED

    # -- event handling -------------------------------------------------

    def feed(self, event: StreamEvent) -> None:
        """Apply one event; illegal transitions fail the assembly."""
        if event.type == EventKind.PING:
            return
        try:
            self._apply(event)
        except TernError as e:
            self.state = AssemblyState.FAILED
            if e.partial is None:
                e.partial = self.partial(STOP_ERROR)
            raise

    def _apply(self, event: StreamEvent) -> None:
        if self.state in (AssemblyState.IDLE, AssemblyState.FAILED):
            raise ProtocolError(f"Event {event.type} in state {self.state}")
        if event.type == EventKind.ERROR:
            self._fail_upstream(event.error)
        if self.state == AssemblyState.COMPLETED:
            if event.type == EventKind.DONE:
                return
            raise ProtocolError(f"Event {event.type} after message_stop")
        if event.type == EventKind.DONE:
            raise ProtocolError("Stream terminated before message_stop")
        if self.state == AssemblyState.AWAIT_MESSAGE_START:
            if event.type != EventKind.MESSAGE_START:
                raise ProtocolError(f"Expected message_start, got {event.type}")
            self._start_message(event.message)
            self.state = AssemblyState.STREAMING
            return

        match event.type:
            case EventKind.MESSAGE_START:
                raise ProtocolError("Duplicate message_start")
            case EventKind.CONTENT_BLOCK_START:
                self._start_block(event.index, event.block)
            case EventKind.CONTENT_BLOCK_DELTA:
                self._apply_delta(event.index, event.delta)
            case EventKind.CONTENT_BLOCK_STOP:
                self._stop_block(event.index)
            case EventKind.MESSAGE_DELTA:
                if event.delta.get("stop_reason"):
                    self._stop_reason = event.delta["stop_reason"]
                self._merge_usage(event.usage)
            case EventKind.MESSAGE_STOP:
                if self._open:
                    raise ProtocolError(
                        f"message_stop with open content blocks: {sorted(self._open)}"
                    )
                self.state = AssemblyState.COMPLETED

    def _fail_upstream(self, error: dict[str, Any]) -> None:
        error_type = error.get("type", "unknown")
        message = f"Upstream error {error_type}: {error.get('message', '')}"
        raise TransportError(message, retryable=error_type in _RETRYABLE_STREAM_ERRORS)

    def _start_message(self, message: dict[str, Any]) -> None:
        self._merge_usage(message.get("usage") or {})

    def _merge_usage(self, usage: dict[str, Any]) -> None:
        if not usage:
            return
        self._seen_usage = True
        if usage.get("input_tokens") is not None:
            self._input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens") is not None:
            self._output_tokens = int(usage["output_tokens"])

    def _start_block(self, index: int, block: dict[str, Any]) -> None:
        if index in self._open or index in self._sealed:
            raise ProtocolError(f"content_block_start for index {index} already in use")
        kind = block.get("type", "")
        if kind == "text":
            opened = _OpenBlock(kind="text")
            initial = block.get("text") or ""
            if initial:
                self._push_text(opened, initial)
        elif kind == "tool_use":
            if not block.get("id") or not block.get("name"):
                raise ProtocolError(f"tool_use block {index} missing id or name")
            opened = _OpenBlock(
                kind="tool_use",
                call_id=block["id"],
                name=block["name"],
                initial_input=block.get("input") or {},
            )
        else:
            opened = _OpenBlock(kind=kind or "unknown")
        self._open[index] = opened

    def _push_text(self, block: _OpenBlock, text: str) -> None:
        block.parts.append(text)
        if self._on_text:
            self._on_text(text)

    def _apply_delta(self, index: int, delta: dict[str, Any]) -> None:
        block = self._open.get(index)
        if block is None:
            raise ProtocolError(f"content_block_delta for index {index} which is not open")
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            if block.kind != "text":
                raise ProtocolError(f"text_delta for {block.kind} block {index}")
            self._push_text(block, delta.get("text", ""))
        elif delta_type == "input_json_delta":
            if block.kind != "tool_use":
                raise ProtocolError(f"input_json_delta for {block.kind} block {index}")
            block.parts.append(delta.get("partial_json", ""))
        elif block.kind in ("text", "tool_use"):
            raise ProtocolError(f"Unexpected delta {delta_type!r} for {block.kind} block {index}")

    def _stop_block(self, index: int) -> None:
        block = self._open.get(index)
        if block is None:
            raise ProtocolError(f"content_block_stop for index {index} which is not open")
        if block.kind == "tool_use":
            raw = "".join(block.parts)
            sealed = ToolUseBlock(
                call_id=block.call_id,
                tool_name=block.name,
                input=_parse_tool_input(raw, block.initial_input),
            )
        elif block.kind == "text":
            sealed = TextBlock(text="".join(block.parts))
        else:
            sealed = None
        del self._open[index]
        self._sealed[index] = sealed

    # -- results --------------------------------------------------------

    def _usage(self) -> TokenUsage | None:
        if not self._seen_usage:
            return None
        return TokenUsage(
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            total_tokens=self._input_tokens + self._output_tokens,
        )

    def result(self) -> Turn:
        if self.state != AssemblyState.COMPLETED:
            raise ProtocolError(f"Assembly not complete (state {self.state})")
        content = [b for _, b in sorted(self._sealed.items()) if b is not None]
        return Turn(
            role=Role.ASSISTANT,
            content=content,
            usage=self._usage(),
            stop_reason=self._stop_reason,
        )

    def partial(self, stop_reason: str) -> Turn:
        """Best-effort turn from what has arrived so far.

        Sealed text blocks are kept and open text blocks are materialized.
        Every ToolUse block is dropped, open or sealed, so a partial turn
        never carries a call that will not be answered.
        """
        blocks: dict[int, ContentBlock] = {}
        for index, sealed in self._sealed.items():
            if isinstance(sealed, TextBlock):
                blocks[index] = sealed
        for index, opened in self._open.items():
            if opened.kind == "text" and opened.parts:
                blocks[index] = TextBlock(text="".join(opened.parts))
        return Turn(
            role=Role.ASSISTANT,
            content=[b for _, b in sorted(blocks.items())],
            usage=self._usage(),
            stop_reason=stop_reason,
        )


def _parse_tool_input(raw: str, initial: dict[str, Any]) -> dict[str, Any]:
    if not raw.strip():
        return dict(initial)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"Tool input is not valid JSON: {e.msg}", fragment=raw) from e
    if not isinstance(parsed, dict):
        raise ParseError("Tool input must be a JSON object", fragment=raw)
    return parsed


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_EOF = object()


async def _next_chunk(iterator: AsyncIterator[bytes]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EOF


class StreamingEngine:
    """Consumes an async byte stream into one assistant Turn.

    While no bytes arrive, on_heartbeat fires every heartbeat_interval;
    a gap of read_timeout raises Timeout(StreamRead). Every raised
    TernError carries the partial turn assembled so far.
    """

    def __init__(self, heartbeat_interval: float = 15.0, read_timeout: float = 30.0) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._read_timeout = read_timeout

    async def consume(
        self,
        stream: AsyncIterable[bytes],
        on_text: TextCallback | None = None,
        cancel: CancelToken | None = None,
        on_heartbeat: HeartbeatCallback | None = None,
    ) -> Turn:
        assembler = TurnAssembler(on_text)
        decoder = SseDecoder()
        assembler.begin()
        iterator = aiter(stream)
        pending: asyncio.Task | None = None
        cancel_wait = asyncio.ensure_future(cancel.wait()) if cancel else None
        last_data = time.monotonic()

        try:
            while True:
                if cancel and cancel.cancelled:
                    raise Cancelled(partial=assembler.partial(STOP_CANCELLED))
                if pending is None:
                    pending = asyncio.create_task(_next_chunk(iterator))

                gap = time.monotonic() - last_data
                wait_for = max(0.0, min(self._heartbeat_interval, self._read_timeout - gap))
                waiters = {pending} if cancel_wait is None else {pending, cancel_wait}
                done, _ = await asyncio.wait(waiters, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED)

                if cancel_wait is not None and cancel_wait in done:
                    raise Cancelled(partial=assembler.partial(STOP_CANCELLED))
                if pending not in done:
                    gap = time.monotonic() - last_data
                    if gap >= self._read_timeout:
                        raise Timeout(gap, TimeoutKind.STREAM_READ, partial=assembler.partial(STOP_ERROR))
                    logger.debug("No stream data for %.1fs, heartbeat", gap)
                    if on_heartbeat:
                        on_heartbeat(gap)
                    continue

                task, pending = pending, None
                chunk = self._chunk_result(task, assembler)
                if chunk is _EOF:
                    break
                last_data = time.monotonic()
                if self._feed(decoder.feed(chunk), assembler):
                    return assembler.result()

            self._feed(self._flush(decoder, assembler), assembler)
            if not assembler.completed:
                raise TransportError(
                    "Stream closed before message_stop",
                    retryable=True,
                    partial=assembler.partial(STOP_ERROR),
                )
            return assembler.result()
        except TernError as e:
            if e.partial is None:
                e.partial = assembler.partial(STOP_ERROR)
            if not isinstance(e, Cancelled):
                logger.warning("Stream failed in state %s: %s", assembler.state, e.describe())
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if pending is not None:
                pending.cancel()
                await asyncio.wait({pending})
                if not pending.cancelled():
                    pending.exception()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _chunk_result(task: asyncio.Task, assembler: TurnAssembler) -> Any:
        try:
            return task.result()
        except TernError:
            raise
        except OSError as e:
            raise TransportError(f"Stream read failed: {e}", partial=assembler.partial(STOP_ERROR)) from e

    @staticmethod
    def _flush(decoder: SseDecoder, assembler: TurnAssembler) -> list[SseMessage]:
        try:
            return decoder.flush()
        except ProtocolError as e:
            e.partial = assembler.partial(STOP_ERROR)
            raise

    @staticmethod
    def _feed(messages: list[SseMessage], assembler: TurnAssembler) -> bool:
        """Feed decoded messages; True once [DONE] arrives after completion."""
        for message in messages:
            try:
                event = decode_message(message)
            except ProtocolError as e:
                assembler.state = AssemblyState.FAILED
                e.partial = assembler.partial(STOP_ERROR)
                raise
            if event is None:
                continue
            assembler.feed(event)
            if event.type == EventKind.DONE:
                return True
        return False

"""Dispatch loop -- drives one user turn to a terminal state.

The loop:
1. Snapshot the context and build the request
2. Stream the reply through the StreamingEngine (retrying transport errors)
3. Append the assembled assistant turn
4. If it requested tools: execute them in order, append one tool_result
   turn answering every call, and go back to 1
5. Otherwise done

After max_turns tool rounds the next request is sent without tools so
the model has to answer in text.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tern.api.transport import build_request
from tern.cancellation import CancelToken, run_cancellable
from tern.config import Settings
from tern.context.manager import ContextManager
from tern.errors import Cancelled, ErrorKind, TernError, TransportError
from tern.events import EventBus, EventType
from tern.models import Role, ToolResultBlock, ToolUseBlock, Turn
from tern.streaming.engine import STOP_CANCELLED, StreamingEngine
from tern.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

StreamOpener = Callable[[dict[str, Any]], AsyncIterator[bytes]]
TurnCallback = Callable[[Turn], Awaitable[None]]


class DispatchStatus(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class DispatchResult:
    status: DispatchStatus
    turns: list[Turn] = field(default_factory=list)  # turns appended this cycle
    round_trips: int = 0
    error: TernError | None = None

    @property
    def ok(self) -> bool:
        return self.status == DispatchStatus.COMPLETED

    def final_text(self) -> str:
        for turn in reversed(self.turns):
            if turn.role == Role.ASSISTANT:
                return turn.text()
        return ""


def _cancelled_result(call: ToolUseBlock, reason: str) -> ToolResultBlock:
    return ToolResultBlock(call_id=call.call_id, content=f"[{ErrorKind.CANCELLED}] {reason}", is_error=True)


class DispatchLoop:
    """Orchestrates API round-trips, streaming and tool execution."""

    def __init__(
        self,
        context: ContextManager,
        registry: ToolRegistry,
        open_stream: StreamOpener,
        settings: Settings,
        events: EventBus | None = None,
        on_turn: TurnCallback | None = None,
        engine: StreamingEngine | None = None,
    ) -> None:
        self._context = context
        self._registry = registry
        self._open_stream = open_stream
        self._settings = settings
        self._events = events or EventBus()
        self._on_turn = on_turn
        self._own_engine = engine is None
        self._engine = engine or self._make_engine(settings)

    @staticmethod
    def _make_engine(settings: Settings) -> StreamingEngine:
        return StreamingEngine(
            heartbeat_interval=settings.heartbeat_interval,
            read_timeout=settings.stream_read_timeout,
        )

    def update_settings(self, settings: Settings) -> None:
        self._settings = settings
        if self._own_engine:
            self._engine = self._make_engine(settings)

    async def run(self, tool_ctx: ToolContext, cancel: CancelToken | None = None) -> DispatchResult:
        """Run until the assistant stops without requesting tools.

        Expects the user turn to be in the context already.
        """
        cancel = cancel or tool_ctx.cancel or CancelToken()
        result = DispatchResult(status=DispatchStatus.COMPLETED)
        tool_rounds = 0

        while True:
            offer_tools = tool_rounds < self._settings.max_turns
            if not offer_tools:
                logger.warning("Tool loop reached max_turns=%d, requesting a text answer", self._settings.max_turns)
            payload = build_request(
                self._context.snapshot(),
                self._settings,
                tools=self._registry.tool_definitions() if offer_tools else None,
            )

            try:
                assembled = await self._stream_with_retry(payload, cancel, result)
            except Cancelled as e:
                partial = e.partial or Turn(role=Role.ASSISTANT, stop_reason=STOP_CANCELLED)
                return await self._finish_cancelled(result, partial, e)
            except TernError as e:
                logger.warning("Round-trip failed: %s", e.describe())
                result.status = DispatchStatus.FAILED
                result.error = e
                return result

            try:
                sealed = await self._seal(assembled, result)
            except TernError as e:
                result.status = DispatchStatus.FAILED
                result.error = e
                return result

            calls = sealed.tool_uses()
            if not calls:
                return result

            results, stopped = await self._execute_calls(calls, tool_ctx, cancel)
            try:
                await self._seal(Turn(role=Role.TOOL_RESULT, content=results), result)
            except TernError as e:
                result.status = DispatchStatus.FAILED
                result.error = e
                return result

            if stopped or cancel.cancelled:
                result.status = DispatchStatus.CANCELLED
                result.error = Cancelled("Cancelled during tool execution")
                return result
            tool_rounds += 1

    async def _finish_cancelled(self, result: DispatchResult, partial: Turn, error: Cancelled) -> DispatchResult:
        if partial.stop_reason != STOP_CANCELLED:
            partial = partial.model_copy(update={"stop_reason": STOP_CANCELLED})
        result.status = DispatchStatus.CANCELLED
        result.error = error
        try:
            await self._seal(partial, result)
        except TernError as e:
            logger.warning("Could not keep cancelled partial turn: %s", e.describe())
        return result

    async def _stream_with_retry(
        self,
        payload: dict[str, Any],
        cancel: CancelToken,
        result: DispatchResult,
    ) -> Turn:
        max_attempts = self._settings.max_attempts
        attempt = 1
        while True:
            result.round_trips += 1
            try:
                return await self._engine.consume(
                    self._open_stream(payload),
                    on_text=self._on_text,
                    cancel=cancel,
                    on_heartbeat=self._on_heartbeat,
                )
            except Cancelled:
                raise
            except TernError as e:
                if not e.retryable or attempt >= max_attempts:
                    raise
                delay = self._backoff(attempt, e)
                attempt += 1
                logger.warning(
                    "Retrying (attempt %d of %d) in %.1fs: %s", attempt, max_attempts, delay, e.describe()
                )
                self._events.emit(
                    EventType.RETRYING,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=e.describe(),
                )
                await run_cancellable(asyncio.sleep(delay), cancel)

    def _backoff(self, attempt: int, error: TernError) -> float:
        settings = self._settings
        delay = settings.retry_backoff_base * (2 ** (attempt - 1))
        if isinstance(error, TransportError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return min(delay, settings.retry_backoff_max)

    async def _execute_calls(
        self,
        calls: list[ToolUseBlock],
        tool_ctx: ToolContext,
        cancel: CancelToken,
    ) -> tuple[list[ToolResultBlock], bool]:
        """Run calls in source order; returns (result blocks, stopped early)."""
        results: list[ToolResultBlock] = []
        stopped = False
        for call in calls:
            if stopped or cancel.cancelled:
                stopped = True
                results.append(_cancelled_result(call, "Not run: the turn was cancelled"))
                continue
            self._events.emit(EventType.TOOL_STARTED, name=call.tool_name, call_id=call.call_id, input=call.input)
            outcome = await self._registry.execute(call.tool_name, call.input, tool_ctx)
            self._events.emit(
                EventType.TOOL_FINISHED,
                name=call.tool_name,
                call_id=call.call_id,
                success=outcome.success,
                error_kind=outcome.error_kind,
                error=outcome.error,
                elapsed_ms=outcome.elapsed_ms,
            )
            results.append(outcome.to_block(call.call_id))
            if outcome.fatal:
                stopped = True
        return results, stopped

    async def _seal(self, turn: Turn, result: DispatchResult) -> Turn:
        sealed = self._context.append(turn)
        result.turns.append(sealed)
        if self._on_turn is not None:
            await self._on_turn(sealed)
        self._events.emit(EventType.TURN_SEALED, role=sealed.role, turn_id=sealed.id, stop_reason=sealed.stop_reason)
        return sealed

    def _on_text(self, text: str) -> None:
        self._events.emit(EventType.TEXT_DELTA, text=text)

    def _on_heartbeat(self, idle: float) -> None:
        self._events.emit(EventType.HEARTBEAT, idle=idle)

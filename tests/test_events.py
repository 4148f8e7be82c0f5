"""Tests for the UI event bus and the cancellation token.

- TestEventBus: registration, wildcard delivery, ordering, handler isolation
- TestCancelToken: idempotence, callbacks, run_cancellable
"""

from __future__ import annotations

import asyncio

import pytest

from tern.cancellation import CancelToken, run_cancellable
from tern.errors import Cancelled
from tern.events import ALL, EventBus, EventType, UiEvent


class TestEventBus:
    def test_emit_reaches_typed_and_wildcard_handlers(self):
        bus = EventBus()
        typed: list[UiEvent] = []
        everything: list[UiEvent] = []
        bus.on(EventType.TEXT_DELTA, typed.append)
        bus.on(ALL, everything.append)

        bus.emit(EventType.TEXT_DELTA, text="hi")
        bus.emit(EventType.HEARTBEAT, idle=15.0)

        assert [e.data for e in typed] == [{"text": "hi"}]
        assert [e.type for e in everything] == [EventType.TEXT_DELTA, EventType.HEARTBEAT]

    def test_handlers_run_in_registration_order(self):
        bus = EventBus()
        calls: list[str] = []
        bus.on(EventType.RETRYING, lambda e: calls.append("first"))
        bus.on(EventType.RETRYING, lambda e: calls.append("second"))
        bus.emit(EventType.RETRYING, attempt=1)
        assert calls == ["first", "second"]

    def test_failing_handler_is_isolated(self, caplog):
        bus = EventBus()
        received: list[UiEvent] = []

        def broken(event: UiEvent) -> None:
            raise RuntimeError("boom")

        bus.on(EventType.TEXT_DELTA, broken)
        bus.on(EventType.TEXT_DELTA, received.append)

        event = bus.emit(EventType.TEXT_DELTA, text="x")

        assert received == [event]
        assert "failed for event text_delta" in caplog.text

    def test_emit_without_handlers(self):
        event = EventBus().emit(EventType.COMPRESSED, retained=3)
        assert event.type == EventType.COMPRESSED
        assert event.timestamp.tzinfo is not None


class TestCancelToken:
    def test_cancel_is_idempotent(self):
        token = CancelToken()
        fired: list[int] = []
        token.on_cancel(lambda: fired.append(1))
        token.cancel()
        token.cancel()
        assert token.cancelled
        assert fired == [1]

    def test_late_callback_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        fired: list[int] = []
        token.on_cancel(lambda: fired.append(1))
        assert fired == [1]

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(Cancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_run_cancellable_returns_result(self):
        async def work() -> int:
            await asyncio.sleep(0)
            return 42

        assert await run_cancellable(work(), CancelToken()) == 42
        assert await run_cancellable(work(), None) == 42

    @pytest.mark.asyncio
    async def test_run_cancellable_aborts_pending_work(self):
        token = CancelToken()
        finished = False

        async def slow() -> None:
            nonlocal finished
            await asyncio.sleep(60)
            finished = True

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(Cancelled):
            await run_cancellable(slow(), token)
        assert not finished

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self):
        token = CancelToken()
        token.cancel()

        async def never() -> None:
            raise AssertionError("should not start")

        coro = never()
        with pytest.raises(Cancelled):
            await run_cancellable(coro, token)
        coro.close()

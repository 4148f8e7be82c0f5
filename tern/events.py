"""In-process UI event channel.

The core pushes UiEvents (text deltas, tool progress, retries, context
warnings) to whatever renders the session. Delivery is synchronous and
ordered so text reaches the terminal in the order it was streamed.
Handler errors are isolated: one broken handler never breaks the stream
or blocks other handlers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TEXT_DELTA = "text_delta"
    HEARTBEAT = "heartbeat"
    TOOL_STARTED = "tool_started"
    TOOL_FINISHED = "tool_finished"
    RETRYING = "retrying"
    CONTEXT_WARNING = "context_warning"
    COMPRESSED = "compressed"
    TURN_SEALED = "turn_sealed"


@dataclass
class UiEvent:
    """A typed event flowing to the UI collaborator."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


# Handler type: plain function taking an event
EventHandler = Callable[[UiEvent], None]

# Wildcard key for handlers that receive every event
ALL = "*"


class EventBus:
    """Synchronous fan-out of UiEvents with error isolation."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Register a handler for an event type (or ALL). Can register multiple."""
        self._handlers[str(event_type)].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, getattr(handler, "__qualname__", handler))

    def emit(self, event_type: EventType, **data: Any) -> UiEvent:
        event = UiEvent(type=event_type, data=data)
        for handler in [*self._handlers.get(str(event_type), []), *self._handlers.get(ALL, [])]:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s failed for event %s", getattr(handler, "__qualname__", handler), event_type)
        return event

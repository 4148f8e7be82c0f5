"""Streaming module -- SSE framing and assistant turn assembly.

Public API:
    StreamingEngine  - async byte stream -> assembled Turn
    TurnAssembler    - event-level state machine
    SseDecoder       - incremental SSE framing
"""

from tern.streaming.engine import (
    AssemblyState,
    EventKind,
    StreamEvent,
    StreamingEngine,
    TurnAssembler,
    decode_message,
    parse_stream_event,
)
from tern.streaming.sse import SseDecoder, SseMessage

__all__ = [
    "AssemblyState",
    "EventKind",
    "SseDecoder",
    "SseMessage",
    "StreamEvent",
    "StreamingEngine",
    "TurnAssembler",
    "decode_message",
    "parse_stream_event",
]

"""Incremental Server-Sent-Events framing decoder.

Bytes go in as they arrive from the transport; complete SSE messages
come out. Handles chunk boundaries anywhere (mid-line, mid UTF-8
sequence, between CR and LF), comment lines, and the id/retry fields.
"""

from __future__ import annotations

import codecs
import re
from dataclasses import dataclass

from tern.errors import ProtocolError

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass
class SseMessage:
    """One dispatched SSE event."""

    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class SseDecoder:
    """Feed bytes, collect SseMessages.

    Invalid UTF-8 raises ProtocolError; everything else about malformed
    lines follows the SSE rules (unknown fields ignored).
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self._last_id: str | None = None
        self._retry: int | None = None

    def feed(self, chunk: bytes) -> list[SseMessage]:
        try:
            self._buffer += self._decoder.decode(chunk)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Stream is not valid UTF-8: {e}") from e
        return self._drain()

    def flush(self) -> list[SseMessage]:
        """Handle end of stream; a trailing event without a blank line is dropped."""
        try:
            self._buffer += self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Stream ended inside a UTF-8 sequence: {e}") from e
        messages = self._drain(final=True)
        if self._buffer:
            self._process_line(self._buffer)
            self._buffer = ""
        self._event = None
        self._data = []
        return messages

    def _drain(self, final: bool = False) -> list[SseMessage]:
        messages: list[SseMessage] = []
        pos = 0
        while True:
            match = _LINE_END.search(self._buffer, pos)
            if match is None:
                break
            # A lone CR at the end may be the first half of CRLF
            if match.group() == "\r" and match.end() == len(self._buffer) and not final:
                break
            message = self._process_line(self._buffer[pos : match.start()])
            if message is not None:
                messages.append(message)
            pos = match.end()
        self._buffer = self._buffer[pos:]
        return messages

    def _process_line(self, line: str) -> SseMessage | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._last_id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> SseMessage | None:
        if not self._data:
            self._event = None
            return None
        message = SseMessage(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._last_id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        return message

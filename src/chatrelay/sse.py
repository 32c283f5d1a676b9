"""Server-Sent Events: an incremental parser and the matching encoder."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator
from typing import Any

from .decoder import ByteStreamDecoder
from .models import SSEEvent

_LINE_END = re.compile(r"\r\n|\r|\n")
_BOM = "\ufeff"


class SSEEventParser:
    """Push-fed parser for the ``text/event-stream`` grammar.

    Text may be split anywhere, including between the ``\\r`` and ``\\n`` of a
    line terminator. ``feed`` returns the events completed by that chunk, in
    order. A ``data: [DONE]`` payload is an ordinary event here; deciding to
    stop on it is the consumer's business.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._data: list[str] = []
        self._event: str | None = None
        self._started = False
        self.last_event_id: str | None = None
        self.retry_ms: int | None = None

    def feed(self, text: str) -> list[SSEEvent]:
        if not self._started and text:
            self._started = True
            if text.startswith(_BOM):
                text = text[1:]

        buf = self._buffer + text
        events: list[SSEEvent] = []
        pos = 0
        while True:
            match = _LINE_END.search(buf, pos)
            if match is None:
                break
            # A lone trailing \r may be the first half of \r\n
            if match.group() == "\r" and match.end() == len(buf):
                break
            event = self._process_line(buf[pos : match.start()])
            if event is not None:
                events.append(event)
            pos = match.end()

        self._buffer = buf[pos:]
        return events

    def flush(self) -> list[SSEEvent]:
        """Treat a held trailing ``\\r`` as a line end at end of input."""
        if not self._buffer.endswith("\r"):
            return []
        line, self._buffer = self._buffer[:-1], ""
        event = self._process_line(line)
        return [event] if event is not None else []

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isascii() and value.isdigit():
                self.retry_ms = int(value)
                return SSEEvent(type="reconnect-interval", retry_ms=self.retry_ms)
        return None

    def _dispatch(self) -> SSEEvent | None:
        data, event = self._data, self._event
        self._data, self._event = [], None
        if not data:
            return None
        return SSEEvent(
            type="event",
            event=event,
            data="\n".join(data),
            id=self.last_event_id,
        )


async def iter_sse(chunks: AsyncIterator[bytes]) -> AsyncIterator[SSEEvent]:
    """Yield events parsed from an async iterator of raw byte chunks."""
    decoder = ByteStreamDecoder()
    parser = SSEEventParser()

    async for chunk in chunks:
        for event in parser.feed(decoder.decode(chunk)):
            yield event

    for event in parser.feed(decoder.flush()):
        yield event
    for event in parser.flush():
        yield event


def encode_sse(payload: Any, event: str | None = None, id: str | None = None) -> str:
    """Encode one SSE frame. Non-string payloads are sent as JSON."""
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)

    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    if id is not None:
        lines.append(f"id: {id}")
    lines.extend(f"data: {line}" for line in payload.split("\n"))
    return "\n".join(lines) + "\n\n"

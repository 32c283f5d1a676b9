"""Newline-delimited JSON framing over arbitrarily chunked input."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from .decoder import ByteStreamDecoder

logger = logging.getLogger(__name__)


class NDJSONFrameParser:
    """Split decoded text into JSON frames, one per line.

    Complete lines are parsed as soon as their newline arrives; an unterminated
    trailing fragment is carried into the next ``feed``. Blank lines and lines
    that fail to parse are dropped: the backend has been seen to emit both at
    chunk boundaries.
    """

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> list[Any]:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [frame for frame in map(_parse_line, lines) if frame is not None]

    def flush(self) -> list[Any]:
        """Parse the trailing fragment left when input ended without a newline."""
        line, self._pending = self._pending, ""
        frame = _parse_line(line)
        return [] if frame is None else [frame]


def _parse_line(line: str) -> Any | None:
    line = line.strip()
    if not line:
        return None
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed NDJSON line: %.80s", line)
        return None


async def iter_ndjson(chunks: AsyncIterator[bytes]) -> AsyncIterator[Any]:
    """Yield parsed frames from an async iterator of raw byte chunks."""
    decoder = ByteStreamDecoder()
    parser = NDJSONFrameParser()

    async for chunk in chunks:
        for frame in parser.feed(decoder.decode(chunk)):
            yield frame

    for frame in parser.feed(decoder.flush()):
        yield frame
    for frame in parser.flush():
        yield frame

"""Incremental UTF-8 decoding of raw byte streams."""

from __future__ import annotations

import codecs


class ByteStreamDecoder:
    """Decode successive byte buffers into text.

    A multi-byte character split across two buffers is held back until its
    continuation bytes arrive. Malformed sequences decode to U+FFFD instead
    of raising. Use one instance per logical stream.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def decode(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk, final=False)

    def flush(self) -> str:
        """Emit whatever is still buffered; call once at end of stream."""
        return self._decoder.decode(b"", final=True)

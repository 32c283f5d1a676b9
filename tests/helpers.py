from __future__ import annotations

import json

import httpx

from chatrelay.backend import OllamaClient

BASE_URL = "http://ollama.test"


def ndjson(frames: list[dict]) -> bytes:
    return b"".join(json.dumps(f).encode("utf-8") + b"\n" for f in frames)


async def chunked(data: bytes, size: int):
    """Yield ``data`` in pieces of ``size`` bytes, ignoring line boundaries."""
    for i in range(0, len(data), size):
        yield data[i : i + size]


def make_client(handler) -> OllamaClient:
    return OllamaClient(BASE_URL, transport=httpx.MockTransport(handler))


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)

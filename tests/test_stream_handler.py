import json

import httpx
import pytest

from chatrelay.errors import BackendError
from chatrelay.stream_handler import AIStreamHandler, create_ai_stream

from .helpers import chunked


def completion_stream(*tokens: str, extra: str = "") -> bytes:
    lines = [": openai-style stream\n\n"]
    for token in tokens:
        payload = {"choices": [{"index": 0, "delta": {"content": token}}]}
        lines.append(f"data: {json.dumps(payload)}\n\n")
    lines.append("data: [DONE]\n\n")
    lines.append(extra)
    return "".join(lines).encode("utf-8")


def http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="http://llm.test", transport=httpx.MockTransport(handler))


@pytest.mark.parametrize("size", [1, 9, 4096])
async def test_tokens_accumulate_until_done(size):
    body = completion_stream("Hel", "lo", " 世界", extra='data: {"choices": [{"delta": {"content": "late"}}]}\n\n')
    events = []

    async with http_client(lambda r: httpx.Response(200, content=chunked(body, size))) as http:
        response = await http.send(http.build_request("POST", "/v1/chat/completions"), stream=True)
        handler = AIStreamHandler(
            on_token=lambda t: events.append(("token", t)),
            on_start=lambda: events.append(("start", None)),
            on_completion=lambda c: events.append(("done", c)),
        )
        completion = await handler.handle_stream(response)

    assert completion == "Hello 世界"
    assert events == [
        ("start", None),
        ("token", "Hel"),
        ("token", "lo"),
        ("token", " 世界"),
        ("done", "Hello 世界"),
    ]


async def test_malformed_payloads_are_skipped():
    body = (
        b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
        b"data: not json\n\n"
        b'data: {"choices": []}\n\n'
        b'data: {"choices": [{"delta": {"content": "ok"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    async with http_client(lambda r: httpx.Response(200, content=body)) as http:
        response = await http.send(http.build_request("POST", "/x"), stream=True)
        assert await AIStreamHandler().handle_stream(response) == "ok"


async def test_error_status_raises():
    async with http_client(lambda r: httpx.Response(429)) as http:
        response = await http.send(http.build_request("POST", "/x"), stream=True)
        with pytest.raises(BackendError, match="429"):
            await AIStreamHandler().handle_stream(response)


async def test_read_failure_reaches_on_error():
    async def broken():
        yield completion_stream("a")[:40]
        raise httpx.ReadError("reset")

    errors = []
    async with http_client(lambda r: httpx.Response(200, content=broken())) as http:
        response = await http.send(http.build_request("POST", "/x"), stream=True)
        with pytest.raises(httpx.ReadError):
            await AIStreamHandler(on_error=errors.append).handle_stream(response)
    assert len(errors) == 1


async def test_create_ai_stream_posts_chat_body():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, content=completion_stream("4", "2"))

    tokens = []
    async with http_client(handler) as http:
        result = await create_ai_stream(
            http,
            "/v1/chat/completions",
            [{"role": "user", "content": "answer?"}],
            model="llama3",
            on_token=tokens.append,
        )

    assert result == "42"
    assert tokens == ["4", "2"]
    assert sent[0]["stream"] is True
    assert sent[0]["model"] == "llama3"
    assert sent[0]["max_tokens"] == 4096

import json

import httpx
import pytest

from chatrelay.errors import BackendError, BackendUnavailableError
from chatrelay.backend import frame_text

from .helpers import chunked, make_client, ndjson, refuse

CHAT_FRAMES = [
    {"model": "llama3", "created_at": "t0", "message": {"role": "assistant", "content": "Hel"}, "done": False},
    {"model": "llama3", "created_at": "t1", "message": {"role": "assistant", "content": "lo"}, "done": False},
    {"model": "llama3", "created_at": "t2", "message": {"role": "assistant", "content": ""}, "done": True},
]


async def test_check_health_true_and_idempotent():
    client = make_client(lambda request: httpx.Response(200, json={"models": []}))
    assert await client.check_health() is True
    assert await client.check_health() is True
    await client.aclose()


async def test_check_health_false_on_error_status():
    client = make_client(lambda request: httpx.Response(500))
    assert await client.check_health() is False
    await client.aclose()


async def test_check_health_false_when_refused():
    client = make_client(refuse)
    assert await client.check_health() is False
    assert await client.check_health() is False
    await client.aclose()


async def test_list_models():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [
            {"name": "llama3:latest", "size": 4661224676, "digest": "abc123", "modified_at": "2024-05-01T00:00:00Z"},
        ]})

    async with make_client(handler) as client:
        models = await client.list_models()

    assert [m.name for m in models] == ["llama3:latest"]
    assert models[0].size == 4661224676


@pytest.mark.parametrize("handler", [refuse, lambda request: httpx.Response(500, text="boom")])
async def test_list_models_is_empty_on_failure(handler):
    async with make_client(handler) as client:
        assert await client.list_models() == []


@pytest.mark.parametrize("size", [1, 7, 4096])
async def test_pull_model_reports_progress_in_order(size):
    frames = [
        {"status": "pulling manifest"},
        {"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 50},
        {"status": "downloading", "digest": "sha256:1", "total": 100, "completed": 100},
        {"status": "success"},
    ]
    seen = []

    def handler(request):
        assert request.url.path == "/api/pull"
        assert json.loads(request.content) == {"name": "x"}
        return httpx.Response(200, content=chunked(ndjson(frames), size))

    async with make_client(handler) as client:
        await client.pull_model("x", seen.append)

    assert seen == [50.0, 100.0]


async def test_pull_model_rejected():
    async with make_client(lambda request: httpx.Response(404, text="not found")) as client:
        with pytest.raises(BackendError) as exc_info:
            await client.pull_model("nope")
    assert exc_info.value.backend_status == 404


async def test_pull_model_error_frame():
    body = ndjson([{"status": "pulling manifest"}, {"error": "manifest unknown"}])
    async with make_client(lambda request: httpx.Response(200, content=body)) as client:
        with pytest.raises(BackendError, match="manifest unknown"):
            await client.pull_model("x")


async def test_delete_model():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200)

    async with make_client(handler) as client:
        await client.delete_model("llama3")

    assert calls == [("DELETE", "/api/delete", {"name": "llama3"})]


async def test_delete_model_rejected():
    async with make_client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(BackendError):
            await client.delete_model("missing")


async def test_streamed_and_buffered_chat_agree():
    requests = []

    def handler(request):
        body = json.loads(request.content)
        requests.append(body)
        if body["stream"]:
            return httpx.Response(200, content=chunked(ndjson(CHAT_FRAMES), 5))
        return httpx.Response(200, json={
            "model": "llama3",
            "message": {"role": "assistant", "content": "Hello"},
            "done": True,
        })

    messages = [{"role": "user", "content": "hi"}]
    tokens = []
    async with make_client(handler) as client:
        streamed = await client.chat("llama3", messages, on_stream=tokens.append)
        buffered = await client.chat("llama3", messages)

    assert streamed == buffered == "Hello"
    assert tokens == ["Hel", "lo"]
    assert [r["stream"] for r in requests] == [True, False]
    assert requests[0]["messages"] == messages


async def test_generate_streams_response_fields():
    frames = [
        {"model": "llama3", "response": "4", "done": False},
        {"model": "llama3", "response": "2", "done": False},
        {"model": "llama3", "response": "", "done": True},
    ]

    def handler(request):
        assert request.url.path == "/api/generate"
        body = json.loads(request.content)
        assert body["prompt"] == "answer?"
        if body["stream"]:
            return httpx.Response(200, content=ndjson(frames))
        return httpx.Response(200, json={"response": "42", "done": True})

    tokens = []
    async with make_client(handler) as client:
        assert await client.generate("llama3", "answer?", on_stream=tokens.append) == "42"
        assert await client.generate("llama3", "answer?") == "42"
    assert tokens == ["4", "2"]


async def test_options_are_forwarded():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"message": {"content": "ok"}, "done": True})

    async with make_client(handler) as client:
        await client.chat_completion("llama3", [], {"temperature": 0.1})

    assert bodies[0]["options"] == {"temperature": 0.1}


async def test_chat_refused_raises_unavailable():
    async with make_client(refuse) as client:
        with pytest.raises(BackendUnavailableError):
            await client.chat("llama3", [{"role": "user", "content": "hi"}])
        with pytest.raises(BackendUnavailableError):
            await client.chat("llama3", [{"role": "user", "content": "hi"}], on_stream=print)


async def test_chat_error_status_carries_status():
    async with make_client(lambda request: httpx.Response(404, text="model not found")) as client:
        with pytest.raises(BackendError) as exc_info:
            await client.chat("ghost", [], on_stream=print)
    assert exc_info.value.backend_status == 404


async def test_mid_stream_read_failure_propagates():
    async def broken():
        yield ndjson(CHAT_FRAMES[:1])
        raise httpx.ReadError("connection reset")

    tokens = []
    async with make_client(lambda request: httpx.Response(200, content=broken())) as client:
        with pytest.raises(BackendUnavailableError, match="Lost connection"):
            await client.chat("llama3", [], on_stream=tokens.append)
    assert tokens == ["Hel"]


def test_frame_text_reads_either_shape():
    assert frame_text({"response": "a"}) == "a"
    assert frame_text({"message": {"content": "b"}}) == "b"
    assert frame_text({"done": True}) == ""

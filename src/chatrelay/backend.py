"""Async HTTP client for the local Ollama inference server."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing, asynccontextmanager
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from .config import HEALTH_TIMEOUT, OLLAMA_URL, REQUEST_TIMEOUT
from .errors import BackendError, BackendProtocolError, BackendUnavailableError
from .models import ChatMessage, OllamaModel, PullProgress
from .ndjson import iter_ndjson

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
TokenCallback = Callable[[str], None]


def frame_text(frame: dict[str, Any]) -> str:
    """Text fragment carried by a backend frame.

    ``/api/generate`` puts it in ``response``; ``/api/chat`` nests it under
    ``message.content``.
    """
    text = frame.get("response")
    if text is None:
        message = frame.get("message")
        if isinstance(message, dict):
            text = message.get("content")
    return text if isinstance(text, str) else ""


def _serialize_messages(messages: list[ChatMessage] | list[dict]) -> list[dict]:
    return [m.model_dump() if isinstance(m, ChatMessage) else dict(m) for m in messages]


class OllamaClient:
    """Client for health, model management and chat against one base URL.

    Construct it explicitly and close it with ``aclose()`` (or use it as an
    async context manager). Streaming calls always release the underlying
    response, whether the stream finishes, fails or is abandoned.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=HEALTH_TIMEOUT),
            transport=transport,
        )

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- plumbing --------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise BackendUnavailableError(
                f"Cannot connect to inference server at {self.base_url}"
            ) from e
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"Inference server timed out: {e}") from e

        if response.is_error:
            raise BackendError(
                f"{method} {path} failed with status {response.status_code}: "
                f"{response.text[:200]}",
                response.status_code,
            )
        return response

    @asynccontextmanager
    async def _stream(self, method: str, path: str, payload: dict[str, Any]):
        try:
            async with self._http.stream(method, path, json=payload) as response:
                if response.is_error:
                    body = await response.aread()
                    raise BackendError(
                        f"{method} {path} failed with status {response.status_code}: "
                        f"{body[:200].decode('utf-8', 'replace')}",
                        response.status_code,
                    )
                yield response
        except httpx.ConnectError as e:
            raise BackendUnavailableError(
                f"Cannot connect to inference server at {self.base_url}"
            ) from e
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"Lost connection to inference server: {e}") from e

    async def _frames(self, path: str, payload: dict[str, Any]) -> AsyncGenerator[dict[str, Any], None]:
        async with self._stream("POST", path, payload) as response:
            async for frame in iter_ndjson(response.aiter_bytes()):
                if isinstance(frame, dict):
                    yield frame
                else:
                    logger.debug("Ignoring non-object frame from %s: %r", path, frame)

    # -- model management ------------------------------------------------

    async def check_health(self) -> bool:
        """True iff the model listing endpoint answers with a success status."""
        try:
            response = await self._http.get("/api/tags", timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("Inference server health check failed: %s", e)
            return False
        return response.is_success

    async def list_models(self) -> list[OllamaModel]:
        """Installed models, or an empty list when the server is unreachable."""
        try:
            response = await self._request("GET", "/api/tags")
            data = response.json()
            return [OllamaModel.model_validate(m) for m in data.get("models") or []]
        except (BackendError, BackendUnavailableError, ValueError, PydanticValidationError) as e:
            logger.warning("Failed to list models: %s", e)
            return []

    async def pull_model(self, name: str, on_progress: ProgressCallback | None = None) -> None:
        """Download a model, reporting percentage progress per progress frame."""
        logger.info("Pulling model %s", name)
        frames = self._frames("/api/pull", {"name": name})
        async with aclosing(frames):
            async for frame in frames:
                if "error" in frame:
                    raise BackendError(f"Pull of {name} failed: {frame['error']}", 500)
                try:
                    progress = PullProgress.model_validate(frame)
                except PydanticValidationError:
                    logger.debug("Skipping unexpected pull frame: %r", frame)
                    continue
                percent = progress.percent()
                if percent is not None and on_progress:
                    on_progress(percent)

    async def delete_model(self, name: str) -> None:
        await self._request("DELETE", "/api/delete", json={"name": name})
        logger.info("Deleted model %s", name)

    # -- chat / generate -------------------------------------------------

    def stream_chat(
        self,
        model: str,
        messages: list[ChatMessage] | list[dict],
        options: dict[str, Any] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Raw backend frames of a streamed chat, in arrival order."""
        payload = {"model": model, "messages": _serialize_messages(messages), "stream": True}
        if options:
            payload["options"] = options
        return self._frames("/api/chat", payload)

    def stream_generate(
        self,
        model: str,
        prompt: str,
        options: dict[str, Any] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        payload = {"model": model, "prompt": prompt, "stream": True}
        if options:
            payload["options"] = options
        return self._frames("/api/generate", payload)

    async def chat_completion(
        self,
        model: str,
        messages: list[ChatMessage] | list[dict],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Non-streamed chat; returns the backend's JSON document untouched."""
        payload = {"model": model, "messages": _serialize_messages(messages), "stream": False}
        if options:
            payload["options"] = options
        return await self._complete("/api/chat", payload)

    async def _complete(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", path, json=payload)
        try:
            data = response.json()
        except ValueError as e:
            raise BackendProtocolError(f"Non-JSON reply from {path}") from e
        if not isinstance(data, dict):
            raise BackendProtocolError(f"Unexpected reply from {path}: {data!r:.80}")
        return data

    async def chat(
        self,
        model: str,
        messages: list[ChatMessage] | list[dict],
        on_stream: TokenCallback | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        """Chat and return the full reply text.

        With ``on_stream`` the reply is streamed and the callback receives
        each non-empty fragment; the returned text is the same either way.
        """
        if on_stream is None:
            return frame_text(await self.chat_completion(model, messages, options))
        return await self._collect(self.stream_chat(model, messages, options), on_stream)

    async def generate(
        self,
        model: str,
        prompt: str,
        on_stream: TokenCallback | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        if on_stream is None:
            payload = {"model": model, "prompt": prompt, "stream": False}
            if options:
                payload["options"] = options
            return frame_text(await self._complete("/api/generate", payload))
        return await self._collect(self.stream_generate(model, prompt, options), on_stream)

    @staticmethod
    async def _collect(frames: AsyncGenerator[dict[str, Any], None], on_stream: TokenCallback) -> str:
        parts: list[str] = []
        async with aclosing(frames):
            async for frame in frames:
                text = frame_text(frame)
                if text:
                    parts.append(text)
                    on_stream(text)
        return "".join(parts)

"""Consumer for OpenAI-style streamed chat completions delivered as SSE."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import aclosing
from typing import Any

import httpx

from .config import DONE_SENTINEL
from .errors import BackendError
from .sse import iter_sse

logger = logging.getLogger(__name__)


def _delta_content(data: str) -> str:
    """Token in ``choices[0].delta.content``, or "" when there is none."""
    try:
        parsed = json.loads(data)
        token = parsed["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        logger.warning("Failed to parse stream payload: %.80s", data)
        return ""
    return token if isinstance(token, str) else ""


class AIStreamHandler:
    """Accumulate a completion from a streamed response, token by token."""

    def __init__(
        self,
        on_token: Callable[[str], None] | None = None,
        on_start: Callable[[], None] | None = None,
        on_completion: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.on_token = on_token
        self.on_start = on_start
        self.on_completion = on_completion
        self.on_error = on_error
        self.completion = ""

    async def handle_stream(self, response: httpx.Response) -> str:
        """Read ``response`` to its ``[DONE]`` sentinel and return the completion.

        The response is always closed on the way out.
        """
        if response.is_error:
            await response.aclose()
            raise BackendError(f"HTTP error! status: {response.status_code}", response.status_code)

        if self.on_start:
            self.on_start()

        try:
            async with aclosing(iter_sse(response.aiter_bytes())) as events:
                async for event in events:
                    if event.type != "event":
                        continue
                    if event.data == DONE_SENTINEL:
                        if self.on_completion:
                            self.on_completion(self.completion)
                        break

                    token = _delta_content(event.data or "")
                    if token:
                        self.completion += token
                        if self.on_token:
                            self.on_token(token)
        except Exception as e:
            if self.on_error:
                self.on_error(e)
            raise
        finally:
            await response.aclose()

        return self.completion


async def create_ai_stream(
    http: httpx.AsyncClient,
    url: str,
    messages: list[dict[str, Any]],
    model: str = "gpt-4",
    temperature: float = 0.7,
    max_tokens: int = 4096,
    **callbacks: Any,
) -> str:
    """POST a streamed chat completion request and consume its answer."""
    request = http.build_request(
        "POST",
        url,
        json={
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        },
    )
    response = await http.send(request, stream=True)
    handler = AIStreamHandler(**callbacks)
    return await handler.handle_stream(response)

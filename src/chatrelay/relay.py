"""Chat relay: validate a chat request, call the backend, relay the answer.

A request moves through Validating, Dispatching, then either Buffered (one
JSON document) or Streaming (SSE frames), and ends Closed. The streaming path
reads the first backend frame before any bytes go out, so a dead backend is
still reported with a proper HTTP status. Once the stream is open, failures
become a final ``data: {"error": ...}`` frame.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from typing import Any

from .backend import OllamaClient
from .config import VALID_ROLES
from .errors import RelayError, StreamTerminatedError, ValidationError
from .models import ChatRequest
from .sse import encode_sse

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


def validate_chat_request(body: Any) -> ChatRequest:
    """Check an inbound chat body and return it as a ChatRequest."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    model = body.get("model")
    messages = body.get("messages")
    if not model or not isinstance(model, str) or not isinstance(messages, list):
        raise ValidationError("Missing required parameters: model and messages")

    for message in messages:
        if (
            not isinstance(message, dict)
            or not message.get("role")
            or not isinstance(message.get("content"), str)
        ):
            raise ValidationError("Malformed message: every message needs role and content")
        if not isinstance(message["role"], str) or message["role"] not in VALID_ROLES:
            raise ValidationError(
                "Invalid message role: must be one of user, assistant or system"
            )

    options = body.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError("options must be a JSON object")

    stream = body.get("stream", False)
    if not isinstance(stream, bool):
        raise ValidationError("stream must be true or false")

    return ChatRequest(
        model=model,
        messages=messages,
        stream=stream,
        options=options,
    )


class ChatRelay:
    """Relays validated chat requests to one backend client."""

    def __init__(self, client: OllamaClient):
        self.client = client

    async def complete(self, request: ChatRequest) -> dict[str, Any]:
        """Buffered path: the backend's reply as a single JSON document."""
        return await self.client.chat_completion(
            request.model, request.messages, request.options
        )

    async def open_stream(
        self,
        request: ChatRequest,
        is_disconnected: DisconnectProbe | None = None,
    ) -> AsyncIterator[str]:
        """Streaming path: prime the backend stream and return SSE frames.

        Errors raised while priming (backend unreachable, bad status) propagate
        to the caller, which can still answer with an HTTP status.
        """
        frames = self.client.stream_chat(request.model, request.messages, request.options)
        try:
            first = await anext(frames)
        except StopAsyncIteration:
            first = None
        except BaseException:
            await frames.aclose()
            raise

        logger.info("Relaying streamed chat for model %s", request.model)
        return self._relay(frames, first, is_disconnected)

    async def _relay(
        self,
        frames: AsyncGenerator[dict[str, Any], None],
        frame: dict[str, Any] | None,
        is_disconnected: DisconnectProbe | None,
    ) -> AsyncIterator[str]:
        relayed = 0
        try:
            while frame is not None:
                yield encode_sse(frame)
                relayed += 1
                if frame.get("done"):
                    break
                if is_disconnected is not None and await is_disconnected():
                    raise StreamTerminatedError("Client disconnected")
                frame = await anext(frames, None)
        except StreamTerminatedError as e:
            logger.info("Stopped relaying after %d frames: %s", relayed, e)
        except asyncio.CancelledError:
            logger.info("Relay cancelled after %d frames", relayed)
            raise
        except Exception as e:
            message = e.message if isinstance(e, RelayError) else str(e)
            logger.error("Relay failed after %d frames: %s", relayed, message)
            yield encode_sse({"error": message})
        finally:
            await frames.aclose()

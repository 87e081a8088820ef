"""
chat_stream.py: Streaming chat completion decoder

Consumes the byte stream of an OpenAI-compatible `stream: true` chat
completion and turns it into (content_delta, role_delta) callbacks plus a
final assembled ChatMessage.

Session lifecycle:
  INIT → STREAMING → CLOSED
  INIT | STREAMING → FAILED   (TransportError, ProtocolError, CancellationError)

on_chunk(content, role) fires once per data frame, in arrival order.
on_close(before_timestamp_ms) fires once after the byte source is exhausted,
never after a failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import httpx

from chat_types import CancelToken, ChatMessage, RequestOptions
from config_loader import redact_headers
from sse_decoder import FrameBuffer, is_done_marker, strip_data_field

logger = logging.getLogger("chatstream.chat_stream")

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"

# Transport policy for privately-owned clients. The decoder itself has no timeouts.
DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=30.0, pool=300.0)

# Session states
INIT = "INIT"
STREAMING = "STREAMING"
CLOSED = "CLOSED"
FAILED = "FAILED"

# Backtick followed by whitespace at the start of a content delta.
_CODE_FENCE_RE = re.compile(r"^`\s*")

OnChunk = Callable[[str, str], None]
OnClose = Callable[[int], None]
T = TypeVar("T")


# === Error Classes ===

class ChatStreamError(Exception):
    """Structured session error with code and optional HTTP status."""

    code = "stream_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }


class TransportError(ChatStreamError):
    """Non-2xx response, or the connection itself failed."""

    code = "transport_error"


class ProtocolError(ChatStreamError):
    """Response had no body, or a frame payload could not be decoded."""

    code = "protocol_error"


class CancellationError(ChatStreamError):
    """The caller's CancelToken fired before the stream was exhausted."""

    code = "cancelled"


# === Payload Parsing ===

def parse_delta(payload: str) -> tuple[str, str]:
    """Parse one frame payload into (content_delta, role_delta).

    Missing or null fields are empty deltas. A leading backtick followed by
    whitespace is collapsed so code fences render attached to their text.
    """
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"malformed payload: {e}") from e

    try:
        delta = chunk["choices"][0]["delta"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProtocolError("malformed payload: missing choices[0].delta") from e
    if not isinstance(delta, dict):
        raise ProtocolError("malformed payload: delta is not an object")

    content = delta.get("content") or ""
    role = delta.get("role") or ""
    return _CODE_FENCE_RE.sub("`", content, count=1), role


# === Session ===

async def _read(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    """Read the next chunk; None once the source is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _unless_cancelled(aw: Awaitable[T], token: Optional[CancelToken]) -> T:
    """Await `aw`, or raise CancellationError as soon as `token` fires.

    The losing side is cancelled. A failure that surfaces after the token
    fired is reported as the cancellation.
    """
    if token is None:
        return await aw

    if token.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise CancellationError(token.reason or "cancelled")

    task = asyncio.ensure_future(aw)

    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if not task.done():
        task.cancel()
        await asyncio.wait({task})
        raise CancellationError(token.reason or "cancelled")

    try:
        return task.result()
    except CancellationError:
        raise
    except Exception as e:
        if token.cancelled:
            raise CancellationError(token.reason or "cancelled") from e
        raise


class StreamSession:
    """State for one decode session: frame buffer, accumulators, callbacks.

    Owned by a single read loop; never shared between sessions.
    """

    def __init__(
        self,
        on_chunk: OnChunk,
        on_close: OnClose,
        before_timestamp: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.on_chunk = on_chunk
        self.on_close = on_close
        self.before_timestamp = (
            before_timestamp if before_timestamp is not None else int(time.time() * 1000)
        )
        self.cancel_token = cancel_token
        self.state = INIT
        self.content = ""
        self.role = ""
        self.frame_count = 0
        self._frames = FrameBuffer()

    async def run(self, source: AsyncIterable[bytes]) -> ChatMessage:
        """Drive the read loop to exhaustion and return the assembled message."""
        if self.state != INIT:
            raise RuntimeError(f"StreamSession already used (state={self.state})")

        self.state = STREAMING
        iterator = source.__aiter__()
        try:
            while True:
                chunk = await self._next_chunk(iterator)
                if chunk is None:
                    break
                self.feed(chunk)
            return self._finish()
        finally:
            if self.state != CLOSED:
                self.state = FAILED

    def feed(self, chunk: bytes) -> None:
        """Process one chunk synchronously: split frames, apply deltas, fire callbacks."""
        for frame in self._frames.feed(chunk):
            payload = strip_data_field(frame)

            # Keep-alive or terminal marker: nothing to apply
            if not payload or is_done_marker(payload):
                continue

            content_delta, role_delta = parse_delta(payload)
            self.content += content_delta
            self.role += role_delta
            self.frame_count += 1
            self.on_chunk(content_delta, role_delta)

    async def _next_chunk(self, iterator: AsyncIterator[bytes]) -> Optional[bytes]:
        return await _unless_cancelled(_read(iterator), self.cancel_token)

    def _finish(self) -> ChatMessage:
        remainder = self._frames.close()
        if remainder.strip():
            logger.debug("Dropping %d chars of unterminated trailing data", len(remainder))

        self.state = CLOSED
        logger.debug("Stream closed after %d frames", self.frame_count)
        self.on_close(self.before_timestamp)
        return ChatMessage(role=self.role, content=self.content)


async def decode_stream(
    source: AsyncIterable[bytes],
    on_chunk: OnChunk,
    on_close: OnClose,
    before_timestamp: Optional[int] = None,
    cancel_token: Optional[CancelToken] = None,
) -> ChatMessage:
    """Decode a chat completion byte stream. See StreamSession."""
    session = StreamSession(on_chunk, on_close, before_timestamp, cancel_token)
    return await session.run(source)


# === Transport Glue ===

def _check_response(response: httpx.Response) -> None:
    """Validate status and body before the read loop starts."""
    if not response.is_success:
        raise TransportError(
            f"Network response was not ok: {response.status_code} - {response.reason_phrase}",
            status_code=response.status_code,
        )

    # 204/205 carry no body by definition
    if response.status_code in (204, 205):
        raise ProtocolError("No body included in POST response object", status_code=response.status_code)


async def _iter_response_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.TransportError as e:
        raise TransportError(f"Stream interrupted: {e}") from e


async def stream_chat_completion(
    request_options: RequestOptions,
    on_chunk: OnChunk,
    on_close: OnClose,
    client: Optional[httpx.AsyncClient] = None,
    url: str = CHAT_COMPLETIONS_URL,
) -> ChatMessage:
    """Issue a streaming chat completion request and decode the response.

    A caller-supplied client is left open; otherwise a private one is
    created and closed when the session ends.
    """
    token = request_options.cancel_token
    if token is not None and token.cancelled:
        raise CancellationError(token.reason or "cancelled")

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    # Record the timestamp before the request starts
    before_timestamp = int(time.time() * 1000)
    logger.debug(
        "Opening stream %s %s headers=%s",
        request_options.method, url, redact_headers(request_options.headers),
    )

    request = client.build_request(
        request_options.method,
        url,
        headers=request_options.headers,
        content=request_options.body,
    )
    try:
        # Connecting and waiting for headers can stall as long as any read
        response = await _unless_cancelled(client.send(request, stream=True), token)
        try:
            _check_response(response)
            session = StreamSession(on_chunk, on_close, before_timestamp, token)
            return await session.run(_iter_response_bytes(response))
        finally:
            await response.aclose()
    except httpx.TransportError as e:
        raise TransportError(f"Connection failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

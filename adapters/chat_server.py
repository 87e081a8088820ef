#!/usr/bin/env python3
"""
chat_server.py: Chat stream HTTP sidecar

FastAPI application that relays a streaming chat completion to its caller
as newline-delimited JSON, decoding the provider's SSE stream with
chat_stream.stream_chat_completion().
Binds to 127.0.0.1:{CHATSTREAM_PORT} (default: 3002).

Endpoints:
  POST /chat/stream  Streaming completion relayed as application/x-ndjson
  GET  /healthz      Liveness probe
  GET  /readyz       Readiness probe

NDJSON lines:
  {"type": "chunk", "content": "...", "role": "..."}       once per frame
  {"type": "done", "message": {...}, "response_time_ms": N} on clean close
  {"type": "error", "code": "...", "message": "...", ...}   on failure
"""

import asyncio
import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from chat_stream import DEFAULT_TIMEOUT, ChatStreamError, stream_chat_completion  # noqa: E402
from chat_types import DEFAULT_BASE_URL, CancelToken, RequestOptions, StreamingParams  # noqa: E402
from request_shaper import build_request_options  # noqa: E402

logger = logging.getLogger("chatstream.chat_server")

# --- Configuration ---

CHATSTREAM_PORT = int(os.environ.get("CHATSTREAM_PORT", "3002"))
MAX_UPSTREAM_CLIENTS = int(os.environ.get("CHATSTREAM_MAX_UPSTREAMS", "32"))

START_TIME = time.monotonic()

REQUIRED_FIELDS = ("model", "api_key", "messages")


# --- Upstream Pool ---


class UpstreamPool:
    """Per-base-URL httpx.AsyncClient pool, created lazily, capped at `max_clients`.

    Once the cap is reached, unknown base URLs get a one-off client that the
    caller owns and must close. Pooled clients live until close_all().

    `transport` is handed to every new client (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_clients: int = MAX_UPSTREAM_CLIENTS,
    ) -> None:
        self._clients: dict[str, httpx.AsyncClient] = {}
        self.transport = transport
        self.max_clients = max_clients

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self.transport,
        )

    def get_or_create(self, base_url: str) -> tuple[httpx.AsyncClient, bool]:
        """Return (client, owned). `owned` is True for an unpooled overflow client."""
        key = base_url.rstrip("/")
        if key in self._clients:
            return self._clients[key], False
        if len(self._clients) >= self.max_clients:
            logger.warning("Upstream pool full (%d), using a one-off client for %s", self.max_clients, key)
            return self._new_client(), True
        self._clients[key] = self._new_client()
        return self._clients[key], False

    async def close_all(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    @property
    def size(self) -> int:
        return len(self._clients)


pool = UpstreamPool()
active_sessions = 0


# --- Relay ---


async def relay_stream(
    request_options: RequestOptions,
    client: httpx.AsyncClient,
    url: str,
    owns_client: bool = False,
) -> AsyncIterator[str]:
    """Run one decode session in a task and yield its events as NDJSON lines.

    If the consumer goes away, the session's CancelToken is fired. An owned
    client is closed once the session ends.
    """
    queue: asyncio.Queue = asyncio.Queue()
    timing: dict[str, int] = {}

    def on_chunk(content: str, role: str) -> None:
        queue.put_nowait({"type": "chunk", "content": content, "role": role})

    def on_close(before_timestamp: int) -> None:
        timing["response_time_ms"] = int(time.time() * 1000) - before_timestamp

    async def produce() -> None:
        global active_sessions
        active_sessions += 1
        try:
            message = await stream_chat_completion(
                request_options, on_chunk, on_close, client=client, url=url,
            )
            queue.put_nowait({
                "type": "done",
                "message": message.to_dict(),
                "response_time_ms": timing.get("response_time_ms", 0),
            })
        except ChatStreamError as e:
            logger.debug("Relay session ended with %s: %s", e.code, e)
            queue.put_nowait({"type": "error", **e.to_dict()})
        except Exception as e:
            logger.exception("Unexpected relay failure")
            queue.put_nowait({
                "type": "error",
                "error": type(e).__name__,
                "code": "internal_error",
                "message": str(e),
                "status_code": None,
            })
        finally:
            active_sessions -= 1
            try:
                if owns_client:
                    await client.aclose()
            finally:
                queue.put_nowait(None)

    task = asyncio.ensure_future(produce())
    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            yield json.dumps(item) + "\n"
    finally:
        if not task.done() and request_options.cancel_token is not None:
            request_options.cancel_token.cancel("client disconnected")


# --- Application ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    print(f"[chatstream-sidecar] Started on 127.0.0.1:{CHATSTREAM_PORT}", flush=True)
    yield
    print("[chatstream-sidecar] Shutting down, closing upstream clients...", flush=True)
    await pool.close_all()
    print("[chatstream-sidecar] Shutdown complete", flush=True)


app = FastAPI(title="Chat Stream Sidecar", docs_url=None, redoc_url=None, lifespan=lifespan)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    """Liveness probe. Process alive, event loop responsive."""
    return {
        "status": "alive",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
    }


@app.get("/readyz")
async def readyz() -> dict[str, Any]:
    return {
        "status": "ready",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
        "active_sessions": active_sessions,
    }


@app.post("/chat/stream")
async def chat_stream(request: Request):
    """Streaming completion.

    1. Parse {model, api_key, messages, params?, base_url?} from body
    2. Shape the upstream request (request_shaper.build_request_options)
    3. Relay decoded deltas as NDJSON until the upstream stream closes
    """
    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse(
            status_code=400,
            content={"error": "INVALID_JSON", "message": "Request body is not a JSON object"},
        )

    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        return JSONResponse(
            status_code=400,
            content={"error": "MISSING_FIELDS", "message": f"Missing required fields: {', '.join(missing)}"},
        )

    extra = payload.get("params") or {}
    if not isinstance(extra, dict) or not isinstance(payload["messages"], list):
        return JSONResponse(
            status_code=400,
            content={"error": "INVALID_FIELDS", "message": "'params' must be an object and 'messages' a list"},
        )

    params = StreamingParams(
        api_key=payload["api_key"],
        model=payload["model"],
        extra=extra,
        base_url=payload.get("base_url") or DEFAULT_BASE_URL,
    )
    request_options = build_request_options(params, payload["messages"], CancelToken())
    client, owns_client = pool.get_or_create(params.base_url)

    return StreamingResponse(
        relay_stream(request_options, client, params.chat_url, owns_client),
        media_type="application/x-ndjson",
    )


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.environ.get("CHATSTREAM_LOG_LEVEL", "WARNING").upper())
    uvicorn.run(app, host="127.0.0.1", port=CHATSTREAM_PORT)

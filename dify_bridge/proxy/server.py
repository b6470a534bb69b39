"""HTTP gateway exposing Dify apps behind the OpenAI chat-completions API.

Each Dify app key shows up as a model named after the app.  Requests are
translated into Dify ``chat-messages`` calls; streamed answers are re-paced
into per-character chunks.

Usage:
    dify-bridge -c dify-bridge.yaml serve --port 5003
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .. import __version__
from ..core.content_extractor import ImageUploader, extract, resolve_images, system_content
from ..core.conversation_codec import prepare_query
from ..core.rechunker import StreamRechunker
from ..core.request_adapter import DEFAULT_USER, build_upstream_request, parse_chat_request
from ..core.response_adapter import build_chat_response
from ..core.stream_parser import iter_events
from ..types import (
    BridgeConfig,
    BridgeError,
    ChatRequest,
    InvalidRequestError,
    TransportError,
    UpstreamProtocolError,
)
from .helpers import (
    SSE_DONE,
    SSE_HEADERS,
    check_bearer,
    chunk_to_sse,
    envelope_for,
    error_envelope,
    error_response,
    format_sse,
    upstream_error_text,
)
from .metrics import ProxyMetrics
from .model_registry import ModelRegistry
from .uploads import DifyImageUploader

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


# ---------------------------------------------------------------------------
# Upstream calls
# ---------------------------------------------------------------------------

async def _handle_streaming(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    body: dict,
    chat: ChatRequest,
    config: BridgeConfig,
    *,
    metrics: ProxyMetrics,
) -> StreamingResponse:
    """Open the upstream SSE stream and re-pace it to the client.

    Non-2xx upstream responses are raised before any bytes are sent, so the
    client gets a JSON error instead of a broken stream.
    """
    t_upstream = time.monotonic()
    req = client.build_request("POST", url, headers=headers, json=body)
    try:
        upstream = await client.send(req, stream=True)
    except httpx.HTTPError as e:
        raise TransportError(f"Upstream connection failed: {e}") from e

    if upstream.status_code >= 300:
        error_bytes = await upstream.aread()
        await upstream.aclose()
        metrics.record({
            "type": "response",
            "model": chat.model,
            "streaming": True,
            "error": True,
            "upstream_ms": _elapsed_ms(t_upstream),
        })
        logger.error(
            "Upstream returned %d: %s",
            upstream.status_code, error_bytes[:200].decode("utf-8", errors="replace"),
        )
        raise UpstreamProtocolError(
            upstream_error_text(error_bytes),
            status_code=upstream.status_code,
        )

    rechunker = StreamRechunker(
        chat.model,
        mode=config.conversation.memory_mode,
        prior_messages=chat.messages,
        pacing=config.pacing,
        metrics=metrics,
    )

    async def stream_generator():
        failed = False
        try:
            async for chunk in rechunker.run(iter_events(upstream.aiter_lines())):
                yield chunk_to_sse(chunk)
            yield SSE_DONE
        except BridgeError as e:
            # Headers are already sent: report in-band and end without [DONE].
            failed = True
            logger.error("Stream %s failed: %s", rechunker.stream_id, e.message)
            metrics.record({
                "type": "error",
                "stream_id": rechunker.stream_id,
                "error_type": e.error_type,
                "message": e.message,
            })
            yield format_sse(envelope_for(e))
        finally:
            await upstream.aclose()
            metrics.record({
                "type": "response",
                "model": chat.model,
                "streaming": True,
                "error": failed,
                "chars": rechunker.chars_emitted,
                "conversation_id": rechunker.conversation_id,
                "upstream_ms": _elapsed_ms(t_upstream),
            })
            logger.info(
                "Stream %s done: chars=%d conversation=%s",
                rechunker.stream_id, rechunker.chars_emitted,
                rechunker.conversation_id or "-",
            )

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _handle_blocking(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    body: dict,
    chat: ChatRequest,
    config: BridgeConfig,
    *,
    metrics: ProxyMetrics,
) -> JSONResponse:
    """Forward a blocking request and map the answer onto a chat completion."""
    t_upstream = time.monotonic()
    try:
        resp = await client.post(url, headers=headers, json=body)
    except httpx.HTTPError as e:
        raise TransportError(f"Upstream connection failed: {e}") from e
    upstream_ms = _elapsed_ms(t_upstream)

    if resp.status_code >= 300:
        logger.error("Upstream returned %d: %s", resp.status_code, resp.text[:200])
        raise UpstreamProtocolError(
            upstream_error_text(resp.content),
            status_code=resp.status_code,
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamProtocolError("Upstream returned invalid JSON") from e

    response = build_chat_response(
        data,
        chat.model,
        mode=config.conversation.memory_mode,
        prior_messages=chat.messages,
    )
    conversation_id = data.get("conversation_id") or ""
    metrics.record({
        "type": "response",
        "model": chat.model,
        "streaming": False,
        "chars": len(response["choices"][0]["message"]["content"]),
        "conversation_id": conversation_id,
        "upstream_ms": upstream_ms,
    })
    headers_out = {"Conversation-Id": conversation_id} if conversation_id else None
    return JSONResponse(content=response, headers=headers_out)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: BridgeConfig,
    *,
    client: httpx.AsyncClient | None = None,
    registry: ModelRegistry | None = None,
    uploader: ImageUploader | None = None,
    metrics: ProxyMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI gateway application.

    Args:
        config: Loaded bridge configuration.
        client: Upstream HTTP client. Created (and closed on shutdown) when omitted.
        registry: Model registry. Built from ``config.upstream`` when omitted.
        uploader: Image uploader. Defaults to Dify's ``/files/upload``.
        metrics: Shared metrics collector.
    """
    api_base = config.upstream.api_base.rstrip("/")
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                config.upstream.timeout,
                connect=config.upstream.connect_timeout,
            ),
        )
    if registry is None:
        registry = ModelRegistry(
            client, api_base, config.upstream.api_keys, config.upstream.models,
        )
    if uploader is None:
        uploader = DifyImageUploader(client, api_base)
    if metrics is None:
        metrics = ProxyMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        await registry.refresh()
        logger.info(
            "Bridge ready: upstream=%s mode=%s models=%s",
            api_base, config.conversation.memory_mode.value,
            ", ".join(registry.known_models()) or "(none)",
        )
        yield
        if owns_client:
            await client.aclose()

    app = FastAPI(title="dify-bridge", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.metrics = metrics

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        metrics.record({"type": "error", "error_type": "internal_error", "message": str(exc)})
        return JSONResponse(
            content=error_envelope(f"Internal server error: {exc}"),
            status_code=500,
        )

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        check_bearer(request.headers.get("authorization"), config.server.api_keys)
        try:
            raw = await request.json()
        except ValueError as e:
            raise InvalidRequestError("Request body is not valid JSON") from e
        chat = parse_chat_request(raw)

        api_key = await registry.resolve(chat.model)
        extracted = extract(chat.messages)
        prepared = prepare_query(
            chat.messages, extracted.query, config.conversation.memory_mode,
        )
        system = "" if prepared.system_delivered else system_content(chat.messages)
        user = chat.user or DEFAULT_USER

        uploaded = await resolve_images(
            extracted.image_refs, uploader, user=user, api_key=api_key,
        )
        dropped = len(extracted.image_refs) - len(uploaded)
        if dropped:
            metrics.record({"type": "upload_failed", "model": chat.model, "count": dropped})

        body = build_upstream_request(
            chat, prepared.query, prepared.state, uploaded, system=system,
        )
        metrics.record({
            "type": "request",
            "model": chat.model,
            "stream": chat.stream,
            "resumed": prepared.state.resumed,
            "images": len(uploaded),
        })

        url = f"{api_base}/chat-messages"
        headers = {"Authorization": f"Bearer {api_key}"}
        handler = _handle_streaming if chat.stream else _handle_blocking
        return await handler(client, url, headers, body, chat, config, metrics=metrics)

    @app.get("/v1/models")
    async def list_models(request: Request):
        check_bearer(request.headers.get("authorization"), config.server.api_keys)
        await registry.refresh()
        return {"object": "list", "data": registry.list_models()}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "stats": metrics.snapshot(),
        }

    return app

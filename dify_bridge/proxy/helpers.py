"""Pure helper functions for the bridge server.

No app state. SSE framing, the error envelope, and the inbound bearer check
live here so they can be unit-tested without a running app.
"""

from __future__ import annotations

import json as _json

from fastapi.responses import JSONResponse

from ..types import AuthenticationError, BridgeError, OutboundChunk

# ---------------------------------------------------------------------------
# SSE construction
# ---------------------------------------------------------------------------

SSE_DONE = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "cache-control": "no-cache, no-transform",
    "connection": "keep-alive",
    "x-accel-buffering": "no",
}


def format_sse(payload: dict) -> bytes:
    """One ``data: <json>`` record."""
    return f"data: {_json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def chunk_to_sse(chunk: OutboundChunk) -> bytes:
    return format_sse(chunk.to_dict())


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def error_envelope(
    message: str,
    error_type: str = "internal_error",
    code: str | None = None,
) -> dict:
    error: dict = {"message": message, "type": error_type}
    if code is not None:
        error["code"] = code
    return {"error": error}


def envelope_for(exc: BridgeError) -> dict:
    return error_envelope(exc.message, exc.error_type, exc.code)


def error_response(exc: BridgeError, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        content=envelope_for(exc),
        status_code=exc.status_code,
        headers=headers,
    )


def upstream_error_text(body: bytes) -> str:
    """Best-effort message from an upstream error body."""
    try:
        data = _json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")[:500]
    if isinstance(data, dict):
        for key in ("message", "error", "code"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
    return _json.dumps(data, ensure_ascii=False)[:500]


# ---------------------------------------------------------------------------
# Inbound auth
# ---------------------------------------------------------------------------

def check_bearer(authorization: str | None, valid_keys: list[str]) -> None:
    """Raise AuthenticationError unless *authorization* carries a valid key.

    An empty *valid_keys* list disables the check.
    """
    if not valid_keys:
        return
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid Authorization header format. Expected: Bearer <API_KEY>")
    if parts[1] not in valid_keys:
        raise AuthenticationError("Invalid API key")

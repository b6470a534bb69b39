"""Parse Dify's line-oriented SSE stream into typed upstream events.

Only ``data:`` lines carry payloads.  Blank lines, ``event: ping`` keep-alives
and comments are skipped.  A single malformed line is logged and skipped
rather than failing the whole stream.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from ..types import (
    AgentThought,
    MessageDelta,
    MessageEnd,
    MessageFile,
    TransportError,
    UnknownEvent,
    UpstreamEvent,
    UpstreamProtocolError,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


def parse_event(payload: dict) -> UpstreamEvent:
    """Map one decoded ``data:`` payload onto an :data:`UpstreamEvent`.

    Raises UpstreamProtocolError for Dify ``error`` events.
    """
    kind = payload.get("event")

    if kind in ("message", "agent_message"):
        return MessageDelta(
            text=payload.get("answer") or "",
            message_id=payload.get("message_id") or "",
        )

    if kind == "message_end":
        metadata = payload.get("metadata") or {}
        return MessageEnd(
            conversation_id=payload.get("conversation_id") or "",
            history=list(payload.get("conversation_history") or []),
            message_id=payload.get("message_id") or payload.get("id") or "",
            usage=metadata.get("usage") if isinstance(metadata, dict) else None,
        )

    if kind == "agent_thought":
        return AgentThought(
            id=payload.get("id") or "",
            tool=payload.get("tool") or None,
            thought=payload.get("thought") or None,
            tool_input=payload.get("tool_input") or None,
            observation=payload.get("observation") or None,
        )

    if kind == "message_file":
        file_type = payload.get("type") or ""
        files = payload.get("files")
        if not file_type and isinstance(files, list) and files and isinstance(files[0], dict):
            file_type = files[0].get("type") or ""
        return MessageFile(
            id=payload.get("id") or "",
            file_type=file_type,
            url=payload.get("url") or "",
        )

    if kind == "error":
        try:
            status = int(payload.get("status") or 502)
        except (TypeError, ValueError):
            status = 502
        raise UpstreamProtocolError(
            f"Upstream error: {payload.get('message') or 'unknown error'}",
            status_code=status,
            code=payload.get("code"),
        )

    return UnknownEvent(event=str(kind or ""))


async def iter_events(lines: AsyncIterator[str]) -> AsyncIterator[UpstreamEvent]:
    """Lazily turn upstream lines into events.

    Stops after ``data: [DONE]`` or the ``message_end`` event.  The line
    source is closed on exit, including on cancellation.
    """
    try:
        async for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            if not line.startswith(_DATA_PREFIX):
                logger.debug("Skipping non-data line: %.80s", line)
                continue

            data = line[len(_DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                return

            try:
                payload = json.loads(data)
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed upstream line (%s): %.200s", e, data)
                continue
            if not isinstance(payload, dict):
                logger.warning("Skipping non-object upstream payload: %.200s", data)
                continue

            event = parse_event(payload)
            if isinstance(event, MessageDelta) and not event.text:
                continue
            yield event
            if isinstance(event, MessageEnd):
                return
    except httpx.HTTPError as e:
        raise TransportError(f"Upstream stream failed: {e}") from e
    finally:
        aclose = getattr(lines, "aclose", None)
        if aclose is not None:
            await aclose()

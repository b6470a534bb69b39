"""Map a blocking Dify ``chat-messages`` result onto a chat completion."""

from __future__ import annotations

import logging
import time

from ..types import InboundMessage, MemoryMode, UpstreamProtocolError
from .content_extractor import parse_messages
from .conversation_codec import inject_token
from .rechunker import FINISH_REASON, new_stream_id

logger = logging.getLogger(__name__)

_USAGE_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")


def extract_answer(upstream: dict) -> str:
    """Answer text, falling back to the last agent thought.

    Agent-mode apps have been seen to return an empty ``answer`` with the
    reply in the final ``agent_thoughts`` entry.  Whether every agent
    configuration behaves this way is unconfirmed.
    """
    answer = upstream.get("answer")
    if answer:
        return str(answer)
    thoughts = upstream.get("agent_thoughts") or []
    if thoughts and isinstance(thoughts[-1], dict):
        thought = thoughts[-1].get("thought")
        if thought:
            logger.info("Empty answer; using last agent thought as reply")
            return str(thought)
    return ""


def extract_usage(upstream: dict) -> dict | None:
    metadata = upstream.get("metadata")
    if not isinstance(metadata, dict):
        return None
    usage = metadata.get("usage")
    if not isinstance(usage, dict):
        return None
    return {k: usage[k] for k in _USAGE_FIELDS if k in usage}


def build_chat_response(
    upstream: object,
    model: str,
    *,
    mode: MemoryMode = MemoryMode.HISTORICAL,
    prior_messages: list[InboundMessage] | None = None,
) -> dict:
    """Chat-completions response for a blocking upstream result."""
    if not isinstance(upstream, dict):
        raise UpstreamProtocolError(
            f"Unexpected upstream response body: {type(upstream).__name__}",
        )

    answer = extract_answer(upstream)
    if mode is MemoryMode.EMBEDDED:
        prior = list(prior_messages or [])
        history = upstream.get("conversation_history")
        if isinstance(history, list):
            prior += parse_messages(history)
        answer = inject_token(answer, upstream.get("conversation_id"), prior)

    response: dict = {
        "id": upstream.get("message_id") or new_stream_id(),
        "object": "chat.completion",
        "created": upstream.get("created_at") or int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": answer},
            "finish_reason": FINISH_REASON,
        }],
    }
    usage = extract_usage(upstream)
    if usage is not None:
        response["usage"] = usage
    return response

"""Conversation memory: inline history rendering and zero-width id tokens.

Dify keeps conversation state server-side behind a ``conversation_id``;
chat-completions clients resend the whole transcript instead.  Two modes
bridge the gap, fixed per deployment:

``HISTORICAL``
    Every turn starts a fresh upstream conversation.  Prior messages are
    rendered into a ``<history>`` block prepended to the query.

``EMBEDDED``
    The upstream ``conversation_id`` is hidden at the end of the first
    assistant reply as a run of zero-width characters.  The client echoes
    it back in the transcript, and the next request decodes it to resume
    the same upstream conversation.

Token format: base64 of the UTF-8 id; each base64 character becomes two
3-bit symbols (high, low), each symbol one of eight invisible code points.
Padding characters (``=``) contribute their high symbol only.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from types import MappingProxyType

from ..types import ConversationState, InboundMessage, MemoryMode
from .content_extractor import message_text, system_content

logger = logging.getLogger(__name__)

_B64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_B64_VALUES = MappingProxyType({c: i for i, c in enumerate(_B64_ALPHABET)})

# 3-bit value → code point
SYMBOLS: tuple[str, ...] = (
    "\u200b",  # zero width space
    "\u200c",  # zero width non-joiner
    "\u200d",  # zero width joiner
    "\ufeff",  # zero width no-break space
    "\u2060",  # word joiner
    "\u180e",  # mongolian vowel separator
    "\u2061",  # function application
    "\u2062",  # invisible times
)
SYMBOL_VALUES = MappingProxyType({s: i for i, s in enumerate(SYMBOLS)})

# A token of n base64 chars (n % 4 == 0) with p pad chars is 2n - p symbols,
# so the run length mod 8 identifies the padding.
_PADDING_BY_REMAINDER = MappingProxyType({6: 2, 7: 1})

# Invisible, but not a codec symbol: ends a stray trailing run so it cannot
# merge with the token appended after it.
SEPARATOR = "\u2063"  # invisible separator

_HISTORY_OPEN = "<history>"
_HISTORY_CLOSE = "</history>"
_CURRENT_QUESTION_LABEL = "Current question: "


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------

def encode(conversation_id: str) -> str:
    """Encode *conversation_id* as a run of invisible codec symbols."""
    if not conversation_id:
        return ""
    b64 = base64.b64encode(conversation_id.encode("utf-8")).decode("ascii")
    out: list[str] = []
    for ch in b64:
        val = _B64_VALUES.get(ch, 0)
        out.append(SYMBOLS[(val >> 3) & 0x7])
        if ch != "=":
            out.append(SYMBOLS[val & 0x7])
    return "".join(out)


def trailing_symbols(text: str) -> list[int]:
    """3-bit values of the maximal run of codec symbols ending *text*."""
    run: list[int] = []
    for ch in reversed(text):
        val = SYMBOL_VALUES.get(ch)
        if val is None:
            break
        run.append(val)
    run.reverse()
    return run


def decode(text: str | None) -> str | None:
    """Recover the conversation id hidden at the end of *text*.

    Returns None when there is no trailing token or it does not decode;
    never raises.
    """
    if not text:
        return None
    run = trailing_symbols(text)
    if not run:
        return None

    pad = _PADDING_BY_REMAINDER.get(len(run) % 8, 0)
    body = run[: len(run) - pad]
    chars: list[str] = []
    for i in range(0, len(body), 2):
        high = body[i]
        low = body[i + 1] if i + 1 < len(body) else 0
        chars.append(_B64_ALPHABET[(high << 3) | low])
    b64 = "".join(chars) + "=" * pad
    b64 += "=" * (-len(b64) % 4)

    try:
        return base64.b64decode(b64, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        logger.debug("Trailing codec run did not decode (%d symbols): %s", len(run), e)
        return None


def decode_from_history(messages: list[InboundMessage]) -> str | None:
    """Newest token carried by an assistant message before the current turn."""
    for msg in reversed(messages[:-1]):
        if msg.role != "assistant":
            continue
        conversation_id = decode(message_text(msg))
        if conversation_id:
            return conversation_id
    return None


def has_token(messages: list[InboundMessage]) -> bool:
    return any(
        msg.role == "assistant" and decode(message_text(msg)) is not None
        for msg in messages
    )


def inject_token(
    text: str,
    conversation_id: str | None,
    prior_messages: list[InboundMessage] | None = None,
) -> str:
    """Append the encoded id unless a token is already present.

    A token is present when *text* already ends in one, or when any
    assistant message in *prior_messages* carries one.
    """
    if not conversation_id:
        return text
    if decode(text) is not None:
        return text
    if prior_messages and has_token(prior_messages):
        return text
    logger.info("Embedding conversation id %s in reply", conversation_id)
    if trailing_symbols(text):
        # reply ends in codec symbols that are not a token
        return text + SEPARATOR + encode(conversation_id)
    return text + encode(conversation_id)


def token_suffix(
    text: str,
    conversation_id: str | None,
    prior_messages: list[InboundMessage] | None = None,
) -> str:
    """Characters :func:`inject_token` would append to *text* (may be empty)."""
    return inject_token(text, conversation_id, prior_messages)[len(text):]


# ---------------------------------------------------------------------------
# History rendering
# ---------------------------------------------------------------------------

def _history_lines(messages: list[InboundMessage]) -> tuple[list[str], bool]:
    lines: list[str] = []
    has_system = False
    for msg in messages[:-1]:
        content = message_text(msg)
        if not msg.role or not content:
            continue
        if msg.role == "system":
            has_system = True
        lines.append(f"{msg.role}: {content}")
    return lines, has_system


def render_history(messages: list[InboundMessage], current_query: str) -> str:
    """Prepend prior turns to *current_query* as a ``<history>`` block."""
    lines, has_system = _history_lines(messages)
    if not lines:
        return current_query
    system = system_content(messages)
    if system and not has_system:
        lines.insert(0, f"system: {system}")
    block = "\n\n".join(lines)
    return f"{_HISTORY_OPEN}\n{block}\n{_HISTORY_CLOSE}\n\n{_CURRENT_QUESTION_LABEL}{current_query}"


# ---------------------------------------------------------------------------
# Mode dispatch
# ---------------------------------------------------------------------------

@dataclass
class PreparedQuery:
    query: str
    state: ConversationState
    system_delivered: bool = False  # upstream already has the system prompt


def prepare_query(
    messages: list[InboundMessage],
    query: str,
    mode: MemoryMode,
) -> PreparedQuery:
    """Apply the deployment's memory mode to the extracted query."""
    if mode is MemoryMode.EMBEDDED:
        conversation_id = decode_from_history(messages)
        if conversation_id:
            logger.info("Resuming upstream conversation %s", conversation_id)
        state = ConversationState(mode=mode, conversation_id=conversation_id)
        return PreparedQuery(query=query, state=state, system_delivered=state.resumed)

    rendered = render_history(messages, query)
    delivered = rendered != query and bool(system_content(messages))
    return PreparedQuery(
        query=rendered,
        state=ConversationState(mode=mode),
        system_delivered=delivered,
    )

"""Flatten chat-completions message content into query text and image refs.

Message ``content`` arrives either as a plain string or as a list of typed
parts (``{"type": "text"}`` / ``{"type": "image_url"}``).  It is resolved
into a :class:`PlainText` or :class:`Parts` variant exactly once, in
:func:`parse_message`; everything downstream works on the variant.
"""

from __future__ import annotations

import logging
from typing import Protocol

from ..types import (
    ExtractedContent,
    ImagePart,
    InboundMessage,
    MessageContent,
    Parts,
    PlainText,
    TextPart,
    UploadedFile,
    UploadError,
)

logger = logging.getLogger(__name__)


class ImageUploader(Protocol):
    async def upload(self, url: str, *, user: str, api_key: str) -> UploadedFile: ...


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def _parse_part(part: object) -> TextPart | ImagePart | None:
    if isinstance(part, str):
        return TextPart(part)
    if not isinstance(part, dict):
        return None
    ptype = part.get("type")
    if ptype == "text":
        return TextPart(str(part.get("text") or ""))
    if ptype == "image_url":
        image = part.get("image_url")
        url = image.get("url") if isinstance(image, dict) else image
        if isinstance(url, str) and url:
            return ImagePart(url)
    return None


def parse_content(content: object) -> MessageContent:
    """Resolve raw ``content`` into the tagged variant."""
    if isinstance(content, list):
        items = tuple(p for p in (_parse_part(c) for c in content) if p is not None)
        return Parts(items)
    if content is None:
        return PlainText("")
    return PlainText(content if isinstance(content, str) else str(content))


def parse_message(raw: dict) -> InboundMessage:
    return InboundMessage(
        role=str(raw.get("role") or ""),
        content=parse_content(raw.get("content")),
        name=raw.get("name"),
        tool_call_id=raw.get("tool_call_id"),
    )


def parse_messages(raw_messages: list | None) -> list[InboundMessage]:
    return [parse_message(m) for m in raw_messages or [] if isinstance(m, dict)]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def message_text(msg: InboundMessage) -> str:
    """Text of a message; text parts are joined with newlines."""
    content = msg.content
    if isinstance(content, PlainText):
        return content.text
    return "\n".join(p.text for p in content.items if isinstance(p, TextPart))


def message_images(msg: InboundMessage) -> list[str]:
    content = msg.content
    if isinstance(content, PlainText):
        return []
    return [p.url for p in content.items if isinstance(p, ImagePart)]


def last_non_system(messages: list[InboundMessage]) -> InboundMessage | None:
    for msg in reversed(messages):
        if msg.role != "system":
            return msg
    return None


def system_content(messages: list[InboundMessage]) -> str:
    """Text of the first system message, or empty string."""
    for msg in messages:
        if msg.role == "system":
            return message_text(msg)
    return ""


def extract(messages: list[InboundMessage]) -> ExtractedContent:
    """Query text and image references of the last non-system message."""
    msg = last_non_system(messages)
    if msg is None:
        return ExtractedContent()
    return ExtractedContent(query=message_text(msg), image_refs=message_images(msg))


async def resolve_images(
    image_refs: list[str],
    uploader: ImageUploader | None,
    *,
    user: str,
    api_key: str,
) -> list[UploadedFile]:
    """Upload each image reference in order, dropping the ones that fail."""
    if not image_refs or uploader is None:
        return []
    uploaded: list[UploadedFile] = []
    for url in image_refs:
        try:
            uploaded.append(await uploader.upload(url, user=user, api_key=api_key))
        except UploadError as e:
            logger.warning("Image dropped: %s", e)
    if uploaded:
        logger.info("Uploaded %d/%d images", len(uploaded), len(image_refs))
    return uploaded

"""Re-pace upstream text bursts into a smooth per-character chunk stream.

Dify emits answer text in coarse bursts.  ``StreamRechunker`` queues the
characters and drains them one per chunk, sleeping between characters for
a delay picked from the current backlog: a long backlog drains fast, a
short one is paced so the text still appears to be typed.

Queue and drain loop are pull-based: the next upstream event is only read
once the queue is empty, so the backlog never exceeds one upstream delta.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from typing import TYPE_CHECKING

from ..types import (
    AgentThought,
    InboundMessage,
    MemoryMode,
    MessageDelta,
    MessageEnd,
    MessageFile,
    OutboundChunk,
    PacingConfig,
    UpstreamEvent,
)
from .content_extractor import parse_messages
from .conversation_codec import token_suffix

if TYPE_CHECKING:
    from ..proxy.metrics import ProxyMetrics

logger = logging.getLogger(__name__)

FINISH_REASON = "stop"


def pacing_delay(backlog: int, pacing: PacingConfig) -> float:
    """Seconds to wait before emitting the next character.

    Non-increasing in *backlog*, clamped to ``[min_delay, max_delay]``.
    """
    if not pacing.enabled:
        return 0.0
    delay = pacing.max_delay
    for threshold, step_delay in sorted(pacing.steps, reverse=True):
        if backlog > threshold:
            delay = step_delay
            break
    return min(max(delay, pacing.min_delay), pacing.max_delay)


def new_stream_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


class StreamRechunker:
    """Turns one upstream event stream into ordered downstream chunks.

    Single use: ``run()`` consumes the event iterator once.  After the
    stream completes, ``conversation_id``, ``message_id`` and ``usage``
    hold what the upstream reported in ``message_end``.
    """

    def __init__(
        self,
        model: str,
        *,
        mode: MemoryMode = MemoryMode.HISTORICAL,
        prior_messages: list[InboundMessage] | None = None,
        pacing: PacingConfig | None = None,
        metrics: ProxyMetrics | None = None,
        stream_id: str | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.model = model
        self.mode = mode
        self.prior_messages = list(prior_messages or [])
        self.pacing = pacing or PacingConfig()
        self.metrics = metrics
        self.stream_id = stream_id or new_stream_id()
        self.created = int(time.time())
        self._sleep = sleep

        self._queue: deque[str] = deque()
        self._text: list[str] = []
        self._role_sent = False
        self._started = False

        self.conversation_id = ""
        self.message_id = ""
        self.usage: dict | None = None
        self.chars_emitted = 0

    @property
    def backlog(self) -> int:
        return len(self._queue)

    # -- chunk construction ----------------------------------------------------

    def _content_chunk(self, text: str) -> OutboundChunk:
        chunk = OutboundChunk(
            stream_id=self.stream_id,
            model=self.model,
            created=self.created,
            delta=text,
            role=None if self._role_sent else "assistant",
        )
        self._role_sent = True
        self._text.append(text)
        return chunk

    def _terminal_chunk(self) -> OutboundChunk:
        return OutboundChunk(
            stream_id=self.stream_id,
            model=self.model,
            created=self.created,
            finish_reason=FINISH_REASON,
        )

    # -- observability-only events --------------------------------------------

    def _record_thought(self, event: AgentThought) -> None:
        logger.info("[agent thought] id=%s tool=%s", event.id, event.tool)
        if event.thought:
            logger.debug("[agent thought] thought: %s", event.thought)
        if event.observation:
            logger.debug("[agent thought] observation: %s", event.observation)
        if self.metrics:
            self.metrics.record({
                "type": "agent_thought",
                "stream_id": self.stream_id,
                "thought_id": event.id,
                "tool": event.tool,
            })

    def _record_file(self, event: MessageFile) -> None:
        logger.info("[message file] id=%s type=%s", event.id, event.file_type)
        if self.metrics:
            self.metrics.record({
                "type": "message_file",
                "stream_id": self.stream_id,
                "file_id": event.id,
                "file_type": event.file_type,
            })

    # -- end of stream ---------------------------------------------------------

    def _final_chunks(self, end: MessageEnd | None) -> Iterator[OutboundChunk]:
        """Undelayed flush, optional token, then the single terminal chunk.

        ``chars_emitted`` counts answer characters only, not token symbols.
        """
        while self._queue:
            self.chars_emitted += 1
            yield self._content_chunk(self._queue.popleft())

        if end is not None:
            self.conversation_id = end.conversation_id
            self.message_id = end.message_id
            self.usage = end.usage

        if self.mode is MemoryMode.EMBEDDED and self.conversation_id:
            prior = self.prior_messages
            if end is not None and end.history:
                prior = prior + parse_messages(end.history)
            # one symbol per chunk, undelayed
            for symbol in token_suffix("".join(self._text), self.conversation_id, prior):
                yield self._content_chunk(symbol)

        yield self._terminal_chunk()

    # -- main loop -------------------------------------------------------------

    async def run(self, events: AsyncIterator[UpstreamEvent]) -> AsyncIterator[OutboundChunk]:
        """Consume upstream *events*, yield downstream chunks in order."""
        if self._started:
            raise RuntimeError("StreamRechunker.run() can only be called once")
        self._started = True

        async for event in events:
            if isinstance(event, MessageDelta):
                self._queue.extend(event.text)
                while self._queue:
                    ch = self._queue.popleft()
                    delay = pacing_delay(len(self._queue), self.pacing)
                    if delay > 0:
                        await self._sleep(delay)
                    self.chars_emitted += 1
                    yield self._content_chunk(ch)
            elif isinstance(event, MessageEnd):
                for chunk in self._final_chunks(event):
                    yield chunk
                return
            elif isinstance(event, AgentThought):
                self._record_thought(event)
            elif isinstance(event, MessageFile):
                self._record_file(event)
            else:
                logger.debug("Dropping unknown upstream event: %s", event)

        logger.warning("Upstream stream %s ended without message_end", self.stream_id)
        for chunk in self._final_chunks(None):
            yield chunk

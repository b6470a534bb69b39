"""Tests for dify_bridge.core.rechunker."""

from __future__ import annotations

import asyncio

import pytest

from conftest import aevents, collect
from dify_bridge.core.content_extractor import parse_messages
from dify_bridge.core.conversation_codec import decode, encode
from dify_bridge.core.rechunker import StreamRechunker, new_stream_id, pacing_delay
from dify_bridge.proxy.metrics import ProxyMetrics
from dify_bridge.types import (
    AgentThought,
    MemoryMode,
    MessageDelta,
    MessageEnd,
    MessageFile,
    PacingConfig,
    UnknownEvent,
)


class _SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _rechunker(mode=MemoryMode.HISTORICAL, pacing=None, **kwargs) -> StreamRechunker:
    return StreamRechunker(
        "my-app",
        mode=mode,
        pacing=pacing or PacingConfig(enabled=False),
        stream_id="chatcmpl-test",
        **kwargs,
    )


def _content(chunks) -> str:
    return "".join(c.delta or "" for c in chunks)


# ---------------------------------------------------------------------------
# pacing_delay
# ---------------------------------------------------------------------------


class TestPacingDelay:
    def test_default_steps(self):
        pacing = PacingConfig()
        assert pacing_delay(40, pacing) == 0.001
        assert pacing_delay(25, pacing) == 0.002
        assert pacing_delay(15, pacing) == 0.010
        assert pacing_delay(5, pacing) == 0.020

    def test_thresholds_are_exclusive(self):
        pacing = PacingConfig()
        assert pacing_delay(30, pacing) == 0.002
        assert pacing_delay(10, pacing) == 0.020

    def test_non_increasing_in_backlog(self):
        pacing = PacingConfig()
        delays = [pacing_delay(n, pacing) for n in range(0, 100)]
        assert all(b <= a for a, b in zip(delays, delays[1:]))
        assert all(pacing.min_delay <= d <= pacing.max_delay for d in delays)

    def test_disabled(self):
        assert pacing_delay(0, PacingConfig(enabled=False)) == 0.0

    def test_clamped(self):
        pacing = PacingConfig(steps=[(5, 0.0)], min_delay=0.004, max_delay=0.05)
        assert pacing_delay(10, pacing) == 0.004
        assert pacing_delay(1, pacing) == 0.05


def test_new_stream_id():
    sid = new_stream_id()
    assert sid.startswith("chatcmpl-")
    assert sid != new_stream_id()


# ---------------------------------------------------------------------------
# StreamRechunker
# ---------------------------------------------------------------------------


class TestRechunkerOrdering:
    @pytest.mark.asyncio
    async def test_one_chunk_per_character(self):
        r = _rechunker()
        chunks = await collect(r.run(aevents([
            MessageDelta(text="Hel"),
            MessageDelta(text="lo"),
            MessageEnd(conversation_id="c1", message_id="m1"),
        ])))
        content = [c for c in chunks if not c.is_terminal]
        assert [c.delta for c in content] == list("Hello")
        assert chunks[-1].is_terminal
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].delta is None
        assert sum(1 for c in chunks if c.is_terminal) == 1

    @pytest.mark.asyncio
    async def test_role_only_on_first_chunk(self):
        r = _rechunker()
        chunks = await collect(r.run(aevents([MessageDelta(text="ab"), MessageEnd()])))
        assert chunks[0].role == "assistant"
        assert all(c.role is None for c in chunks[1:])
        assert chunks[0].to_dict()["choices"][0]["delta"] == {"role": "assistant", "content": "a"}

    @pytest.mark.asyncio
    async def test_chunk_shape(self):
        r = _rechunker()
        chunks = await collect(r.run(aevents([MessageDelta(text="x"), MessageEnd()])))
        terminal = chunks[-1].to_dict()
        assert terminal["id"] == "chatcmpl-test"
        assert terminal["object"] == "chat.completion.chunk"
        assert terminal["model"] == "my-app"
        assert terminal["choices"] == [{"index": 0, "delta": {}, "finish_reason": "stop"}]

    @pytest.mark.asyncio
    async def test_end_state_captured(self):
        r = _rechunker()
        await collect(r.run(aevents([
            MessageDelta(text="hi"),
            MessageEnd(conversation_id="c1", message_id="m1", usage={"total_tokens": 3}),
        ])))
        assert r.conversation_id == "c1"
        assert r.message_id == "m1"
        assert r.usage == {"total_tokens": 3}
        assert r.chars_emitted == 2
        assert r.backlog == 0

    @pytest.mark.asyncio
    async def test_missing_message_end_still_terminates(self):
        r = _rechunker(mode=MemoryMode.EMBEDDED)
        chunks = await collect(r.run(aevents([MessageDelta(text="ab")])))
        assert _content(chunks) == "ab"
        assert chunks[-1].is_terminal
        assert r.conversation_id == ""

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        chunks = await collect(_rechunker().run(aevents([])))
        assert len(chunks) == 1
        assert chunks[0].is_terminal

    @pytest.mark.asyncio
    async def test_single_use(self):
        r = _rechunker()
        await collect(r.run(aevents([MessageEnd()])))
        with pytest.raises(RuntimeError):
            await collect(r.run(aevents([MessageEnd()])))


class TestRechunkerTokens:
    @pytest.mark.asyncio
    async def test_embedded_appends_token_once(self):
        r = _rechunker(mode=MemoryMode.EMBEDDED)
        chunks = await collect(r.run(aevents([
            MessageDelta(text="Hi"),
            MessageEnd(conversation_id="conv-1"),
        ])))
        assert [c.delta for c in chunks[:-1]] == list("Hi") + list(encode("conv-1"))
        assert all(len(c.delta) == 1 for c in chunks[:-1])
        assert decode(_content(chunks)) == "conv-1"
        assert chunks[-1].is_terminal
        assert r.chars_emitted == 2

    @pytest.mark.asyncio
    async def test_embedded_after_stray_symbol(self):
        r = _rechunker(mode=MemoryMode.EMBEDDED)
        chunks = await collect(r.run(aevents([
            MessageDelta(text="ok\u200b"),
            MessageEnd(conversation_id="c1"),
        ])))
        content = _content(chunks)
        assert content.startswith("ok\u200b")
        assert decode(content) == "c1"

    @pytest.mark.asyncio
    async def test_embedded_skips_when_history_has_token(self):
        prior = parse_messages([
            {"role": "assistant", "content": "earlier" + encode("conv-1")},
            {"role": "user", "content": "more"},
        ])
        r = _rechunker(mode=MemoryMode.EMBEDDED, prior_messages=prior)
        chunks = await collect(r.run(aevents([
            MessageDelta(text="ok"),
            MessageEnd(conversation_id="conv-1"),
        ])))
        assert _content(chunks) == "ok"

    @pytest.mark.asyncio
    async def test_embedded_checks_upstream_history(self):
        history = [{"role": "assistant", "content": "x" + encode("conv-1")}]
        r = _rechunker(mode=MemoryMode.EMBEDDED)
        chunks = await collect(r.run(aevents([
            MessageDelta(text="ok"),
            MessageEnd(conversation_id="conv-1", history=history),
        ])))
        assert _content(chunks) == "ok"

    @pytest.mark.asyncio
    async def test_historical_never_appends(self):
        r = _rechunker(mode=MemoryMode.HISTORICAL)
        chunks = await collect(r.run(aevents([
            MessageDelta(text="ok"),
            MessageEnd(conversation_id="conv-1"),
        ])))
        assert [c.delta for c in chunks] == ["o", "k", None]


class TestRechunkerPacing:
    @pytest.mark.asyncio
    async def test_sleeps_once_per_character(self):
        sleep = _SleepRecorder()
        r = _rechunker(pacing=PacingConfig(), sleep=sleep)
        await collect(r.run(aevents([MessageDelta(text="abc"), MessageEnd()])))
        assert sleep.delays == [0.020, 0.020, 0.020]

    @pytest.mark.asyncio
    async def test_long_backlog_drains_faster(self):
        sleep = _SleepRecorder()
        r = _rechunker(pacing=PacingConfig(), sleep=sleep)
        await collect(r.run(aevents([MessageDelta(text="x" * 40), MessageEnd()])))
        assert sleep.delays[0] == 0.001
        assert sleep.delays[-1] == 0.020
        assert all(b >= a for a, b in zip(sleep.delays, sleep.delays[1:]))

    @pytest.mark.asyncio
    async def test_token_and_terminal_not_delayed(self):
        sleep = _SleepRecorder()
        r = _rechunker(mode=MemoryMode.EMBEDDED, pacing=PacingConfig(), sleep=sleep)
        await collect(r.run(aevents([MessageDelta(text="ab"), MessageEnd(conversation_id="c")])))
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_pacing_sleep(self):
        sleeping = asyncio.Event()
        calls = 0

        async def slow_sleep(delay: float) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                return
            sleeping.set()
            await asyncio.sleep(3600)

        r = _rechunker(mode=MemoryMode.EMBEDDED, pacing=PacingConfig(), sleep=slow_sleep)
        received = []

        async def consume():
            events = aevents([MessageDelta(text="abc"), MessageEnd(conversation_id="c1")])
            async for chunk in r.run(events):
                received.append(chunk)

        task = asyncio.create_task(consume())
        await asyncio.wait_for(sleeping.wait(), timeout=5.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0)
        assert [c.delta for c in received] == ["a"]
        assert r.chars_emitted == 1
        assert r.conversation_id == ""

    @pytest.mark.asyncio
    async def test_disabled_pacing_never_sleeps(self):
        sleep = _SleepRecorder()
        r = _rechunker(sleep=sleep)
        await collect(r.run(aevents([MessageDelta(text="abc"), MessageEnd()])))
        assert sleep.delays == []


class TestRechunkerSideEvents:
    @pytest.mark.asyncio
    async def test_thoughts_and_files_recorded_not_emitted(self):
        metrics = ProxyMetrics()
        r = _rechunker(metrics=metrics)
        chunks = await collect(r.run(aevents([
            AgentThought(id="t1", tool="search", thought="thinking"),
            MessageFile(id="f1", file_type="image"),
            UnknownEvent(event="workflow_started"),
            MessageDelta(text="x"),
            MessageEnd(),
        ])))
        assert _content(chunks) == "x"
        types = [e["type"] for e in metrics.events_since(-1)]
        assert types == ["agent_thought", "message_file"]
        snap = metrics.snapshot()
        assert snap["agent_thoughts"] == 1
        assert snap["message_files"] == 1

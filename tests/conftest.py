"""Shared fixtures for dify-bridge tests."""

from __future__ import annotations

import json

import pytest

from dify_bridge.config import load_config
from dify_bridge.types import BridgeConfig


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "regression(id): regression test for a previously fixed bug",
    )


@pytest.fixture
def sample_config() -> BridgeConfig:
    return load_config(config_dict={
        "upstream": {
            "api_base": "http://dify.test/v1",
            "api_keys": ["app-key-one"],
        },
        "conversation": {"memory_mode": "historical"},
        "pacing": {"enabled": False},
    })


@pytest.fixture
def embedded_config() -> BridgeConfig:
    return load_config(config_dict={
        "upstream": {
            "api_base": "http://dify.test/v1",
            "api_keys": ["app-key-one"],
        },
        "conversation": {"memory_mode": "embedded"},
        "pacing": {"enabled": False},
    })


def sse_lines(*payloads: dict | str) -> list[str]:
    """Upstream SSE lines for the given payloads (strings pass through raw)."""
    lines: list[str] = []
    for p in payloads:
        if isinstance(p, str):
            lines.append(p)
        else:
            lines.append(f"data: {json.dumps(p)}")
        lines.append("")
    return lines


def sse_body(*payloads: dict | str) -> bytes:
    return ("\n".join(sse_lines(*payloads)) + "\n").encode("utf-8")


async def alines(lines: list[str]):
    for line in lines:
        yield line


async def aevents(events: list):
    for event in events:
        yield event


async def collect(agen) -> list:
    return [item async for item in agen]

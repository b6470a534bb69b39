"""Tests for the dify-bridge CLI."""

from __future__ import annotations

import os
import subprocess
import sys

import pytest

from dify_bridge.core.conversation_codec import SYMBOLS, encode


@pytest.fixture()
def tmp_cwd(tmp_path, monkeypatch):
    """Run test in a clean temporary directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for var in ("DIFY_API_BASE", "DIFY_API_KEYS", "CONVERSATION_MEMORY_MODE", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def _run_cli(*args: str, stdin: str | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "dify_bridge.cli.main", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        input=stdin,
        env={**os.environ, "PYTHONIOENCODING": "utf-8"},
    )


def test_no_command_prints_help(tmp_cwd):
    result = _run_cli()
    assert result.returncode != 0
    assert "usage" in result.stdout.lower()


def test_config_validate_ok(tmp_cwd):
    (tmp_cwd / "dify-bridge.yaml").write_text(
        "upstream:\n  api_base: http://dify.local/v1\n  api_keys: [app-1]\n"
    )
    result = _run_cli("config", "validate")
    assert result.returncode == 0
    assert "Config is valid." in result.stdout
    assert "http://dify.local/v1" in result.stdout


def test_config_validate_errors(tmp_cwd):
    (tmp_cwd / "dify-bridge.yaml").write_text("server:\n  port: 0\n")
    result = _run_cli("config", "validate")
    assert result.returncode == 1
    assert "Config validation errors:" in result.stdout
    assert "server.port" in result.stdout


def test_config_validate_explicit_path(tmp_cwd):
    path = tmp_cwd / "custom.json"
    path.write_text('{"upstream": {"api_keys": ["k"]}}')
    result = _run_cli("-c", str(path), "config", "validate")
    assert result.returncode == 0


def test_config_missing_file(tmp_cwd):
    result = _run_cli("-c", "nope.yaml", "config", "validate")
    assert result.returncode == 1
    assert "Error loading config" in result.stderr


def test_codec_encode(tmp_cwd):
    result = _run_cli("codec", "encode", "conv-1")
    assert result.returncode == 0
    assert result.stdout == encode("conv-1")
    assert set(result.stdout) <= set(SYMBOLS)


def test_codec_encode_show(tmp_cwd):
    result = _run_cli("codec", "encode", "conv-1", "--show")
    assert result.stdout.startswith("[")
    assert f"({len(encode('conv-1'))} symbols)" in result.stdout


def test_codec_decode(tmp_cwd):
    result = _run_cli("codec", "decode", stdin="Hello" + encode("conv-1") + "\n")
    assert result.returncode == 0
    assert result.stdout.strip() == "conv-1"


def test_codec_decode_nothing(tmp_cwd):
    result = _run_cli("codec", "decode", stdin="plain text\n")
    assert result.returncode == 1
    assert "No conversation id" in result.stderr

"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import (
    BridgeConfig,
    ConversationConfig,
    LoggingConfig,
    MemoryMode,
    PacingConfig,
    ServerConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "dify-bridge.yaml",
    "dify-bridge.yml",
    "dify-bridge.json",
]

_MODE_ALIASES = {
    "1": MemoryMode.HISTORICAL,
    "history": MemoryMode.HISTORICAL,
    "history_message": MemoryMode.HISTORICAL,
    "historical": MemoryMode.HISTORICAL,
    "2": MemoryMode.EMBEDDED,
    "embedded": MemoryMode.EMBEDDED,
    "zero_width": MemoryMode.EMBEDDED,
}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def parse_memory_mode(value: Any) -> MemoryMode:
    """Accept ``1``/``2`` as well as the mode names."""
    if isinstance(value, MemoryMode):
        return value
    key = str(value).strip().lower()
    if key not in _MODE_ALIASES:
        raise ValueError(f"Unknown conversation memory mode: {value!r}")
    return _MODE_ALIASES[key]


def _split_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value or [] if str(v).strip()]


def _parse_steps(raw: Any) -> list[tuple[int, float]]:
    if not raw:
        return PacingConfig().steps
    steps: list[tuple[int, float]] = []
    for item in raw:
        if isinstance(item, dict):
            steps.append((int(item["backlog"]), float(item["delay"])))
        else:
            backlog, delay = item
            steps.append((int(backlog), float(delay)))
    return sorted(steps, key=lambda s: s[0], reverse=True)


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    upstream_raw = raw.get("upstream") or {}
    upstream = UpstreamConfig(
        api_base=str(upstream_raw.get("api_base", UpstreamConfig.api_base)).rstrip("/"),
        api_keys=_split_list(upstream_raw.get("api_keys", [])),
        models={str(k): str(v) for k, v in (upstream_raw.get("models") or {}).items()},
        timeout=float(upstream_raw.get("timeout", 120.0)),
        connect_timeout=float(upstream_raw.get("connect_timeout", 10.0)),
    )

    conversation_raw = raw.get("conversation") or {}
    conversation = ConversationConfig(
        memory_mode=parse_memory_mode(conversation_raw.get("memory_mode", "historical")),
    )

    defaults = PacingConfig()
    pacing_raw = raw.get("pacing") or {}
    pacing = PacingConfig(
        enabled=bool(pacing_raw.get("enabled", True)),
        steps=_parse_steps(pacing_raw.get("steps")),
        min_delay=float(pacing_raw.get("min_delay", defaults.min_delay)),
        max_delay=float(pacing_raw.get("max_delay", defaults.max_delay)),
    )

    server_raw = raw.get("server") or {}
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 5003)),
        api_keys=_split_list(server_raw.get("api_keys", [])),
    )

    logging_raw = raw.get("logging") or {}
    logging_config = LoggingConfig(level=str(logging_raw.get("level", "INFO")).upper())

    return BridgeConfig(
        version=str(raw.get("version", "1.0")),
        upstream=upstream,
        conversation=conversation,
        pacing=pacing,
        server=server,
        logging=logging_config,
    )


def _apply_env(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay environment variables onto the raw config dict."""
    raw = {k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()}

    def section(name: str) -> dict:
        if not isinstance(raw.get(name), dict):
            raw[name] = {}  # empty YAML sections load as None
        return raw[name]

    if env.get("DIFY_API_BASE"):
        section("upstream")["api_base"] = env["DIFY_API_BASE"]
    if env.get("DIFY_API_KEYS"):
        section("upstream")["api_keys"] = env["DIFY_API_KEYS"]
    if env.get("CONVERSATION_MEMORY_MODE"):
        section("conversation")["memory_mode"] = env["CONVERSATION_MEMORY_MODE"]
    if env.get("BRIDGE_API_KEYS"):
        section("server")["api_keys"] = env["BRIDGE_API_KEYS"]
    if env.get("BRIDGE_HOST"):
        section("server")["host"] = env["BRIDGE_HOST"]
    if env.get("BRIDGE_PORT"):
        section("server")["port"] = env["BRIDGE_PORT"]
    if env.get("LOG_LEVEL"):
        section("logging")["level"] = env["LOG_LEVEL"]
    return raw


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.upstream.api_base.startswith(("http://", "https://")):
        errors.append(f"upstream.api_base must be an http(s) URL, got '{config.upstream.api_base}'")

    if not config.upstream.api_keys and not config.upstream.models:
        errors.append("At least one upstream API key (upstream.api_keys or upstream.models) is required")

    if config.upstream.timeout <= 0 or config.upstream.connect_timeout <= 0:
        errors.append("upstream timeouts must be > 0")

    pacing = config.pacing
    if pacing.min_delay < 0 or pacing.min_delay > pacing.max_delay:
        errors.append(
            f"pacing.min_delay ({pacing.min_delay}) must be >= 0 and <= "
            f"pacing.max_delay ({pacing.max_delay})"
        )
    delays = [delay for _, delay in pacing.steps]
    if any(later < earlier for earlier, later in zip(delays, delays[1:])):
        errors.append("pacing.steps delays must not increase as the backlog threshold grows")

    if not 0 < config.server.port < 65536:
        errors.append(f"server.port out of range: {config.server.port}")

    if config.logging.level not in _LOG_LEVELS:
        errors.append(f"logging.level must be one of {sorted(_LOG_LEVELS)}")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    env: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover.

    Environment variables are applied on top of file values.  Passing
    ``config_dict`` skips the environment unless *env* is given explicitly.
    """
    if config_dict is not None:
        return _build_config(_apply_env(config_dict, env or {}))

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    env = os.environ if env is None else env

    if path is None:
        return _build_config(_apply_env({}, env))

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(_apply_env(raw, env))

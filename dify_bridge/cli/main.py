"""CLI: dify-bridge serve, config validate, codec encode/decode."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import load_config, validate_config
from ..core import conversation_codec

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class _SuppressCancelled(logging.Filter):
    """Drop CancelledError tracebacks that uvicorn logs for SSE streams on shutdown."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is asyncio.CancelledError:
                return False
        return True


def _load_or_exit(config_path: str | None):
    try:
        return load_config(config_path)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Run the gateway under uvicorn."""
    import uvicorn

    from ..proxy import create_app

    config = _load_or_exit(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(level=config.logging.level, format=LOG_FORMAT)
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    app = create_app(config)
    print(
        f"dify-bridge on {config.server.host}:{config.server.port} -> "
        f"{config.upstream.api_base} (memory: {config.conversation.memory_mode.value})"
    )
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_config_validate(args):
    """Validate config file."""
    config = _load_or_exit(args.config)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Upstream: {config.upstream.api_base}")
        print(f"  App keys: {len(config.upstream.api_keys)}")
        if config.upstream.models:
            print(f"  Static models: {', '.join(sorted(config.upstream.models))}")
        print(f"  Memory mode: {config.conversation.memory_mode.value}")
        print(f"  Pacing: {'on' if config.pacing.enabled else 'off'}")
        print(f"  Listen: {config.server.host}:{config.server.port}")


def cmd_codec_encode(args):
    """Print the invisible token for a conversation id."""
    token = conversation_codec.encode(args.conversation_id)
    if args.show:
        print(f"[{token}] ({len(token)} symbols)")
    else:
        sys.stdout.write(token)
        sys.stdout.flush()


def cmd_codec_decode(args):
    """Read text from stdin and print the conversation id it carries."""
    text = sys.stdin.read()
    conversation_id = conversation_codec.decode(text.rstrip("\r\n"))
    if not conversation_id:
        print("No conversation id found", file=sys.stderr)
        sys.exit(1)
    print(conversation_id)


def main():
    parser = argparse.ArgumentParser(
        prog="dify-bridge",
        description="OpenAI chat-completions gateway for Dify apps",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve_parser.add_argument("--host", default=None, help="Bind address (overrides config)")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Port (overrides config)")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    # codec
    codec_parser = subparsers.add_parser("codec", help="Conversation token tools")
    codec_sub = codec_parser.add_subparsers(dest="codec_command")
    encode_parser = codec_sub.add_parser("encode", help="Encode a conversation id")
    encode_parser.add_argument("conversation_id", help="Upstream conversation id")
    encode_parser.add_argument(
        "--show", action="store_true",
        help="Bracket the token and print its length",
    )
    codec_sub.add_parser("decode", help="Decode a conversation id from stdin")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: dify-bridge config validate")
            sys.exit(1)
    elif args.command == "codec":
        if args.codec_command == "encode":
            cmd_codec_encode(args)
        elif args.codec_command == "decode":
            cmd_codec_decode(args)
        else:
            print("Usage: dify-bridge codec {encode,decode}")
            sys.exit(1)


if __name__ == "__main__":
    main()

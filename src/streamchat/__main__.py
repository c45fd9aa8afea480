"""CLI entry point for streamchat."""

from __future__ import annotations

import argparse
import sys

import uvicorn

from streamchat.app import create_app
from streamchat.config import load_config
from streamchat.log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="streamchat",
        description="Streaming conversation server with cancellable LLM requests",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    start_parser = subparsers.add_parser("start", help="Start the HTTP server")
    start_parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    start_parser.add_argument("-e", "--env", default=".env", help="Path to .env file")
    start_parser.add_argument("--host", help="Override server.host")
    start_parser.add_argument("--port", type=int, help="Override server.port")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    check_parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    check_parser.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"
        args.host = None
        args.port = None

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "start":
        _run(args.config, args.env, args.host, args.port)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
        print(f"Configuration valid: {config_path}")
        print(f"  Server: {config.server.host}:{config.server.port}")
        print(f"  Backend: {config.provider.backend} ({config.provider.model})")
        if config.provider.backend == "gateway":
            print(f"  Gateway: {config.gateway.base_url}")
        tools = config.provider.tools
        print(f"  Tools: {', '.join(tools) if tools else '(none)'}")
        print(f"  Storage: {config.storage.db_path}")
        stream = config.stream
        print(
            f"  Stream: timeout={stream.request_timeout}s heartbeat={stream.heartbeat_interval}s "
            f"buffer={stream.replay_buffer_size} retention={stream.retention_seconds}s"
        )
        if config.provider.backend == "anthropic" and config.anthropic is None:
            print("  Warning: backend is 'anthropic' but no 'anthropic' section is configured", file=sys.stderr)
            sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _run(config_path: str, env_path: str, host: str | None, port: int | None) -> None:
    """Load config and serve the application until interrupted."""
    try:
        config = load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.log_level, json_output=config.log_json)

    try:
        app = create_app(config)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
        timeout_graceful_shutdown=15,
    )


if __name__ == "__main__":
    main()

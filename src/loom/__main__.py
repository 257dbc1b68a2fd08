"""Loom CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from loom.config import DEFAULT_CONFIG_FILE, load_config

# ── Default template for `loom init` ─────────────────────────────────────────

_DEFAULT_CONFIG = """\
# loom.yaml — Loom configuration
# Secrets are read from the environment variables named below (or a .env file).

server:
  host: 0.0.0.0
  port: 3324

linear:
  access_token_env: LINEAR_ACCESS_TOKEN
  webhook_secret_env: LINEAR_WEBHOOK_SECRET

generation:
  api_key_env: V0_API_KEY
  response_mode: async
  models:
    low: v0-1.5-sm
    medium: v0-1.5-md
    high: v0-1.5-lg

deployment:
  api_key_env: V0_API_KEY

store:
  backend: sqlite
  db_path: .loom-data/sessions.db

webhook:
  rate_limit_max: 60
  max_timestamp_skew: 60
"""


def _init_project(root: Path) -> None:
    """Write a default loom.yaml."""
    config_path = root / DEFAULT_CONFIG_FILE
    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_path.write_text(_DEFAULT_CONFIG)

    print(f"Initialized Loom config at {config_path}")
    print()
    print("Next steps:")
    print("  1. Set LINEAR_ACCESS_TOKEN, LINEAR_WEBHOOK_SECRET and V0_API_KEY (or use a .env file)")
    print("  2. Run: loom serve")
    print("  3. Point your Linear agent's webhook at https://<host>/webhook/linear")


async def _dump_sessions(db_path: str) -> list[dict]:
    from loom.session_store import SQLiteSessionStore

    store = SQLiteSessionStore(db_path)
    await store.initialize()
    try:
        return [s.model_dump(mode="json") for s in await store.list_all()]
    finally:
        await store.close()


def _list_sessions(config_path: Path | None) -> None:
    config = load_config(config_path)
    if not Path(config.store.db_path).exists():
        print(f"Error: session database not found at {config.store.db_path}", file=sys.stderr)
        sys.exit(1)
    sessions = asyncio.run(_dump_sessions(config.store.db_path))
    print(json.dumps(sessions, indent=2))


def main():
    parser = argparse.ArgumentParser(
        prog="loom",
        description="Loom — Linear agent that drives v0 UI generation",
    )

    subparsers = parser.add_subparsers(dest="command")

    # loom init
    init_parser = subparsers.add_parser("init", help="Write a default loom.yaml")
    init_parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Directory to write loom.yaml into (default: current directory)",
    )

    # loom serve
    serve_parser = subparsers.add_parser("serve", help="Start the Loom webhook server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to loom.yaml (default: ./loom.yaml if present)",
    )
    serve_parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    serve_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: from config)"
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # loom sessions
    sessions_parser = subparsers.add_parser("sessions", help="Print stored sessions as JSON")
    sessions_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to loom.yaml (default: ./loom.yaml if present)",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    load_dotenv()

    if args.command == "init":
        _init_project(args.root)
        return

    if args.command == "sessions":
        _list_sessions(args.config)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'loom init' to create one, or omit --config", file=sys.stderr)
        sys.exit(1)

    # Create and run app
    import uvicorn

    from loom.server import create_app

    app = create_app(config=config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()

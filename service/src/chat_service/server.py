"""Development chat service with a small CLI."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import load_service_config_from_env
from .ws_transport import create_app


def _run_serve(args: argparse.Namespace) -> int:
    config = load_service_config_from_env()
    app = create_app(config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Chat service")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())

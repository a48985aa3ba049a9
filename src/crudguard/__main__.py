#!/usr/bin/env python3
"""
Command-line entry point: ``crudguard`` or ``python -m crudguard``.
"""

import argparse
import sys
from pathlib import Path

from aiohttp import web
from loguru import logger
from pydantic import ValidationError

from .api import create_app
from .config import Settings
from .log import setup_logging


def main():
    parser = argparse.ArgumentParser(description="crudguard HTTP service")
    parser.add_argument("--host", help="Bind address (overrides CRUDGUARD_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (overrides CRUDGUARD_PORT)")
    parser.add_argument("--db", type=Path, help="SQLite database file (overrides CRUDGUARD_DB_PATH)")
    parser.add_argument("--log-level", help="Log level (overrides CRUDGUARD_LOG_LEVEL)")
    parser.add_argument("--text-logs", action="store_true", help="Human-readable logs instead of JSON")
    args = parser.parse_args()

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.db:
        overrides["db_path"] = args.db
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.text_logs:
        overrides["log_json"] = False

    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings.log_level, settings.log_json, settings.service_name)

    logger.info(f"Starting crudguard on {settings.host}:{settings.port}")
    app = create_app(settings)
    web.run_app(app, host=settings.host, port=settings.port, print=None, handler_cancellation=True)
    logger.info("Server stopped")


if __name__ == "__main__":
    main()

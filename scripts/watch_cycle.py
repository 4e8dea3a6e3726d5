#!/usr/bin/env python3
"""
Run docsync maintenance from the command line.

    python scripts/watch_cycle.py run [--root PATH] [--database-url URL]
    python scripts/watch_cycle.py backfill [--database-url URL]

``run`` executes one scan cycle against the configured store and prints its
summary as JSON; ``backfill`` fills missing fingerprints from stored text.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.database import DatabaseConfig
from config.settings import AppConfig
from observability.logging import setup_logging
from server.file_handlers import backfill_fingerprints
from server.watcher import Watcher, WatcherOptions
from services.shared.incremental import IncrementalProcessor
from services.shared.repository import FilesRepository

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="docsync change-detection maintenance")
    parser.add_argument("--database-url", help="SQLAlchemy URL (defaults to DATABASE_URL / SQLITE_PATH)")
    parser.add_argument("--log-level", default=None, help="Log level (defaults to LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute one scan cycle")
    run_parser.add_argument("--root", help="Root that source locators resolve against (defaults to WATCH_ROOT_PATH)")

    subparsers.add_parser("backfill", help="Fill missing fingerprints from stored text")
    return parser


async def run_cycle(config: AppConfig) -> dict:
    repository = FilesRepository.from_config(config.database)
    await repository.initialize()
    try:
        watcher = Watcher(repository, IncrementalProcessor(repository))
        summary = await watcher.run_once(WatcherOptions.from_config(config.watch))
        return summary.to_dict() if summary else {"skipped": True}
    finally:
        await repository.close()


async def run_backfill(config: AppConfig) -> dict:
    repository = FilesRepository.from_config(config.database)
    await repository.initialize()
    try:
        return {"updated": await backfill_fingerprints(repository)}
    finally:
        await repository.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = AppConfig.from_env()
    if args.database_url:
        config.database = DatabaseConfig(url=args.database_url)
    if getattr(args, "root", None):
        config.watch.root_path = args.root

    if args.log_level:
        config.logging.level = args.log_level
    setup_logging(config.logging, service_name=config.service_name)

    try:
        if args.command == "run":
            result = asyncio.run(run_cycle(config))
        else:
            result = asyncio.run(run_backfill(config))
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

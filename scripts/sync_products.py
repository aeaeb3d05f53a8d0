#!/usr/bin/env python3
"""CLI script to run Stripe sync queue actions without the API."""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import orjson
import structlog

from catalog_sync.infrastructure.database.connection import dispose_engine, get_db_session
from catalog_sync.infrastructure.redis import close_redis, get_cache
from catalog_sync.logging_config import configure_logging
from catalog_sync.services.queue_processor import QueueProcessor
from catalog_sync.services.stripe_client import get_provider

logger = structlog.get_logger()

COMMANDS = ("process", "queue-all", "stats", "cleanup", "requeue-failed", "sync")


async def run_command(args: argparse.Namespace) -> dict:
    async with get_db_session() as session:
        processor = QueueProcessor(session, get_provider(), await get_cache())
        if args.command == "process":
            return await processor.process_queue(args.batch_size)
        if args.command == "queue-all":
            return await processor.queue.enqueue_all_products(
                dry_run=args.dry_run, force_resync=args.force_resync
            )
        if args.command == "stats":
            return await processor.queue.queue_stats()
        if args.command == "cleanup":
            return await processor.queue.cleanup()
        if args.command == "requeue-failed":
            return {"requeued": await processor.queue.requeue_failed(args.product_id)}
        if args.product_id is None:
            raise SystemExit("--product-id is required for sync")
        return await processor.sync_product(args.product_id)


async def main(args: argparse.Namespace) -> None:
    logger.info("Running stripe sync command", command=args.command)
    try:
        result = await run_command(args)
    finally:
        await close_redis()
        await dispose_engine()
    print(orjson.dumps(result, option=orjson.OPT_INDENT_2, default=str).decode())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run Stripe sync queue actions")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--product-id", type=uuid.UUID, default=None)
    parser.add_argument("--dry-run", action="store_true", help="queue-all: report only")
    parser.add_argument("--force-resync", action="store_true", help="queue-all: include synced products")
    configure_logging()
    asyncio.run(main(parser.parse_args()))

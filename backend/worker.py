#!/usr/bin/env python3
"""
Catalog Reconciliation Worker

Runs catalog reconciliation without the web app.

Usage (scheduled, every reconciliation_interval_hours):
    python worker.py

Usage (single pass, e.g. from cron):
    python worker.py --once
"""

import argparse
import asyncio
import json
import logging
import sys

from config import get_environment, get_settings, set_log_level
from database import init_db
from log_utils import configure_logging
from task_engine import TaskEngine
import tasks  # noqa: F401 - registers scheduled tasks
from tasks.catalog_reconciliation import CatalogReconciliationTask

logger = logging.getLogger("worker")


async def run_once() -> int:
    """Run a single reconciliation pass. Returns a process exit code."""
    result = await TaskEngine().run_task(CatalogReconciliationTask.task_id)
    logger.info(f"[WORKER] {result.message}")
    if result.details:
        logger.debug(f"[WORKER] Run report: {json.dumps(result.details)}")
    return 0 if result.success else 1


async def run_forever() -> None:
    """Run the task engine until interrupted."""
    engine = TaskEngine()
    await engine.start()
    try:
        await asyncio.Event().wait()
    finally:
        await engine.stop()


def main():
    parser = argparse.ArgumentParser(
        description="Reconcile the anime catalog from the tracked channels.",
        epilog="Without --once the worker runs on startup and then on its interval.",
    )
    parser.add_argument("--once", action="store_true", help="Run one pass and exit")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--log-level", help="Override the configured log level")
    args = parser.parse_args()

    configure_logging(args.log_level or get_environment().log_level)
    settings = get_settings()
    set_log_level(args.log_level or settings.backend_log_level)

    if not settings.is_configured():
        logger.error("[WORKER] No feed API key configured (set YOUTUBE_API_KEY)")
        sys.exit(1)

    init_db(args.database_url)

    if args.once:
        sys.exit(asyncio.run(run_once()))

    try:
        asyncio.run(run_forever())
    except KeyboardInterrupt:
        logger.info("[WORKER] Stopped")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Close violations left pending without an appeal.

Usage:
    python scripts/auto_close_violations.py              # close, default threshold
    python scripts/auto_close_violations.py --days 14
    python scripts/auto_close_violations.py --dry-run
"""
import argparse
import asyncio
import logging

from parkwatch.core.config import configure_logging, settings
from parkwatch.core.database import SessionLocal, engine
from parkwatch.services.lifecycle import LifecycleEngine

logger = logging.getLogger("auto_close_violations")


async def main(days: int, dry_run: bool) -> int:
    async with SessionLocal() as db:
        if dry_run:
            stale = await LifecycleEngine.find_stale(db, days)
            for violation in stale:
                logger.info("Would close violation %s (reported %s)", violation.id, violation.created_at)
            logger.info("%d violation(s) pending for more than %d days", len(stale), days)
            return len(stale)
        closed = await LifecycleEngine.auto_close_stale(db, days)
        logger.info("Closed %d violation(s): %s", len(closed), closed)
        return len(closed)


async def run(days: int, dry_run: bool) -> int:
    try:
        return await main(days, dry_run)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Auto-close stale pending violations")
    parser.add_argument("--days", type=int, default=settings.AUTO_CLOSE_DAYS,
                        help="close violations pending for longer than this many days")
    parser.add_argument("--dry-run", action="store_true", help="only report what would be closed")
    args = parser.parse_args()

    configure_logging()
    asyncio.run(run(args.days, args.dry_run))

#!/usr/bin/env python3
"""
Ledger Retention Purge

Deletes token ledger entries older than the retention window. This is the
only path that removes ledger rows; balances are not touched.

Usage:
    # Purge with the configured retention (LEDGER_RETENTION_DAYS)
    python3 purge_ledger.py

    # Explicit window
    python3 purge_ledger.py --older-than-days 730

    # Count only
    python3 purge_ledger.py --dry-run
"""

import argparse
import asyncio
import sys
from datetime import timedelta

from structlog import get_logger

from tokengate.config import settings
from tokengate.db.models import utc_now
from tokengate.db.session import close_engine, get_session_factory, transaction
from tokengate.observability.logging import setup_logging
from tokengate.services.token_ledger import TokenLedger

logger = get_logger(__name__)


async def purge(older_than_days: int, dry_run: bool = False) -> int:
    """
    Delete (or count) ledger entries older than the window.

    Returns: Number of entries deleted, or that would be deleted
    """
    cutoff = utc_now() - timedelta(days=older_than_days)
    factory = get_session_factory()

    try:
        async with transaction(factory) as session:
            ledger = TokenLedger(session)
            if dry_run:
                count = await ledger.count_old_entries(cutoff)
            else:
                count = await ledger.delete_old_entries(cutoff)
    finally:
        await close_engine()

    logger.info(
        "ledger_purge_completed",
        cutoff=cutoff.isoformat(),
        older_than_days=older_than_days,
        dry_run=dry_run,
        entries=count,
    )
    return count


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Purge token ledger entries past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--older-than-days",
        type=int,
        default=settings.ledger_retention_days,
        help=f"Retention window in days (default: {settings.ledger_retention_days})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Count entries, delete nothing")
    args = parser.parse_args()

    if args.older_than_days < 1:
        parser.error("--older-than-days must be at least 1")

    setup_logging()
    asyncio.run(purge(args.older_than_days, dry_run=args.dry_run))
    return 0


if __name__ == "__main__":
    sys.exit(main())

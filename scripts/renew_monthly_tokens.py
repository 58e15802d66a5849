#!/usr/bin/env python3
"""
Monthly Token Renewal

Credits each eligible user with their tier's monthly allocation. Intended to
run daily from cron (schedule: monthly_renewal.CRON_EXPRESSION); users not
yet due are skipped.

Usage:
    python3 renew_monthly_tokens.py
    python3 renew_monthly_tokens.py --tier Professional --limit 500
    python3 renew_monthly_tokens.py --dry-run
    python3 renew_monthly_tokens.py --continue-on-error
"""

import argparse
import asyncio
import sys

from structlog import get_logger

from tokengate.db.session import close_engine, get_session_factory
from tokengate.models.api import SubscriptionTier
from tokengate.models.domain import BatchRenewalResult
from tokengate.observability.logging import setup_logging
from tokengate.observability.metrics import PrometheusTokenMetrics
from tokengate.services.monthly_renewal import MonthlyRenewalService
from tokengate.services.token_service import TokenService

logger = get_logger(__name__)


async def renew(
    tier: SubscriptionTier | None,
    limit: int | None,
    dry_run: bool,
    continue_on_error: bool,
) -> BatchRenewalResult:
    factory = get_session_factory()
    token_service = TokenService(factory, metrics_observers=[PrometheusTokenMetrics()])
    renewals = MonthlyRenewalService(factory, token_service)

    try:
        result = await renewals.renew_all_eligible(
            tier=tier,
            limit=limit,
            dry_run=dry_run,
            continue_on_error=continue_on_error,
        )
    finally:
        await close_engine()

    for user_id, error in result.errors:
        logger.error("monthly_renewal_failed", user_id=user_id, error=error)
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Renew monthly token allocations")
    parser.add_argument(
        "--tier",
        choices=[t.value for t in SubscriptionTier],
        help="Only renew users on this tier",
    )
    parser.add_argument("--limit", type=int, help="Maximum users to examine")
    parser.add_argument("--dry-run", action="store_true", help="Report renewals, change nothing")
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep going after a failed renewal",
    )
    args = parser.parse_args()

    setup_logging()
    result = asyncio.run(
        renew(
            SubscriptionTier(args.tier) if args.tier else None,
            args.limit,
            args.dry_run,
            args.continue_on_error,
        )
    )
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(main())

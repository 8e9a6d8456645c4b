#!/usr/bin/env python3
"""
Reset subscriptions and purchases stuck in pending past the timeout, and
re-check active subscriptions whose billing date has passed.

Runs the same rule clients apply opportunistically, so stale records are
cleared even when no client ever revisits them. Safe to run repeatedly:
already-reset records are skipped and conditional writes keep concurrent
sweeps from double-processing.

Usage:
    python tools/sweep_stale_pending.py
    python tools/sweep_stale_pending.py --dry-run
    python tools/sweep_stale_pending.py --timeout-minutes 10

Required environment variables:
    API_BASE_URL - Backend REST API base URL
    API_SERVICE_TOKEN - Service token allowed to read and update all records
"""
import argparse
import asyncio
import sys
from datetime import timedelta
from typing import List, Optional

import httpx
import structlog

from edu_billing.api.main import configure_logging
from edu_billing.api.services.payments import PaymentPageClient
from edu_billing.api.services.reconciler import PendingPaymentReconciler, ReconcileOutcome, SweepReport
from edu_billing.api.services.repository import BillingRepository
from edu_billing.core.api_client import ApiClientManager
from edu_billing.core.exceptions import EduBillingError

logger = structlog.get_logger(__name__)


async def run_sweep(
    dry_run: bool = False,
    timeout_minutes: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> SweepReport:
    """Fetch every pending record and overdue active subscription, then reconcile them."""
    timeout = timedelta(minutes=timeout_minutes) if timeout_minutes else None
    
    async with ApiClientManager(use_service_role=True, transport=transport) as client:
        repository = BillingRepository(client)
        reconciler = PendingPaymentReconciler(repository, timeout=timeout, gateway=PaymentPageClient(client))
        
        subscriptions = await repository.list_pending_subscriptions()
        purchases = await repository.list_pending_purchases()
        active = await repository.list_active_subscriptions()
        logger.info(
            "Loaded pending records",
            subscriptions=len(subscriptions),
            purchases=len(purchases),
            active=len(active)
        )
        
        return await reconciler.sweep(subscriptions, purchases, dry_run=dry_run, renewals=active)


def print_report(report: SweepReport, dry_run: bool) -> None:
    print("\n" + "=" * 50)
    print("STALE PENDING SWEEP SUMMARY")
    print("=" * 50)
    if dry_run:
        print("DRY RUN - no records were changed")
        print(f"Would reset: {report.count(ReconcileOutcome.WOULD_RESET)}")
        print(f"Renewals to check: {report.count(ReconcileOutcome.WOULD_CHECK)}")
    else:
        print(f"Subscriptions reset to free plan: {report.count(ReconcileOutcome.RESET)}")
        print(f"Stale upgrades expired: {report.count(ReconcileOutcome.EXPIRED)}")
        print(f"Purchases marked failed: {report.count(ReconcileOutcome.FAILED)}")
        print(f"Still within timeout: {report.count(ReconcileOutcome.STILL_PENDING)}")
        print(f"Already reconciled elsewhere: {report.count(ReconcileOutcome.CONVERGED)}")
        print(f"Renewals extended: {report.count(ReconcileOutcome.RENEWED)}")
        print(f"Lapsed subscriptions expired: {report.count(ReconcileOutcome.LAPSED)}")
        print(f"Renewals not verified: {report.count(ReconcileOutcome.UNVERIFIED)}")
        print(f"Skipped after network errors: {report.count(ReconcileOutcome.ASSUMED_PENDING)}")
    
    for result in report.results:
        print(f"  {result.record_type} {result.record_id}: {result.outcome.value} ({result.status})")


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to handle CLI arguments and run the sweep."""
    parser = argparse.ArgumentParser(
        description="Reset pending subscriptions and purchases that outlived the payment timeout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tools/sweep_stale_pending.py
  python tools/sweep_stale_pending.py --dry-run
  python tools/sweep_stale_pending.py --timeout-minutes 10
        """
    )
    
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='List stale records without changing them'
    )
    
    parser.add_argument(
        '--timeout-minutes',
        type=int,
        default=None,
        help='Override the pending timeout (default: PENDING_PAYMENT_TIMEOUT_MINUTES)'
    )
    
    args = parser.parse_args(argv)
    
    configure_logging(structlog.dev.ConsoleRenderer())
    
    try:
        report = asyncio.run(run_sweep(dry_run=args.dry_run, timeout_minutes=args.timeout_minutes))
    except EduBillingError as e:
        logger.error("Sweep failed", error=e.message)
        return 1
    
    print_report(report, args.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())

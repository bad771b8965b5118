#!/usr/bin/env python3
"""
Scheduler pass

Drains due follow-up jobs from the outbox and sends due recovery campaign
messages. Meant to be run from cron (every minute is plenty), or left
running with --loop.

Usage:
    python run_scheduler.py
    python run_scheduler.py --limit 50 --reconcile
    python run_scheduler.py --loop 60
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import configure_logging
from services.bulk_service import reconcile_paid_sales
from services.context import ServiceContext, build_default_context
from services.outbox_service import process_pending_jobs
from services.recovery_service import process_due_campaigns

logger = logging.getLogger("scripts.run_scheduler")


def run_once(ctx: ServiceContext, limit: int | None, reconcile: bool) -> int:
    """One scheduler pass. Returns the number of items that failed."""

    batch = process_pending_jobs(ctx, limit=limit)
    recovery = process_due_campaigns(ctx, limit=limit)
    recovery_failed = sum(1 for r in recovery if not r.get("success"))

    print("=" * 60)
    print("SCHEDULER PASS")
    print("=" * 60)
    print(f"Outbox jobs claimed:      {batch.claimed}")
    print(f"  completed:              {batch.completed}")
    print(f"  retry scheduled:        {batch.retried}")
    print(f"  dead letter:            {batch.dead_lettered}")
    print(f"Recovery campaigns run:   {len(recovery)}")
    print(f"  failed:                 {recovery_failed}")

    failed = batch.dead_lettered + recovery_failed
    if reconcile:
        result = reconcile_paid_sales(ctx, limit=limit)
        print(f"Paid sales reconciled:    {result.succeeded}/{result.processed}")
        failed += result.failed
    print("=" * 60)
    return failed


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Run the outbox consumer and recovery campaign scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single pass with the configured batch size (OUTBOX_BATCH_SIZE)
  python run_scheduler.py

  # Also re-drive paid sales that still have no issued policy
  python run_scheduler.py --reconcile

  # Keep running, one pass every 60 seconds
  python run_scheduler.py --loop 60
        """
    )

    parser.add_argument(
        "--limit",
        "-l",
        type=int,
        default=None,
        help="Maximum jobs and campaigns handled per pass"
    )

    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Re-drive issuance for paid sales lacking an issued policy"
    )

    parser.add_argument(
        "--loop",
        type=int,
        metavar="SECONDS",
        default=None,
        help="Repeat the pass every SECONDS instead of exiting"
    )

    parser.add_argument(
        "--tenant",
        default=None,
        help="Tenant id recorded on execution logs"
    )

    args = parser.parse_args()
    configure_logging()

    try:
        ctx = build_default_context(tenant_id=args.tenant)

        if args.loop is None:
            failed = run_once(ctx, args.limit, args.reconcile)
            return 1 if failed else 0

        while True:
            run_once(ctx, args.limit, args.reconcile)
            time.sleep(args.loop)

    except KeyboardInterrupt:
        print("\n\nScheduler interrupted by user")
        return 130

    except Exception as e:
        logger.exception("Scheduler pass failed")
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

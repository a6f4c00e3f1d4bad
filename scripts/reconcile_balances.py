#!/usr/bin/env python3
"""
Recompute stored credit balances from the transaction ledger.

Run from cron as the batch safety net, or with --user-id for a support ticket.
Exit code 0 = nothing left drifted, 1 = at least one user could not be fixed.
"""
import argparse
import logging
import sys
import uuid

from fusion_ledger.db import SessionLocal
from fusion_ledger.logging_config import configure_logging
from fusion_ledger.services.reconciliation import BalanceReconciler

logger = logging.getLogger("reconcile_balances")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--user-id", type=uuid.UUID, help="reconcile a single user instead of everyone")
    parser.add_argument("--dry-run", action="store_true", help="report drift without writing")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    db = SessionLocal()
    try:
        reconciler = BalanceReconciler(db)
        if args.dry_run:
            drift = reconciler.find_drift(args.user_id)
            for item in drift:
                logger.info(f"User {item.user_id}: stored {item.old_balance}, ledger {item.new_balance}")
            logger.info(f"{len(drift)} drifted balances found (dry run)")
            return 0

        if args.user_id:
            correction = reconciler.reconcile_user(args.user_id)
            logger.info("No drift" if correction is None else f"Corrected {correction.old_balance} -> {correction.new_balance}")
            return 0

        run = reconciler.reconcile_all()
        return 1 if run.failed_user_ids else 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())

import argparse
import json
import sys

from loguru import logger

from ledger.db import init_db
from ledger.services.reconciliation_service import ReconciliationService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Audit user balances against the token transaction log"
    )
    parser.add_argument(
        "--user",
        action="append",
        default=None,
        metavar="USER_ID",
        help="Only audit this user (repeatable). Defaults to every user with a balance row.",
    )
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Rewrite inconsistent balances with the figures recomputed from the ledger.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON instead of log lines.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    init_db()

    service = ReconciliationService()
    report = service.reconcile_users(args.user, fix=args.fix)

    if args.json:
        payload = [
            {
                "userId": audit.user_id,
                "consistent": audit.is_consistent,
                "storedAvailable": audit.stored_available,
                "storedCommitted": audit.stored_committed,
                "computedAvailable": audit.computed_available,
                "computedCommitted": audit.computed_committed,
                "chainBreaks": audit.chain_breaks,
                "issues": audit.issues,
                "fixed": audit.user_id in report.fixed,
            }
            for audit in report.audits
        ]
        print(json.dumps(payload, indent=2))
    else:
        for audit in report.inconsistent:
            logger.warning(
                "{}: stored available={} committed={}, ledger available={} committed={}",
                audit.user_id,
                audit.stored_available,
                audit.stored_committed,
                audit.computed_available,
                audit.computed_committed,
            )
        logger.info(
            "Audited {} balances, {} inconsistent, {} fixed",
            len(report.audits),
            len(report.inconsistent),
            len(report.fixed),
        )

    unresolved = [audit for audit in report.inconsistent if audit.user_id not in report.fixed]
    return 1 if unresolved else 0


if __name__ == "__main__":
    sys.exit(main())

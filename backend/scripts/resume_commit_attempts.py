import argparse
from datetime import timedelta

from loguru import logger

from ledger.core.config import get_settings
from ledger.db import init_db
from ledger.models import CommitAttemptState
from ledger.services.commitment_service import CommitmentService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Drive unfinished token commit attempts to a terminal state"
    )
    parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Only resume attempts untouched for this long (defaults to COMMIT_ATTEMPT_STALE_SECONDS)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    older_than = timedelta(
        seconds=args.older_than
        if args.older_than is not None
        else settings.commit_attempt_stale_seconds
    )
    resumed = CommitmentService().resume_pending_attempts(older_than)

    for attempt in resumed:
        if attempt.state == CommitAttemptState.COMPENSATION_FAILED.value:
            logger.error(
                "Commit {} for {} needs manual attention: {}",
                attempt.commitment_id,
                attempt.user_id,
                attempt.error_message,
            )
        else:
            logger.info("Commit {} settled as {}", attempt.commitment_id, attempt.state)

    logger.info("Resumed {} commit attempts", len(resumed))


if __name__ == "__main__":
    main()

"""Compensation of commitments: single refunds and market-wide batches."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ledger.core.config import Settings, get_settings
from ledger.db import run_in_transaction
from ledger.domain import (
    RollbackEligibility,
    RollbackRequest,
    RollbackResult,
    RollbackType,
    TransactionSnapshot,
)
from ledger.errors import LedgerError, NothingToRollback, RollbackIneligible
from ledger.models import (
    CommitmentStatus,
    PredictionCommitment,
    TokenTransaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from ledger.repositories import BalanceRepository, CommitmentRepository, MarketRepository
from ledger.repositories.types import transaction_snapshot

from .balance_service import BalanceService


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _same_commit(commitment: PredictionCommitment, transaction: TokenTransaction) -> bool:
    if commitment.transaction_id is not None:
        return commitment.transaction_id == transaction.transaction_id
    return transaction.related_id == commitment.commitment_id


class RollbackService:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        balance_service: BalanceService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._balances = balance_service or BalanceService(session_factory)
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Eligibility

    def can_rollback(self, commitment_id: str) -> RollbackEligibility:
        def work(session: Session) -> RollbackEligibility:
            commitment = CommitmentRepository(session).get_commitment(commitment_id)
            if commitment is None:
                return RollbackEligibility(False, "Commitment not found")
            return self._eligibility(commitment)

        return run_in_transaction(
            work, session_factory=self._session_factory, label="rollback eligibility check"
        )

    def _eligibility(self, commitment: PredictionCommitment) -> RollbackEligibility:
        if commitment.status != CommitmentStatus.ACTIVE.value:
            return RollbackEligibility(False, f"Commitment is {commitment.status}")
        window = timedelta(hours=self._settings.rollback_window_hours)
        age = self._clock() - _as_utc(commitment.committed_at)
        if age > window:
            return RollbackEligibility(
                False,
                f"Commitment is older than {self._settings.rollback_window_hours:g} hours",
            )
        return RollbackEligibility(True)

    # ------------------------------------------------------------------
    # Rollbacks

    def rollback_commitment(self, request: RollbackRequest) -> RollbackResult:
        rollback_type = RollbackType(request.rollback_type)

        def work(session: Session) -> RollbackResult:
            balance_repo = BalanceRepository(session)
            commitment_repo = CommitmentRepository(session)

            commitment = None
            if request.commitment_id:
                commitment = commitment_repo.get_commitment(request.commitment_id)

            transaction = None
            if request.transaction_id is not None:
                transaction = balance_repo.get_transaction(request.transaction_id)
            elif commitment is not None and commitment.transaction_id is not None:
                transaction = balance_repo.get_transaction(commitment.transaction_id)
            elif commitment is not None:
                transaction = balance_repo.find_commit_transaction(commitment.commitment_id)

            if commitment is None and transaction is None:
                raise NothingToRollback(
                    commitmentId=request.commitment_id, transactionId=request.transaction_id
                )

            if transaction is not None:
                if transaction.type != TransactionType.COMMIT.value:
                    raise RollbackIneligible(
                        f"Only commit transactions can be rolled back, not {transaction.type}",
                        transactionId=transaction.transaction_id,
                    )
                if commitment is None and transaction.related_id:
                    commitment = commitment_repo.get_commitment(transaction.related_id)
                if commitment is not None and (
                    not _same_commit(commitment, transaction)
                    or request.commitment_id not in (None, commitment.commitment_id)
                ):
                    raise RollbackIneligible(
                        "Transaction does not belong to the commitment",
                        commitmentId=commitment.commitment_id,
                        transactionId=transaction.transaction_id,
                    )

            owner = commitment.user_id if commitment is not None else transaction.user_id
            if owner != request.user_id:
                raise RollbackIneligible(
                    "Commitment does not belong to the requesting user",
                    commitmentId=request.commitment_id,
                )
            if commitment is not None and commitment.status != CommitmentStatus.ACTIVE.value:
                raise RollbackIneligible(
                    f"Commitment is {commitment.status}", commitmentId=commitment.commitment_id
                )
            if transaction is not None and transaction.status != TransactionStatus.COMPLETED.value:
                raise RollbackIneligible(
                    "Original transaction was already rolled back",
                    transactionId=transaction.transaction_id,
                )
            if rollback_type is RollbackType.MANUAL_REFUND:
                if commitment is None:
                    raise RollbackIneligible("Manual refunds require a commitment")
                eligibility = self._eligibility(commitment)
                if not eligibility.can_rollback:
                    raise RollbackIneligible(
                        eligibility.reason, commitmentId=commitment.commitment_id
                    )

            amount = (
                commitment.tokens_committed if commitment is not None else abs(transaction.amount)
            )
            details = {
                "reason": request.reason,
                "rollbackType": rollback_type.value,
                "commitmentId": commitment.commitment_id if commitment is not None else None,
                "originalTransactionId": (
                    transaction.transaction_id if transaction is not None else None
                ),
            }
            related_id = (
                str(transaction.transaction_id)
                if transaction is not None
                else commitment.commitment_id
            )
            mutation = self._balances.mutate(
                session,
                request.user_id,
                amount,
                TransactionType.REFUND,
                related_id=related_id,
                metadata=details,
            )

            if transaction is not None:
                balance_repo.mark_rolled_back(
                    transaction,
                    rolledBackBy=mutation.transaction.transaction_id,
                    rollbackReason=request.reason,
                )
            if commitment is not None:
                self._release_commitment(session, commitment, rollback_type, request.reason)

            return RollbackResult(
                success=True,
                commitment_id=commitment.commitment_id if commitment is not None else None,
                transaction_id=transaction.transaction_id if transaction is not None else None,
                refund_transaction_id=mutation.transaction.transaction_id,
                rollback_amount=amount,
            )

        result = run_in_transaction(
            work, session_factory=self._session_factory, label="commitment rollback"
        )
        logger.info(
            "Rolled back {} tokens for {} (commitment={}, type={})",
            result.rollback_amount,
            request.user_id,
            result.commitment_id,
            rollback_type.value,
        )
        return result

    def _release_commitment(
        self,
        session: Session,
        commitment: PredictionCommitment,
        rollback_type: RollbackType,
        reason: str,
    ) -> None:
        commitment.status = CommitmentStatus.REFUNDED.value
        commitment.resolved_at = utcnow()
        details = dict(commitment.details or {})
        details.update({"refundReason": reason, "rollbackType": rollback_type.value})
        commitment.details = details
        session.flush()

        commitment_repo = CommitmentRepository(session)
        MarketRepository(session).release_stake(
            commitment.prediction_id,
            commitment.option_id,
            commitment.tokens_committed,
            option_participant_left=not commitment_repo.has_active_commitment(
                commitment.user_id, commitment.prediction_id, option_id=commitment.option_id
            ),
            market_participant_left=not commitment_repo.has_active_commitment(
                commitment.user_id, commitment.prediction_id
            ),
        )

    def rollback_multiple_commitments(
        self,
        prediction_id: str,
        reason: str,
        rollback_type: RollbackType = RollbackType.MARKET_CANCELLED,
    ) -> list[RollbackResult]:
        """Refund every active commitment of a market, one transaction each.

        A failing item is reported in its result and does not stop the batch.
        """

        def load(session: Session) -> list[tuple[str, str]]:
            records = CommitmentRepository(session).list_active_for_market(prediction_id)
            return [(record.commitment_id, record.user_id) for record in records]

        targets = run_in_transaction(
            load, session_factory=self._session_factory, label="batch rollback scan"
        )

        results: list[RollbackResult] = []
        for commitment_id, user_id in targets:
            request = RollbackRequest(
                user_id=user_id,
                reason=reason,
                rollback_type=rollback_type,
                commitment_id=commitment_id,
            )
            try:
                results.append(self.rollback_commitment(request))
            except LedgerError as exc:
                logger.warning(
                    "Rollback of commitment {} in market {} failed: {}",
                    commitment_id,
                    prediction_id,
                    exc.message,
                )
                results.append(
                    RollbackResult(
                        success=False,
                        commitment_id=commitment_id,
                        error=exc.message,
                        error_code=exc.error_code,
                    )
                )

        succeeded = sum(1 for result in results if result.success)
        logger.info(
            "Batch rollback for market {}: {} succeeded, {} failed",
            prediction_id,
            succeeded,
            len(results) - succeeded,
        )
        return results

    def get_rollback_history(self, user_id: str) -> list[TransactionSnapshot]:
        def work(session: Session) -> list[TransactionSnapshot]:
            records = BalanceRepository(session).list_transactions(
                user_id, types=[TransactionType.REFUND], newest_first=True
            )
            return [transaction_snapshot(record) for record in records]

        return run_in_transaction(
            work, session_factory=self._session_factory, label="rollback history read"
        )


__all__ = ["RollbackService"]

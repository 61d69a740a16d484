"""Commitment lifecycle: validated creation, saga compensation, and lazy reads."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from datetime import timedelta
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from loguru import logger
from sqlalchemy import Select
from sqlalchemy.orm import Session, sessionmaker

from ledger.core.config import Settings, get_settings
from ledger.db import SessionLocal, run_in_transaction
from ledger.domain import (
    CommitAttemptSnapshot,
    CommitmentSnapshot,
    CommitResult,
    RollbackRequest,
    RollbackType,
)
from ledger.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidOption,
    LedgerError,
    MarketInactive,
    MarketNotFound,
    TransactionFailed,
)
from ledger.models import (
    CommitAttemptState,
    CommitmentStatus,
    MarketStatus,
    PredictionCommitment,
    TransactionType,
    utcnow,
)
from ledger.repositories import BalanceRepository, CommitmentRepository, MarketRepository
from ledger.repositories.types import (
    balance_snapshot,
    commit_attempt_snapshot,
    commitment_snapshot,
)

from .balance_service import BalanceService
from .rollback_service import RollbackService

_ODDS_QUANTUM = Decimal("0.0001")


def implied_odds(market_total: int, option_total: int, stake: int) -> tuple[float, int]:
    """Return decimal odds after ``stake`` lands on the option, and the implied winnings."""

    odds = (Decimal(market_total + stake) / Decimal(option_total + stake)).quantize(
        _ODDS_QUANTUM, rounding=ROUND_HALF_UP
    )
    potential = int((odds * stake).to_integral_value(rounding=ROUND_FLOOR))
    return float(odds), potential


class CommitmentService:
    """Create commitments and keep the commit saga consistent.

    Every commit is recorded in ``commit_attempts`` before it runs, under a
    commitment id generated up front. When the commit reports a failure the
    saga checks whether the commitment landed anyway and rolls it back if so.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        balance_service: BalanceService | None = None,
        rollback_service: RollbackService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._balances = balance_service or BalanceService(session_factory)
        self._rollbacks = rollback_service or RollbackService(
            session_factory, balance_service=self._balances, settings=self._settings
        )

    # ------------------------------------------------------------------
    # Creation

    def create_commitment(
        self,
        user_id: str,
        prediction_id: str,
        option_id: str,
        tokens_to_commit: int,
    ) -> CommitResult:
        self._validate_amount(tokens_to_commit)
        self._precheck(user_id, prediction_id, option_id, tokens_to_commit)

        commitment_id = uuid.uuid4().hex
        self._record_attempt(commitment_id, user_id, prediction_id, option_id, tokens_to_commit)

        def work(session: Session) -> CommitResult:
            return self._commit(
                session, commitment_id, user_id, prediction_id, option_id, tokens_to_commit
            )

        try:
            result = run_in_transaction(work, session_factory=self._session_factory, label="commit")
        except LedgerError as exc:
            self._compensate(commitment_id, exc.message)
            raise

        logger.info(
            "User {} committed {} tokens to {}/{} (commitment={})",
            user_id,
            tokens_to_commit,
            prediction_id,
            option_id,
            commitment_id,
        )
        return result

    def _validate_amount(self, tokens: int) -> None:
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
            raise InvalidAmount("Tokens to commit must be a positive integer", tokens=tokens)
        if tokens > self._settings.max_commit_tokens:
            raise InvalidAmount(
                f"Cannot commit more than {self._settings.max_commit_tokens} tokens at once",
                tokens=tokens,
            )

    def _check_market(self, session: Session, prediction_id: str, option_id: str):
        market_repo = MarketRepository(session)
        market = market_repo.get_market(prediction_id)
        if market is None:
            raise MarketNotFound(prediction_id)
        if market.status != MarketStatus.ACTIVE.value:
            raise MarketInactive(prediction_id, market.status)
        option = market_repo.get_option(prediction_id, option_id)
        if option is None:
            raise InvalidOption(prediction_id, option_id)
        return market, option

    def _precheck(self, user_id: str, prediction_id: str, option_id: str, tokens: int) -> None:
        def work(session: Session) -> None:
            self._check_market(session, prediction_id, option_id)
            record = BalanceRepository(session).get_balance(user_id)
            available = record.available_tokens if record is not None else 0
            if available < tokens:
                raise InsufficientBalance(available_tokens=available, required_tokens=tokens)

        run_in_transaction(work, session_factory=self._session_factory, label="commit precheck")

    def _commit(
        self,
        session: Session,
        commitment_id: str,
        user_id: str,
        prediction_id: str,
        option_id: str,
        tokens: int,
    ) -> CommitResult:
        market, option = self._check_market(session, prediction_id, option_id)
        commitment_repo = CommitmentRepository(session)

        if not commitment_repo.transition_attempt(
            commitment_id, [CommitAttemptState.ATTEMPTED], CommitAttemptState.COMMITTED
        ):
            raise TransactionFailed("Commit attempt was abandoned before it completed")

        new_option_participant = not commitment_repo.has_active_commitment(
            user_id, prediction_id, option_id=option_id
        )
        new_market_participant = not commitment_repo.has_active_commitment(user_id, prediction_id)
        market_repo = MarketRepository(session)
        if not market_repo.add_stake(
            prediction_id,
            option_id,
            tokens,
            new_option_participant=new_option_participant,
            new_market_participant=new_market_participant,
        ):
            raise MarketInactive(
                prediction_id, market_repo.get_status(prediction_id) or market.status
            )
        # Totals are reloaded from the locked rows and already include this stake.
        odds, potential_winning = implied_odds(
            market.total_tokens_staked - tokens, option.total_tokens - tokens, tokens
        )

        mutation = self._balances.mutate(
            session,
            user_id,
            tokens,
            TransactionType.COMMIT,
            related_id=commitment_id,
            metadata={"predictionId": prediction_id, "optionId": option_id},
        )
        record = commitment_repo.add_commitment(
            PredictionCommitment(
                commitment_id=commitment_id,
                user_id=user_id,
                prediction_id=prediction_id,
                option_id=option_id,
                tokens_committed=tokens,
                odds=odds,
                potential_winning=potential_winning,
                status=CommitmentStatus.ACTIVE.value,
                committed_at=utcnow(),
                transaction_id=mutation.transaction.transaction_id,
                details={"optionText": option.text},
            )
        )
        session.flush()
        return CommitResult(
            commitment=commitment_snapshot(record), balance=balance_snapshot(mutation.balance)
        )

    # ------------------------------------------------------------------
    # Saga

    def _record_attempt(
        self, commitment_id: str, user_id: str, prediction_id: str, option_id: str, tokens: int
    ) -> None:
        def work(session: Session) -> None:
            CommitmentRepository(session).record_attempt(
                commitment_id=commitment_id,
                user_id=user_id,
                prediction_id=prediction_id,
                option_id=option_id,
                tokens=tokens,
            )

        run_in_transaction(work, session_factory=self._session_factory, label="commit attempt record")

    def _set_attempt_state(
        self,
        commitment_id: str,
        from_states: list[CommitAttemptState],
        to_state: CommitAttemptState,
        error_message: str | None = None,
    ) -> bool:
        def work(session: Session) -> bool:
            return CommitmentRepository(session).transition_attempt(
                commitment_id, from_states, to_state, error_message=error_message
            )

        return run_in_transaction(
            work, session_factory=self._session_factory, label="commit attempt update"
        )

    def _compensate(self, commitment_id: str, error_message: str) -> CommitAttemptState:
        """Drive an attempt to a terminal state after its commit reported failure."""

        claimed = self._set_attempt_state(
            commitment_id,
            [
                CommitAttemptState.ATTEMPTED,
                CommitAttemptState.COMMITTED,
                CommitAttemptState.COMPENSATING,
            ],
            CommitAttemptState.COMPENSATING,
            error_message=error_message,
        )
        if not claimed:
            logger.warning("Commit attempt {} is already terminal", commitment_id)
            return CommitAttemptState.COMPENSATED

        try:
            landed = self._landed_commitment(commitment_id)
            if landed is not None and landed.status == CommitmentStatus.ACTIVE.value:
                logger.warning(
                    "Commit {} landed despite reporting failure; rolling it back", commitment_id
                )
                self._rollbacks.rollback_commitment(
                    RollbackRequest(
                        user_id=landed.user_id,
                        reason=f"Commit failed: {error_message}",
                        rollback_type=RollbackType.COMMITMENT_FAILED,
                        commitment_id=commitment_id,
                    )
                )
        except LedgerError as exc:
            logger.error("Compensation of commit {} failed: {}", commitment_id, exc.message)
            self._set_attempt_state(
                commitment_id,
                [CommitAttemptState.COMPENSATING],
                CommitAttemptState.COMPENSATION_FAILED,
                error_message=exc.message,
            )
            return CommitAttemptState.COMPENSATION_FAILED

        self._set_attempt_state(
            commitment_id, [CommitAttemptState.COMPENSATING], CommitAttemptState.COMPENSATED
        )
        return CommitAttemptState.COMPENSATED

    def _landed_commitment(self, commitment_id: str) -> CommitmentSnapshot | None:
        def work(session: Session) -> CommitmentSnapshot | None:
            record = CommitmentRepository(session).get_commitment(commitment_id)
            return commitment_snapshot(record) if record is not None else None

        return run_in_transaction(
            work, session_factory=self._session_factory, label="commit outcome check"
        )

    def resume_pending_attempts(
        self, older_than: timedelta | None = None
    ) -> list[CommitAttemptSnapshot]:
        """Finish attempts abandoned mid-flight, e.g. by a crashed worker."""

        if older_than is None:
            older_than = timedelta(seconds=self._settings.commit_attempt_stale_seconds)
        cutoff = utcnow() - older_than

        def scan(session: Session) -> list[CommitAttemptSnapshot]:
            records = CommitmentRepository(session).list_unfinished_attempts(cutoff)
            return [commit_attempt_snapshot(record) for record in records]

        pending = run_in_transaction(
            scan, session_factory=self._session_factory, label="commit attempt scan"
        )
        for attempt in pending:
            landed = self._landed_commitment(attempt.commitment_id)
            if attempt.state == CommitAttemptState.ATTEMPTED.value and landed is not None:
                self._set_attempt_state(
                    attempt.commitment_id,
                    [CommitAttemptState.ATTEMPTED],
                    CommitAttemptState.COMMITTED,
                )
                continue
            self._compensate(
                attempt.commitment_id, attempt.error_message or "Commit attempt abandoned"
            )

        def reload(session: Session) -> list[CommitAttemptSnapshot]:
            repo = CommitmentRepository(session)
            return [
                commit_attempt_snapshot(record)
                for record in (repo.get_attempt(item.commitment_id) for item in pending)
                if record is not None
            ]

        resumed = run_in_transaction(
            reload, session_factory=self._session_factory, label="commit attempt reload"
        )
        if resumed:
            logger.info("Resumed {} unfinished commit attempts", len(resumed))
        return resumed

    # ------------------------------------------------------------------
    # Reads

    def get_user_commitments(
        self, user_id: str, status: CommitmentStatus | str | None = None
    ) -> Iterator[CommitmentSnapshot]:
        value = CommitmentStatus(status).value if status is not None else None
        return self._stream(CommitmentRepository.user_commitments_query(user_id, value))

    def get_prediction_commitments(
        self, prediction_id: str, status: CommitmentStatus | str | None = None
    ) -> Iterator[CommitmentSnapshot]:
        value = CommitmentStatus(status).value if status is not None else None
        return self._stream(CommitmentRepository.market_commitments_query(prediction_id, value))

    def _stream(self, stmt: Select) -> Iterator[CommitmentSnapshot]:
        factory = self._session_factory or SessionLocal
        with factory() as session:
            for record in session.scalars(stmt):
                yield commitment_snapshot(record)


__all__ = ["CommitmentService", "implied_odds"]

"""Prediction commitments and the commit-attempt saga records."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import Select, asc, desc, func, select, update
from sqlalchemy.orm import Session

from ledger.models import (
    CommitAttempt,
    CommitAttemptState,
    CommitmentStatus,
    PredictionCommitment,
    utcnow,
)


class CommitmentRepository:
    """Data access for commitments and their saga bookkeeping."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Commitments

    def add_commitment(self, record: PredictionCommitment) -> PredictionCommitment:
        self._session.add(record)
        return record

    def get_commitment(self, commitment_id: str) -> PredictionCommitment | None:
        return self._session.get(PredictionCommitment, commitment_id)

    def list_active_for_market(self, prediction_id: str) -> list[PredictionCommitment]:
        stmt = (
            select(PredictionCommitment)
            .where(
                PredictionCommitment.prediction_id == prediction_id,
                PredictionCommitment.status == CommitmentStatus.ACTIVE.value,
            )
            .order_by(asc(PredictionCommitment.committed_at), asc(PredictionCommitment.commitment_id))
        )
        return list(self._session.scalars(stmt))

    def has_active_commitment(
        self,
        user_id: str,
        prediction_id: str,
        *,
        option_id: str | None = None,
        exclude_commitment_id: str | None = None,
    ) -> bool:
        stmt = select(func.count(PredictionCommitment.commitment_id)).where(
            PredictionCommitment.user_id == user_id,
            PredictionCommitment.prediction_id == prediction_id,
            PredictionCommitment.status == CommitmentStatus.ACTIVE.value,
        )
        if option_id is not None:
            stmt = stmt.where(PredictionCommitment.option_id == option_id)
        if exclude_commitment_id is not None:
            stmt = stmt.where(PredictionCommitment.commitment_id != exclude_commitment_id)
        return bool(self._session.scalar(stmt))

    def sum_active_stakes(self, user_id: str) -> tuple[int, int]:
        stmt = select(
            func.coalesce(func.sum(PredictionCommitment.tokens_committed), 0),
            func.count(PredictionCommitment.commitment_id),
        ).where(
            PredictionCommitment.user_id == user_id,
            PredictionCommitment.status == CommitmentStatus.ACTIVE.value,
        )
        total, count = self._session.execute(stmt).one()
        return int(total or 0), int(count or 0)

    @staticmethod
    def user_commitments_query(user_id: str, status: str | None = None) -> Select:
        stmt = select(PredictionCommitment).where(PredictionCommitment.user_id == user_id)
        if status is not None:
            stmt = stmt.where(PredictionCommitment.status == status)
        return stmt.order_by(desc(PredictionCommitment.committed_at))

    @staticmethod
    def market_commitments_query(prediction_id: str, status: str | None = None) -> Select:
        stmt = select(PredictionCommitment).where(
            PredictionCommitment.prediction_id == prediction_id
        )
        if status is not None:
            stmt = stmt.where(PredictionCommitment.status == status)
        return stmt.order_by(desc(PredictionCommitment.committed_at))

    # ------------------------------------------------------------------
    # Commit attempts

    def record_attempt(
        self,
        *,
        commitment_id: str,
        user_id: str,
        prediction_id: str,
        option_id: str,
        tokens: int,
    ) -> CommitAttempt:
        now = utcnow()
        record = CommitAttempt(
            commitment_id=commitment_id,
            user_id=user_id,
            prediction_id=prediction_id,
            option_id=option_id,
            tokens=tokens,
            state=CommitAttemptState.ATTEMPTED.value,
            created_at=now,
            updated_at=now,
        )
        self._session.add(record)
        return record

    def get_attempt(self, commitment_id: str) -> CommitAttempt | None:
        return self._session.get(CommitAttempt, commitment_id)

    def transition_attempt(
        self,
        commitment_id: str,
        from_states: Iterable[CommitAttemptState],
        to_state: CommitAttemptState,
        *,
        error_message: str | None = None,
    ) -> bool:
        """Move an attempt between states only if it is still in one of ``from_states``."""

        values: dict[str, Any] = {"state": to_state.value, "updated_at": utcnow()}
        if error_message is not None:
            values["error_message"] = error_message
        stmt = (
            update(CommitAttempt)
            .where(
                CommitAttempt.commitment_id == commitment_id,
                CommitAttempt.state.in_([state.value for state in from_states]),
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    def list_unfinished_attempts(self, updated_before: datetime) -> list[CommitAttempt]:
        stmt = (
            select(CommitAttempt)
            .where(
                CommitAttempt.state.in_(
                    [CommitAttemptState.ATTEMPTED.value, CommitAttemptState.COMPENSATING.value]
                ),
                CommitAttempt.updated_at < updated_before,
            )
            .order_by(asc(CommitAttempt.created_at))
        )
        return list(self._session.scalars(stmt))


__all__ = ["CommitmentRepository"]

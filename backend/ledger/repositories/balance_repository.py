"""Balance rows and the append-only token transaction log."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import asc, desc, select
from sqlalchemy.orm import Session

from ledger.models import (
    TokenTransaction,
    TransactionStatus,
    TransactionType,
    UserBalance,
    utcnow,
)


class BalanceRepository:
    """Encapsulate persistence of user balances and their transactions."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Balances

    def get_balance(self, user_id: str) -> UserBalance | None:
        return self._session.get(UserBalance, user_id)

    def get_or_create_balance(self, user_id: str) -> UserBalance:
        record = self._session.get(UserBalance, user_id)
        if record is None:
            record = UserBalance(
                user_id=user_id,
                available_tokens=0,
                committed_tokens=0,
                total_earned=0,
                total_spent=0,
                last_updated=utcnow(),
                version=0,
            )
            self._session.add(record)
            self._session.flush()
        return record

    def list_user_ids(self) -> list[str]:
        stmt = select(UserBalance.user_id).order_by(asc(UserBalance.user_id))
        return list(self._session.scalars(stmt))

    # ------------------------------------------------------------------
    # Transactions

    def add_transaction(
        self,
        *,
        user_id: str,
        transaction_type: TransactionType,
        amount: int,
        balance_before: int,
        balance_after: int,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenTransaction:
        record = TokenTransaction(
            user_id=user_id,
            type=transaction_type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            related_id=related_id,
            details=dict(metadata) if metadata else None,
            timestamp=utcnow(),
            status=TransactionStatus.COMPLETED.value,
        )
        self._session.add(record)
        return record

    def get_transaction(self, transaction_id: int) -> TokenTransaction | None:
        return self._session.get(TokenTransaction, transaction_id)

    def find_commit_transaction(self, commitment_id: str) -> TokenTransaction | None:
        stmt = (
            select(TokenTransaction)
            .where(
                TokenTransaction.related_id == commitment_id,
                TokenTransaction.type == TransactionType.COMMIT.value,
            )
            .order_by(desc(TokenTransaction.transaction_id))
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def list_transactions(
        self,
        user_id: str,
        *,
        types: Iterable[TransactionType] | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[TokenTransaction]:
        stmt = select(TokenTransaction).where(TokenTransaction.user_id == user_id)
        if types is not None:
            stmt = stmt.where(TokenTransaction.type.in_([item.value for item in types]))
        order = desc if newest_first else asc
        stmt = stmt.order_by(order(TokenTransaction.transaction_id))
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.scalars(stmt))

    def list_related_transactions(
        self,
        related_id: str,
        *,
        types: Iterable[TransactionType] | None = None,
        status: TransactionStatus | None = None,
    ) -> list[TokenTransaction]:
        stmt = select(TokenTransaction).where(TokenTransaction.related_id == related_id)
        if types is not None:
            stmt = stmt.where(TokenTransaction.type.in_([item.value for item in types]))
        if status is not None:
            stmt = stmt.where(TokenTransaction.status == status.value)
        stmt = stmt.order_by(asc(TokenTransaction.transaction_id))
        return list(self._session.scalars(stmt))

    def mark_rolled_back(self, record: TokenTransaction, **details: Any) -> None:
        record.status = TransactionStatus.ROLLED_BACK.value
        merged = dict(record.details or {})
        merged.update(details)
        # JSON columns only register a change on reassignment.
        record.details = merged


__all__ = ["BalanceRepository"]

"""Atomic balance mutations and the transaction log that records them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ledger.db import run_in_transaction
from ledger.domain import BalanceSnapshot, TransactionSnapshot
from ledger.errors import InsufficientBalance, InvalidAmount
from ledger.models import TokenTransaction, TransactionType, UserBalance, utcnow
from ledger.repositories import BalanceRepository
from ledger.repositories.types import balance_snapshot, transaction_snapshot


@dataclass(slots=True)
class BalanceMutation:
    """Records touched by one mutation, valid only inside the session that made them."""

    balance: UserBalance
    transaction: TokenTransaction


def _require_positive(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Token amount must be a positive integer, got {amount!r}", amount=amount)
    return amount


class BalanceService:
    """Single entry point for every change to a user's token balance.

    ``update_balance`` runs one mutation in its own transaction. Services that
    touch several balances at once call ``mutate`` (or the resolution helpers)
    with the session of their own outer transaction instead.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Transactional entry points

    def update_balance(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType | str,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BalanceSnapshot:
        transaction_type = TransactionType(transaction_type)
        _require_positive(amount)

        def work(session: Session) -> BalanceSnapshot:
            mutation = self.mutate(
                session,
                user_id,
                amount,
                transaction_type,
                related_id=related_id,
                metadata=metadata,
            )
            return balance_snapshot(mutation.balance)

        return run_in_transaction(
            work,
            session_factory=self._session_factory,
            label=f"{transaction_type.value} for {user_id}",
        )

    def get_balance(self, user_id: str) -> BalanceSnapshot:
        def work(session: Session) -> BalanceSnapshot:
            return balance_snapshot(BalanceRepository(session).get_or_create_balance(user_id))

        return run_in_transaction(
            work, session_factory=self._session_factory, label=f"balance read for {user_id}"
        )

    def validate_sufficient_balance(self, user_id: str, amount: int) -> bool:
        return self.get_balance(user_id).available_tokens >= amount

    def get_transactions(
        self,
        user_id: str,
        *,
        types: list[TransactionType] | None = None,
        limit: int | None = None,
    ) -> list[TransactionSnapshot]:
        def work(session: Session) -> list[TransactionSnapshot]:
            records = BalanceRepository(session).list_transactions(
                user_id, types=types, newest_first=True, limit=limit
            )
            return [transaction_snapshot(record) for record in records]

        return run_in_transaction(
            work, session_factory=self._session_factory, label=f"transaction read for {user_id}"
        )

    # ------------------------------------------------------------------
    # In-session mutations

    def mutate(
        self,
        session: Session,
        user_id: str,
        amount: int,
        transaction_type: TransactionType | str,
        *,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BalanceMutation:
        transaction_type = TransactionType(transaction_type)
        _require_positive(amount)

        available = 0
        committed = 0
        earned = 0
        spent = 0
        if transaction_type in (TransactionType.PURCHASE, TransactionType.PAYOUT):
            available, earned = amount, amount
        elif transaction_type is TransactionType.REFUND:
            # Only committed tokens come back; _apply rejects an over-release.
            available, committed = amount, -amount
        elif transaction_type is TransactionType.COMMIT:
            available, committed = -amount, amount
        elif transaction_type is TransactionType.LOSS:
            committed, spent = -amount, amount
        elif transaction_type is TransactionType.ROLLBACK:
            available = -amount

        return self._apply(
            session,
            user_id,
            transaction_type,
            amount,
            available_delta=available,
            committed_delta=committed,
            earned_delta=earned,
            spent_delta=spent,
            related_id=related_id,
            metadata=metadata,
        )

    def apply_resolution_payout(
        self,
        session: Session,
        user_id: str,
        *,
        stake: int,
        payout_amount: int,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BalanceMutation:
        """Release a winning stake and credit its payout in one step."""

        profit = payout_amount - stake
        return self._apply(
            session,
            user_id,
            TransactionType.PAYOUT,
            payout_amount,
            available_delta=payout_amount,
            committed_delta=-stake,
            earned_delta=max(profit, 0),
            spent_delta=max(-profit, 0),
            related_id=related_id,
            metadata=metadata,
        )

    def reverse_resolution_entry(
        self,
        session: Session,
        user_id: str,
        *,
        stake: int,
        payout_amount: int,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BalanceMutation:
        """Undo a resolution payout or loss, putting ``stake`` back into committed.

        A reversed loss has ``payout_amount == 0``; a reversed creator fee has
        ``stake == 0``.
        """

        profit = payout_amount - stake
        return self._apply(
            session,
            user_id,
            TransactionType.ROLLBACK,
            payout_amount or stake,
            available_delta=-payout_amount,
            committed_delta=stake,
            earned_delta=-max(profit, 0),
            spent_delta=-max(-profit, 0),
            related_id=related_id,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Internals

    def _apply(
        self,
        session: Session,
        user_id: str,
        transaction_type: TransactionType,
        amount: int,
        *,
        available_delta: int = 0,
        committed_delta: int = 0,
        earned_delta: int = 0,
        spent_delta: int = 0,
        related_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BalanceMutation:
        repo = BalanceRepository(session)
        record = repo.get_or_create_balance(user_id)

        before = record.available_tokens
        new_available = before + available_delta
        new_committed = record.committed_tokens + committed_delta
        if new_available < 0:
            raise InsufficientBalance(available_tokens=before, required_tokens=-available_delta)
        if new_committed < 0:
            raise InsufficientBalance(
                available_tokens=record.committed_tokens,
                required_tokens=-committed_delta,
                message=(
                    f"Insufficient committed balance: committed={record.committed_tokens}, "
                    f"required={-committed_delta}"
                ),
            )

        record.available_tokens = new_available
        record.committed_tokens = new_committed
        record.total_earned = max(record.total_earned + earned_delta, 0)
        record.total_spent = max(record.total_spent + spent_delta, 0)
        record.last_updated = utcnow()
        record.version = record.version + 1

        transaction = repo.add_transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=before,
            balance_after=new_available,
            related_id=related_id,
            metadata=metadata,
        )
        # Flush per mutation so each one fences on the version it read and
        # the transaction id is available to the caller.
        session.flush()

        logger.debug(
            "{} of {} for {}: available {} -> {}, committed {} (v{})",
            transaction_type.value,
            amount,
            user_id,
            before,
            new_available,
            new_committed,
            record.version,
        )
        return BalanceMutation(balance=record, transaction=transaction)


__all__ = ["BalanceMutation", "BalanceService"]

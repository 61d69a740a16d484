"""Recompute balances from the ledger history and repair drifted rows."""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ledger.db import run_in_transaction
from ledger.domain import BalanceAudit, BalanceSnapshot, ReconciliationReport
from ledger.models import utcnow
from ledger.repositories import BalanceRepository, CommitmentRepository
from ledger.repositories.types import balance_snapshot


def _audit(session: Session, user_id: str) -> BalanceAudit:
    balance_repo = BalanceRepository(session)
    record = balance_repo.get_balance(user_id)
    transactions = balance_repo.list_transactions(user_id)
    committed, active_count = CommitmentRepository(session).sum_active_stakes(user_id)

    available = 0
    previous_after = 0
    chain_breaks: list[int] = []
    for transaction in transactions:
        if transaction.balance_before != previous_after:
            chain_breaks.append(transaction.transaction_id)
        available += transaction.balance_after - transaction.balance_before
        previous_after = transaction.balance_after

    stored_available = record.available_tokens if record is not None else 0
    stored_committed = record.committed_tokens if record is not None else 0
    issues: list[str] = []
    if stored_available < 0:
        issues.append(f"negative available balance: {stored_available}")
    if stored_committed < 0:
        issues.append(f"negative committed balance: {stored_committed}")
    if available < 0:
        issues.append(f"transaction history sums to a negative balance: {available}")

    return BalanceAudit(
        user_id=user_id,
        stored_available=stored_available,
        stored_committed=stored_committed,
        computed_available=available,
        computed_committed=committed,
        transaction_count=len(transactions),
        active_commitment_count=active_count,
        chain_breaks=chain_breaks,
        issues=issues,
    )


class ReconciliationService:
    """Compare stored balances with what the transaction log and commitments imply.

    Available tokens are the running sum of every transaction's
    ``balance_after - balance_before``; committed tokens are the sum of the
    user's active stakes.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    def audit_user_balance(self, user_id: str) -> BalanceAudit:
        return run_in_transaction(
            lambda session: _audit(session, user_id),
            session_factory=self._session_factory,
            label=f"balance audit for {user_id}",
        )

    def fix_user_balance(self, user_id: str) -> BalanceSnapshot:
        def work(session: Session) -> BalanceSnapshot:
            audit = _audit(session, user_id)
            record = BalanceRepository(session).get_or_create_balance(user_id)
            record.available_tokens = max(audit.computed_available, 0)
            record.committed_tokens = audit.computed_committed
            record.last_updated = utcnow()
            record.version = record.version + 1
            session.flush()
            if audit.discrepancies:
                logger.warning(
                    "Repaired balance of {}: {}", user_id, audit.discrepancies
                )
            return balance_snapshot(record)

        return run_in_transaction(
            work, session_factory=self._session_factory, label=f"balance repair for {user_id}"
        )

    def reconcile_users(
        self, user_ids: Iterable[str] | None = None, *, fix: bool = False
    ) -> ReconciliationReport:
        if user_ids is None:
            user_ids = run_in_transaction(
                lambda session: BalanceRepository(session).list_user_ids(),
                session_factory=self._session_factory,
                label="balance listing",
            )

        report = ReconciliationReport()
        for user_id in user_ids:
            audit = self.audit_user_balance(user_id)
            report.audits.append(audit)
            if audit.is_consistent:
                continue
            logger.warning(
                "Balance of {} is inconsistent: discrepancies={} chain_breaks={} issues={}",
                user_id,
                audit.discrepancies,
                audit.chain_breaks,
                audit.issues,
            )
            if fix and audit.discrepancies:
                self.fix_user_balance(user_id)
                report.fixed.append(user_id)

        logger.info(
            "Reconciled {} balances: {} inconsistent, {} repaired",
            len(report.audits),
            len(report.inconsistent),
            len(report.fixed),
        )
        return report


__all__ = ["ReconciliationService"]

"""Market resolution, cancellation, and resolution rollback."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlparse

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ledger.core.config import Settings, get_settings
from ledger.db import run_in_transaction
from ledger.domain import (
    CancellationOutcome,
    EvidenceItem,
    MarketSnapshot,
    PayoutPreview,
    ResolutionOutcome,
    ResolutionRecord,
    ResolutionRollbackOutcome,
    ResolutionStatusReport,
    RollbackType,
)
from ledger.errors import (
    AlreadyResolved,
    InvalidEvidence,
    InvalidWinningOption,
    LedgerError,
    MarketNotFound,
    MarketNotReady,
    ResolutionNotFound,
    RollbackIneligible,
    TransactionFailed,
)
from ledger.models import (
    CommitmentStatus,
    MarketResolution,
    MarketStatus,
    ResolutionStatus,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from ledger.repositories import (
    BalanceRepository,
    CommitmentRepository,
    MarketRepository,
    ResolutionRepository,
)
from ledger.repositories.types import market_snapshot, resolution_record

from . import payout_calculator
from .admin_auth import AdminAuthorizer, AdminDirectory, require_admin
from .balance_service import BalanceService
from .rollback_service import RollbackService

EVIDENCE_TYPES = frozenset({"url", "description", "screenshot"})

RESOLVABLE_STATUSES = (MarketStatus.ACTIVE, MarketStatus.PENDING_RESOLUTION)

# Last audit-log action -> externally visible resolution status.
_STATUS_BY_ACTION = {
    "resolution_started": "in_progress",
    "evidence_validated": "in_progress",
    "payouts_calculated": "in_progress",
    "tokens_distributed": "in_progress",
    "rollback_initiated": "in_progress",
    "resolution_completed": "completed",
    "rollback_failed": "completed",
    "resolution_failed": "failed",
    "rollback_completed": "rolled_back",
}


def _is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def validate_evidence(
    evidence: Iterable[EvidenceItem | Mapping[str, Any]] | None,
    *,
    market_id: str | None = None,
) -> list[EvidenceItem]:
    """Check resolution evidence and return it as ``EvidenceItem`` objects.

    Raises ``InvalidEvidence`` listing every problem found.
    """

    items: list[EvidenceItem] = []
    errors: list[dict[str, str]] = []
    for index, raw in enumerate(evidence or []):
        if isinstance(raw, EvidenceItem):
            item = raw
        else:
            item = EvidenceItem(
                type=str(raw.get("type") or ""),
                content=str(raw.get("content") or ""),
                description=raw.get("description"),
            )
        field = f"evidence[{index}]"
        if item.type not in EVIDENCE_TYPES:
            errors.append({"field": f"{field}.type", "message": f"Unsupported evidence type '{item.type}'"})
        if not item.content.strip():
            errors.append({"field": f"{field}.content", "message": "Evidence content is required"})
        elif item.type == "url" and not _is_valid_url(item.content.strip()):
            errors.append({"field": f"{field}.content", "message": "Invalid URL format"})
        items.append(item)

    if not items:
        errors.append({"field": "evidence", "message": "At least one piece of evidence is required"})
    elif not any(item.type in {"url", "description"} for item in items):
        errors.append(
            {"field": "evidence", "message": "At least one URL or description is required"}
        )

    if errors:
        raise InvalidEvidence(errors, market_id=market_id)
    return items


class ResolutionService:
    """Orchestrate admin-driven market settlement.

    Resolution validates the request, claims the market by moving it to
    ``resolving``, computes payouts over a snapshot, and applies them in a
    single transaction. A failure after the claim returns the market to the
    status it had before.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        authorizer: AdminAuthorizer | None = None,
        balance_service: BalanceService | None = None,
        rollback_service: RollbackService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._authorizer = authorizer or AdminDirectory(session_factory)
        self._balances = balance_service or BalanceService(session_factory)
        self._rollbacks = rollback_service or RollbackService(
            session_factory, balance_service=self._balances, settings=self._settings
        )

    def authorize(self, admin_id: str | None) -> str:
        return require_admin(self._authorizer, admin_id)

    # ------------------------------------------------------------------
    # Preview

    def get_payout_preview(
        self,
        market_id: str,
        winning_option_id: str,
        creator_fee_percentage: float | None = None,
    ) -> PayoutPreview:
        snapshot = self._snapshot(market_id)
        return self._preview(snapshot, winning_option_id, self._creator_fee(creator_fee_percentage))

    def _creator_fee(self, creator_fee_percentage: float | None) -> float:
        if creator_fee_percentage is None:
            creator_fee_percentage = self._settings.default_creator_fee_percentage
        return payout_calculator.validate_creator_fee(
            creator_fee_percentage,
            minimum=self._settings.creator_fee_min,
            maximum=self._settings.creator_fee_max,
        )

    def _preview(
        self, snapshot: MarketSnapshot, winning_option_id: str, creator_fee_percentage: float
    ) -> PayoutPreview:
        return payout_calculator.generate_payout_preview(
            snapshot,
            winning_option_id,
            creator_fee_percentage,
            house_fee_percentage=self._settings.house_fee_percentage,
            creator_fee_min=self._settings.creator_fee_min,
            creator_fee_max=self._settings.creator_fee_max,
        )

    def _snapshot(self, market_id: str) -> MarketSnapshot:
        def work(session: Session) -> MarketSnapshot:
            market = MarketRepository(session).get_market(market_id)
            if market is None:
                raise MarketNotFound(market_id)
            commitments = CommitmentRepository(session).list_active_for_market(market_id)
            return market_snapshot(market, commitments)

        return run_in_transaction(
            work, session_factory=self._session_factory, label="market snapshot read"
        )

    # ------------------------------------------------------------------
    # Resolution

    def resolve_market(
        self,
        market_id: str,
        winning_option_id: str,
        evidence: Iterable[EvidenceItem | Mapping[str, Any]] | None,
        admin_id: str | None,
        creator_fee_percentage: float | None = None,
    ) -> ResolutionOutcome:
        self.authorize(admin_id)
        items = validate_evidence(evidence, market_id=market_id)
        fee_percentage = self._creator_fee(creator_fee_percentage)

        previous_status = run_in_transaction(
            lambda session: self._claim_market(session, market_id, winning_option_id),
            session_factory=self._session_factory,
            label="resolution claim",
        )
        self._log(
            market_id,
            "resolution_started",
            admin_id,
            {"winningOptionId": winning_option_id, "previousStatus": previous_status},
        )
        self._log(market_id, "evidence_validated", admin_id, {"evidenceCount": len(items)})

        try:
            preview = self._preview(self._snapshot(market_id), winning_option_id, fee_percentage)
            self._log(
                market_id,
                "payouts_calculated",
                admin_id,
                {
                    "totalPool": preview.total_pool,
                    "winnerCount": preview.winner_count,
                    "houseFee": preview.house_fee,
                    "creatorFee": preview.creator_fee,
                },
            )
            outcome = run_in_transaction(
                lambda session: self._apply_resolution(
                    session, preview, items, admin_id, fee_percentage
                ),
                session_factory=self._session_factory,
                label="market resolution",
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, LedgerError) else str(exc)
            logger.error("Resolution of market {} failed: {}", market_id, message)
            self._restore_status(market_id, previous_status)
            self._log(market_id, "resolution_failed", admin_id, error=message)
            raise

        self._log(
            market_id,
            "tokens_distributed",
            admin_id,
            {"resolutionId": outcome.resolution_id, "totalPayout": outcome.total_payout},
        )
        self._log(market_id, "resolution_completed", admin_id, {"resolutionId": outcome.resolution_id})
        logger.info(
            "Resolved market {} for option {}: {} winners, {} tokens paid",
            market_id,
            winning_option_id,
            outcome.winner_count,
            outcome.total_payout,
        )
        return outcome

    def _claim_market(self, session: Session, market_id: str, winning_option_id: str) -> str:
        repo = MarketRepository(session)
        market = repo.get_market(market_id)
        if market is None:
            raise MarketNotFound(market_id)
        if market.status == MarketStatus.RESOLVED.value:
            raise AlreadyResolved(market_id, market.status)
        if market.status not in {status.value for status in RESOLVABLE_STATUSES}:
            raise MarketNotReady(market_id, market.status)
        if all(option.option_id != winning_option_id for option in market.options):
            raise InvalidWinningOption(market_id, winning_option_id)

        previous_status = market.status
        if not repo.transition_status(market_id, [previous_status], MarketStatus.RESOLVING):
            raise MarketNotReady(
                market_id,
                MarketStatus.RESOLVING.value,
                message="Market is already being resolved",
            )
        return previous_status

    def _restore_status(self, market_id: str, previous_status: str) -> None:
        def work(session: Session) -> bool:
            return MarketRepository(session).transition_status(
                market_id, [MarketStatus.RESOLVING], MarketStatus(previous_status)
            )

        if run_in_transaction(work, session_factory=self._session_factory, label="status restore"):
            logger.info("Market {} returned to {}", market_id, previous_status)

    def _apply_resolution(
        self,
        session: Session,
        preview: PayoutPreview,
        evidence: list[EvidenceItem],
        admin_id: str,
        creator_fee_percentage: float,
    ) -> ResolutionOutcome:
        market_id = preview.market_id
        market_repo = MarketRepository(session)
        market = market_repo.get_market(market_id)
        if market is None:
            raise MarketNotFound(market_id)
        if market.status != MarketStatus.RESOLVING.value:
            raise MarketNotReady(market_id, market.status)

        active = {
            record.commitment_id: record
            for record in CommitmentRepository(session).list_active_for_market(market_id)
        }
        expected = {payout.commitment_id for payout in preview.payouts}
        expected.update(item.commitment_id for item in preview.losing_commitments)
        if set(active) != expected:
            raise TransactionFailed("Market commitments changed during resolution; please retry")

        resolution_id = uuid.uuid4().hex
        now = utcnow()

        for payout in preview.payouts:
            commitment = active[payout.commitment_id]
            self._balances.apply_resolution_payout(
                session,
                commitment.user_id,
                stake=commitment.tokens_committed,
                payout_amount=payout.payout_amount,
                related_id=resolution_id,
                metadata={
                    "kind": "winnings",
                    "marketId": market_id,
                    "commitmentId": commitment.commitment_id,
                    "profit": payout.profit,
                },
            )
            commitment.status = CommitmentStatus.WON.value
            commitment.resolved_at = now

        for loser in preview.losing_commitments:
            commitment = active[loser.commitment_id]
            self._balances.mutate(
                session,
                commitment.user_id,
                commitment.tokens_committed,
                TransactionType.LOSS,
                related_id=resolution_id,
                metadata={"marketId": market_id, "commitmentId": commitment.commitment_id},
            )
            commitment.status = CommitmentStatus.LOST.value
            commitment.resolved_at = now

        creator = preview.creator_payout
        retained = preview.undistributed
        creator_fee_paid = 0
        if creator.fee_amount > 0 and creator.user_id:
            self._balances.mutate(
                session,
                creator.user_id,
                creator.fee_amount,
                TransactionType.PAYOUT,
                related_id=resolution_id,
                metadata={
                    "kind": "creator_fee",
                    "marketId": market_id,
                    "feePercentage": creator.fee_percentage,
                },
            )
            creator_fee_paid = creator.fee_amount
        elif creator.fee_amount > 0:
            logger.warning("Market {} has no creator; creator fee retained by the house", market_id)
            retained += creator.fee_amount

        ResolutionRepository(session).add_resolution(
            MarketResolution(
                resolution_id=resolution_id,
                market_id=market_id,
                winning_option_id=preview.winning_option_id,
                evidence=[item.to_dict() for item in evidence],
                resolved_by=admin_id,
                resolved_at=now,
                winner_count=preview.winner_count,
                total_payout=preview.total_payout,
                creator_fee_amount=creator_fee_paid,
                house_fee_amount=preview.house_fee,
                undistributed_amount=retained,
                creator_fee_percentage=creator_fee_percentage,
                status=ResolutionStatus.COMPLETED.value,
            )
        )

        market.status = MarketStatus.RESOLVED.value
        market.winning_option_id = preview.winning_option_id
        market.resolved_at = now
        market_repo.set_winning_option(market, preview.winning_option_id)
        session.flush()

        return ResolutionOutcome(
            success=True,
            resolution_id=resolution_id,
            market_id=market_id,
            winner_count=preview.winner_count,
            total_payout=preview.total_payout,
        )

    # ------------------------------------------------------------------
    # Cancellation

    def cancel_market(self, market_id: str, reason: str, admin_id: str | None) -> CancellationOutcome:
        self.authorize(admin_id)

        def work(session: Session) -> None:
            repo = MarketRepository(session)
            market = repo.get_market(market_id)
            if market is None:
                raise MarketNotFound(market_id)
            if market.status in {MarketStatus.RESOLVED.value, MarketStatus.CANCELLED.value}:
                raise AlreadyResolved(
                    market_id, market.status, message=f"Market is already {market.status}"
                )
            if market.status == MarketStatus.RESOLVING.value or not repo.transition_status(
                market_id, [market.status], MarketStatus.CANCELLED, cancellation_reason=reason
            ):
                raise MarketNotReady(
                    market_id, market.status, message="Market is being resolved"
                )

        run_in_transaction(work, session_factory=self._session_factory, label="market cancellation")
        logger.info("Market {} cancelled by {}: {}", market_id, admin_id, reason)

        results = self._rollbacks.rollback_multiple_commitments(
            market_id, reason, RollbackType.MARKET_CANCELLED
        )
        failures = [result for result in results if not result.success]
        if failures:
            logger.warning(
                "Market {} cancelled with {} refunds outstanding", market_id, len(failures)
            )
        return CancellationOutcome(
            success=True,
            market_id=market_id,
            refunds_processed=len(results) - len(failures),
            failures=failures,
        )

    # ------------------------------------------------------------------
    # Resolution rollback

    def rollback_resolution(
        self, market_id: str, resolution_id: str, admin_id: str | None
    ) -> ResolutionRollbackOutcome:
        self.authorize(admin_id)

        def check(session: Session) -> None:
            self._rollback_target(session, market_id, resolution_id)

        run_in_transaction(check, session_factory=self._session_factory, label="resolution lookup")
        self._log(market_id, "rollback_initiated", admin_id, {"resolutionId": resolution_id})

        try:
            outcome = run_in_transaction(
                lambda session: self._apply_rollback(session, market_id, resolution_id),
                session_factory=self._session_factory,
                label="resolution rollback",
            )
        except LedgerError as exc:
            logger.error("Rollback of resolution {} failed: {}", resolution_id, exc.message)
            self._log(
                market_id,
                "rollback_failed",
                admin_id,
                {"resolutionId": resolution_id},
                error=exc.message,
            )
            raise

        self._log(
            market_id,
            "rollback_completed",
            admin_id,
            {
                "resolutionId": resolution_id,
                "reversedTransactions": outcome.reversed_transactions,
            },
        )
        logger.info(
            "Rolled back resolution {} of market {} ({} commitments restored)",
            resolution_id,
            market_id,
            outcome.restored_commitments,
        )
        return outcome

    def _rollback_target(self, session: Session, market_id: str, resolution_id: str):
        resolution = ResolutionRepository(session).get_resolution(resolution_id)
        if resolution is None or resolution.market_id != market_id:
            raise ResolutionNotFound(marketId=market_id, resolutionId=resolution_id)
        if resolution.status != ResolutionStatus.COMPLETED.value:
            raise RollbackIneligible(
                f"Resolution is {resolution.status}", resolutionId=resolution_id
            )
        market = MarketRepository(session).get_market(market_id)
        if market is None:
            raise MarketNotFound(market_id)
        if market.status != MarketStatus.RESOLVED.value:
            raise RollbackIneligible(
                f"Market is {market.status}", marketId=market_id, resolutionId=resolution_id
            )
        return resolution, market

    def _apply_rollback(
        self, session: Session, market_id: str, resolution_id: str
    ) -> ResolutionRollbackOutcome:
        resolution, market = self._rollback_target(session, market_id, resolution_id)
        balance_repo = BalanceRepository(session)
        commitment_repo = CommitmentRepository(session)

        entries = balance_repo.list_related_transactions(
            resolution_id,
            types=[TransactionType.PAYOUT, TransactionType.LOSS],
            status=TransactionStatus.COMPLETED,
        )
        restored = 0
        for entry in entries:
            details = entry.details or {}
            commitment_id = details.get("commitmentId")
            commitment = commitment_repo.get_commitment(commitment_id) if commitment_id else None

            if entry.type == TransactionType.LOSS.value:
                stake, payout_amount = entry.amount, 0
            elif commitment is not None:
                stake, payout_amount = commitment.tokens_committed, entry.amount
            else:
                stake, payout_amount = 0, entry.amount

            self._balances.reverse_resolution_entry(
                session,
                entry.user_id,
                stake=stake,
                payout_amount=payout_amount,
                related_id=resolution_id,
                metadata={
                    "marketId": market_id,
                    "originalTransactionId": entry.transaction_id,
                    "commitmentId": commitment_id,
                },
            )
            balance_repo.mark_rolled_back(entry, rollbackReason="resolution rollback")
            if commitment is not None:
                commitment.status = CommitmentStatus.ACTIVE.value
                commitment.resolved_at = None
                restored += 1

        resolution.status = ResolutionStatus.CANCELLED.value
        market.status = MarketStatus.PENDING_RESOLUTION.value
        market.winning_option_id = None
        market.resolved_at = None
        MarketRepository(session).set_winning_option(market, None)
        session.flush()

        return ResolutionRollbackOutcome(
            success=True,
            market_id=market_id,
            resolution_id=resolution_id,
            reversed_transactions=len(entries),
            restored_commitments=restored,
        )

    # ------------------------------------------------------------------
    # Status

    def get_resolution_status(self, market_id: str) -> ResolutionStatusReport:
        def work(session: Session) -> ResolutionStatusReport:
            entry = ResolutionRepository(session).last_log(market_id)
            if entry is None:
                return ResolutionStatusReport(market_id=market_id, status="not_started")
            return ResolutionStatusReport(
                market_id=market_id,
                status=_STATUS_BY_ACTION.get(entry.action, "in_progress"),
                last_action=entry.action,
                timestamp=entry.timestamp,
                error=entry.error,
            )

        return run_in_transaction(
            work, session_factory=self._session_factory, label="resolution status read"
        )

    def get_market_resolution(self, market_id: str) -> ResolutionRecord | None:
        def work(session: Session) -> ResolutionRecord | None:
            record = ResolutionRepository(session).latest_resolution(market_id)
            return resolution_record(record) if record is not None else None

        return run_in_transaction(
            work, session_factory=self._session_factory, label="resolution read"
        )

    def _log(
        self,
        market_id: str,
        action: str,
        admin_id: str | None,
        details: dict[str, Any] | None = None,
        *,
        error: str | None = None,
    ) -> None:
        def work(session: Session) -> None:
            ResolutionRepository(session).add_log(
                market_id=market_id, action=action, admin_id=admin_id, details=details, error=error
            )

        try:
            run_in_transaction(
                work, session_factory=self._session_factory, label="resolution log write"
            )
        except LedgerError as exc:
            # Audit logging never fails the operation it records.
            logger.warning("Could not record {} for market {}: {}", action, market_id, exc.message)


__all__ = ["EVIDENCE_TYPES", "ResolutionService", "validate_evidence"]

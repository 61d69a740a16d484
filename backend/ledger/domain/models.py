"""Typed domain representations shared by services, repositories, and the API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RollbackType(str, Enum):
    COMMITMENT_FAILED = "commitment_failed"
    MARKET_CANCELLED = "market_cancelled"
    MANUAL_REFUND = "manual_refund"


@dataclass(slots=True)
class BalanceSnapshot:
    """Detached copy of a user's balance row."""

    user_id: str
    available_tokens: int
    committed_tokens: int
    total_earned: int
    total_spent: int
    last_updated: datetime | None
    version: int

    @property
    def total_tokens(self) -> int:
        return self.available_tokens + self.committed_tokens


@dataclass(slots=True)
class TransactionSnapshot:
    transaction_id: int
    user_id: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    related_id: str | None
    metadata: dict[str, Any] | None
    timestamp: datetime | None
    status: str


@dataclass(slots=True)
class CommitmentSnapshot:
    """Detached copy of a prediction commitment."""

    commitment_id: str
    user_id: str
    prediction_id: str
    option_id: str
    tokens_committed: int
    odds: float
    potential_winning: int
    status: str
    committed_at: datetime | None
    resolved_at: datetime | None = None
    transaction_id: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class CommitResult:
    commitment: CommitmentSnapshot
    balance: BalanceSnapshot


@dataclass(slots=True)
class CommitAttemptSnapshot:
    commitment_id: str
    user_id: str
    prediction_id: str
    option_id: str
    tokens: int
    state: str
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class OptionSnapshot:
    option_id: str
    text: str
    total_tokens: int = 0
    participant_count: int = 0
    commitment_count: int = 0
    is_winner: bool = False


@dataclass(slots=True)
class MarketSnapshot:
    """Market state handed to the payout calculator.

    ``commitments`` may contain every commitment of the market; only the
    active ones take part in a payout.
    """

    market_id: str
    title: str
    status: str
    created_by: str | None
    options: list[OptionSnapshot] = field(default_factory=list)
    commitments: list[CommitmentSnapshot] = field(default_factory=list)
    total_tokens_staked: int = 0
    total_participants: int = 0

    def has_option(self, option_id: str) -> bool:
        return any(option.option_id == option_id for option in self.options)


@dataclass(slots=True)
class WinnerPayout:
    user_id: str
    commitment_id: str
    tokens_staked: int
    payout_amount: int
    profit: int
    win_share: float


@dataclass(slots=True)
class CreatorPayout:
    user_id: str | None
    fee_amount: int
    fee_percentage: float


@dataclass(slots=True)
class FeeBreakdown:
    """Fee split of a pool; percentages are expressed out of 100."""

    total_pool: int
    house_fee: int
    creator_fee: int
    winner_pool: int
    house_fee_percentage: float
    creator_fee_percentage: float

    @property
    def total_fees(self) -> int:
        return self.house_fee + self.creator_fee


@dataclass(slots=True)
class PayoutPreview:
    """Full outcome of resolving a market for one winning option."""

    market_id: str
    winning_option_id: str
    total_pool: int
    total_winning_tokens: int
    house_fee: int
    creator_fee: int
    winner_pool: int
    payouts: list[WinnerPayout]
    creator_payout: CreatorPayout
    fee_breakdown: FeeBreakdown
    undistributed: int = 0
    largest_payout: int = 0
    smallest_payout: int = 0
    average_payout: int = 0
    total_profit: int = 0
    losing_commitments: list[CommitmentSnapshot] = field(default_factory=list)

    @property
    def winner_count(self) -> int:
        return len(self.payouts)

    @property
    def total_payout(self) -> int:
        return sum(payout.payout_amount for payout in self.payouts)

    @property
    def total_fees(self) -> int:
        return self.house_fee + self.creator_fee


@dataclass(slots=True)
class RollbackRequest:
    user_id: str
    reason: str
    rollback_type: RollbackType = RollbackType.MANUAL_REFUND
    commitment_id: str | None = None
    transaction_id: int | None = None


@dataclass(slots=True)
class RollbackResult:
    success: bool
    commitment_id: str | None
    transaction_id: int | None = None
    refund_transaction_id: int | None = None
    rollback_amount: int = 0
    error: str | None = None
    error_code: str | None = None


@dataclass(slots=True)
class RollbackEligibility:
    can_rollback: bool
    reason: str | None = None


@dataclass(slots=True)
class EvidenceItem:
    type: str
    content: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(slots=True)
class ResolutionOutcome:
    success: bool
    resolution_id: str
    market_id: str
    winner_count: int = 0
    total_payout: int = 0


@dataclass(slots=True)
class CancellationOutcome:
    success: bool
    market_id: str
    refunds_processed: int
    failures: list[RollbackResult] = field(default_factory=list)


@dataclass(slots=True)
class ResolutionRollbackOutcome:
    success: bool
    market_id: str
    resolution_id: str
    reversed_transactions: int
    restored_commitments: int


@dataclass(slots=True)
class ResolutionRecord:
    resolution_id: str
    market_id: str
    winning_option_id: str
    evidence: list[dict[str, Any]]
    resolved_by: str
    resolved_at: datetime | None
    winner_count: int
    total_payout: int
    creator_fee_amount: int
    house_fee_amount: int
    undistributed_amount: int
    status: str


@dataclass(slots=True)
class ResolutionStatusReport:
    market_id: str
    status: str
    last_action: str | None = None
    timestamp: datetime | None = None
    error: str | None = None


@dataclass(slots=True)
class BalanceAudit:
    """Comparison of a stored balance against the ledger history."""

    user_id: str
    stored_available: int
    stored_committed: int
    computed_available: int
    computed_committed: int
    transaction_count: int
    active_commitment_count: int
    chain_breaks: list[int] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def discrepancies(self) -> dict[str, tuple[int, int]]:
        found: dict[str, tuple[int, int]] = {}
        if self.stored_available != self.computed_available:
            found["available_tokens"] = (self.stored_available, self.computed_available)
        if self.stored_committed != self.computed_committed:
            found["committed_tokens"] = (self.stored_committed, self.computed_committed)
        return found

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies and not self.chain_breaks and not self.issues


@dataclass(slots=True)
class ReconciliationReport:
    audits: list[BalanceAudit] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)

    @property
    def inconsistent(self) -> list[BalanceAudit]:
        return [audit for audit in self.audits if not audit.is_consistent]

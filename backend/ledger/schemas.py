from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from .core.config import settings


class LedgerSchema(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


# ----------------------------------------------------------------------
# Balances and commitments


class Balance(LedgerSchema):
    user_id: str
    available_tokens: int
    committed_tokens: int
    total_tokens: int
    total_earned: int
    total_spent: int
    last_updated: datetime | None = None


class Commitment(LedgerSchema):
    commitment_id: str
    user_id: str
    prediction_id: str
    option_id: str
    tokens_committed: int
    odds: float
    potential_winning: int
    status: str
    committed_at: datetime | None = None
    resolved_at: datetime | None = None
    transaction_id: int | None = None


class CommitRequest(LedgerSchema):
    prediction_id: str = Field(min_length=1)
    tokens_to_commit: int = Field(gt=0, le=settings.max_commit_tokens)
    position: str = Field(min_length=1, description="Identifier of the option being backed")
    user_id: str = Field(min_length=1)

    @field_validator("position", mode="before")
    @classmethod
    def _coerce_position(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class CommitResponse(LedgerSchema):
    success: bool = True
    commitment: Commitment
    updated_balance: Balance


class CommitmentList(LedgerSchema):
    total: int
    items: list[Commitment]


class RollbackRequest(LedgerSchema):
    user_id: str = Field(min_length=1)
    commitment_id: str | None = None
    transaction_id: int | None = None
    reason: str = "Manual refund"


class RollbackResult(LedgerSchema):
    success: bool
    commitment_id: str | None = None
    transaction_id: int | None = None
    refund_transaction_id: int | None = None
    rollback_amount: int = 0
    error: str | None = None
    error_code: str | None = None


class IssueTokensRequest(LedgerSchema):
    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reason: str | None = None


class IssueTokensResponse(LedgerSchema):
    success: bool = True
    balance: Balance


# ----------------------------------------------------------------------
# Resolution


class Evidence(LedgerSchema):
    type: str
    content: str
    description: str | None = None


class ResolveRequest(LedgerSchema):
    winning_option_id: str = Field(min_length=1)
    evidence: list[Evidence] = Field(default_factory=list)
    creator_fee_percentage: float | None = None


class ResolveResponse(LedgerSchema):
    success: bool
    resolution_id: str
    market_id: str
    winner_count: int
    total_payout: int


class CancelRequest(LedgerSchema):
    reason: str = Field(min_length=1)


class CancelResponse(LedgerSchema):
    success: bool
    market_id: str
    refunds_processed: int
    failures: list[RollbackResult] = Field(default_factory=list)


class ResolutionRollbackResponse(LedgerSchema):
    success: bool
    market_id: str
    resolution_id: str
    reversed_transactions: int
    restored_commitments: int


class ResolutionStatus(LedgerSchema):
    market_id: str
    status: str
    last_action: str | None = None
    timestamp: datetime | None = None
    error: str | None = None


class WinnerPayout(LedgerSchema):
    user_id: str
    commitment_id: str
    tokens_staked: int
    payout_amount: int
    profit: int
    win_share: float


class CreatorPayout(LedgerSchema):
    user_id: str | None = None
    fee_amount: int
    fee_percentage: float


class FeeBreakdown(LedgerSchema):
    total_pool: int
    house_fee: int
    creator_fee: int
    winner_pool: int
    house_fee_percentage: float
    creator_fee_percentage: float


class PayoutPreview(LedgerSchema):
    market_id: str
    winning_option_id: str
    total_pool: int
    total_winning_tokens: int
    house_fee: int
    creator_fee: int
    winner_pool: int
    winner_count: int
    total_payout: int
    total_fees: int
    undistributed: int
    largest_payout: int
    smallest_payout: int
    average_payout: int
    total_profit: int
    payouts: list[WinnerPayout] = Field(default_factory=list)
    creator_payout: CreatorPayout
    fee_breakdown: FeeBreakdown

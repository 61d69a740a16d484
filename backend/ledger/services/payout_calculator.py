"""Pure fee and payout arithmetic for market resolution.

All amounts are integer tokens. Fees are computed with exact decimal
arithmetic and floored; each winner receives the floor of its pro-rata share
of the winner pool. Whatever the floors leave behind is reported as
``undistributed`` and stays with the house.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

from ledger.domain import (
    CommitmentSnapshot,
    CreatorPayout,
    FeeBreakdown,
    MarketSnapshot,
    PayoutPreview,
    WinnerPayout,
)
from ledger.errors import InvalidCreatorFee, InvalidWinningOption
from ledger.models import CommitmentStatus

HOUSE_FEE_PERCENTAGE = 0.05
CREATOR_FEE_MIN = 0.01
CREATOR_FEE_MAX = 0.05
DEFAULT_CREATOR_FEE_PERCENTAGE = 0.02


def _as_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def _as_percent(value: float) -> float:
    return float(_as_decimal(value) * 100)


def floor_fee(total_pool: int, percentage: float) -> int:
    """Return ``floor(total_pool * percentage)`` without binary-float drift."""

    return int((Decimal(total_pool) * _as_decimal(percentage)).to_integral_value(rounding=ROUND_FLOOR))


def validate_creator_fee(
    percentage: float,
    *,
    minimum: float = CREATOR_FEE_MIN,
    maximum: float = CREATOR_FEE_MAX,
) -> float:
    try:
        value = _as_decimal(percentage)
    except (TypeError, ArithmeticError) as exc:
        raise InvalidCreatorFee(percentage, minimum, maximum) from exc
    if not value.is_finite() or not _as_decimal(minimum) <= value <= _as_decimal(maximum):
        raise InvalidCreatorFee(percentage, minimum, maximum)
    return float(percentage)


def get_fee_breakdown(
    total_pool: int,
    creator_fee_percentage: float = DEFAULT_CREATOR_FEE_PERCENTAGE,
    *,
    house_fee_percentage: float = HOUSE_FEE_PERCENTAGE,
    creator_fee_min: float = CREATOR_FEE_MIN,
    creator_fee_max: float = CREATOR_FEE_MAX,
) -> FeeBreakdown:
    validate_creator_fee(creator_fee_percentage, minimum=creator_fee_min, maximum=creator_fee_max)
    if total_pool < 0:
        raise ValueError("total_pool must not be negative")

    house_fee = floor_fee(total_pool, house_fee_percentage)
    creator_fee = floor_fee(total_pool, creator_fee_percentage)
    return FeeBreakdown(
        total_pool=total_pool,
        house_fee=house_fee,
        creator_fee=creator_fee,
        winner_pool=total_pool - house_fee - creator_fee,
        house_fee_percentage=_as_percent(house_fee_percentage),
        creator_fee_percentage=_as_percent(creator_fee_percentage),
    )


def _active(commitments: list[CommitmentSnapshot]) -> list[CommitmentSnapshot]:
    return [item for item in commitments if item.status == CommitmentStatus.ACTIVE.value]


def generate_payout_preview(
    market: MarketSnapshot,
    winning_option_id: str,
    creator_fee_percentage: float = DEFAULT_CREATOR_FEE_PERCENTAGE,
    *,
    house_fee_percentage: float = HOUSE_FEE_PERCENTAGE,
    creator_fee_min: float = CREATOR_FEE_MIN,
    creator_fee_max: float = CREATOR_FEE_MAX,
) -> PayoutPreview:
    if not market.has_option(winning_option_id):
        raise InvalidWinningOption(market.market_id, winning_option_id)

    commitments = _active(market.commitments)
    total_pool = sum(item.tokens_committed for item in commitments)
    fees = get_fee_breakdown(
        total_pool,
        creator_fee_percentage,
        house_fee_percentage=house_fee_percentage,
        creator_fee_min=creator_fee_min,
        creator_fee_max=creator_fee_max,
    )

    winners = [item for item in commitments if item.option_id == winning_option_id]
    losers = [item for item in commitments if item.option_id != winning_option_id]
    total_winning = sum(item.tokens_committed for item in winners)

    payouts: list[WinnerPayout] = []
    if total_winning > 0:
        for item in winners:
            payout_amount = fees.winner_pool * item.tokens_committed // total_winning
            payouts.append(
                WinnerPayout(
                    user_id=item.user_id,
                    commitment_id=item.commitment_id,
                    tokens_staked=item.tokens_committed,
                    payout_amount=payout_amount,
                    profit=payout_amount - item.tokens_committed,
                    win_share=item.tokens_committed / total_winning,
                )
            )

    amounts = [payout.payout_amount for payout in payouts]
    distributed = sum(amounts)
    return PayoutPreview(
        market_id=market.market_id,
        winning_option_id=winning_option_id,
        total_pool=total_pool,
        total_winning_tokens=total_winning,
        house_fee=fees.house_fee,
        creator_fee=fees.creator_fee,
        winner_pool=fees.winner_pool,
        payouts=payouts,
        creator_payout=CreatorPayout(
            user_id=market.created_by,
            fee_amount=fees.creator_fee,
            fee_percentage=fees.creator_fee_percentage,
        ),
        fee_breakdown=fees,
        undistributed=fees.winner_pool - distributed,
        largest_payout=max(amounts, default=0),
        smallest_payout=min(amounts, default=0),
        average_payout=distributed // len(amounts) if amounts else 0,
        total_profit=sum(payout.profit for payout in payouts),
        losing_commitments=losers,
    )


__all__ = [
    "CREATOR_FEE_MAX",
    "CREATOR_FEE_MIN",
    "DEFAULT_CREATOR_FEE_PERCENTAGE",
    "HOUSE_FEE_PERCENTAGE",
    "floor_fee",
    "generate_payout_preview",
    "get_fee_breakdown",
    "validate_creator_fee",
]

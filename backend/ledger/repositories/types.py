"""Conversions from ORM records to detached domain snapshots."""

from __future__ import annotations

from ledger.domain import (
    BalanceSnapshot,
    CommitAttemptSnapshot,
    CommitmentSnapshot,
    MarketSnapshot,
    OptionSnapshot,
    ResolutionRecord,
    TransactionSnapshot,
)
from ledger.models import (
    CommitAttempt,
    Market,
    MarketResolution,
    PredictionCommitment,
    TokenTransaction,
    UserBalance,
)


def balance_snapshot(record: UserBalance) -> BalanceSnapshot:
    return BalanceSnapshot(
        user_id=record.user_id,
        available_tokens=record.available_tokens,
        committed_tokens=record.committed_tokens,
        total_earned=record.total_earned,
        total_spent=record.total_spent,
        last_updated=record.last_updated,
        version=record.version,
    )


def transaction_snapshot(record: TokenTransaction) -> TransactionSnapshot:
    return TransactionSnapshot(
        transaction_id=record.transaction_id,
        user_id=record.user_id,
        type=record.type,
        amount=record.amount,
        balance_before=record.balance_before,
        balance_after=record.balance_after,
        related_id=record.related_id,
        metadata=dict(record.details) if record.details else None,
        timestamp=record.timestamp,
        status=record.status,
    )


def commitment_snapshot(record: PredictionCommitment) -> CommitmentSnapshot:
    return CommitmentSnapshot(
        commitment_id=record.commitment_id,
        user_id=record.user_id,
        prediction_id=record.prediction_id,
        option_id=record.option_id,
        tokens_committed=record.tokens_committed,
        odds=record.odds,
        potential_winning=record.potential_winning,
        status=record.status,
        committed_at=record.committed_at,
        resolved_at=record.resolved_at,
        transaction_id=record.transaction_id,
        metadata=dict(record.details) if record.details else None,
    )


def commit_attempt_snapshot(record: CommitAttempt) -> CommitAttemptSnapshot:
    return CommitAttemptSnapshot(
        commitment_id=record.commitment_id,
        user_id=record.user_id,
        prediction_id=record.prediction_id,
        option_id=record.option_id,
        tokens=record.tokens,
        state=record.state,
        error_message=record.error_message,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def market_snapshot(
    record: Market, commitments: list[PredictionCommitment] | None = None
) -> MarketSnapshot:
    return MarketSnapshot(
        market_id=record.market_id,
        title=record.title,
        status=record.status,
        created_by=record.created_by,
        options=[
            OptionSnapshot(
                option_id=option.option_id,
                text=option.text,
                total_tokens=option.total_tokens,
                participant_count=option.participant_count,
                commitment_count=option.commitment_count,
                is_winner=option.is_winner,
            )
            for option in record.options
        ],
        commitments=[commitment_snapshot(item) for item in commitments or []],
        total_tokens_staked=record.total_tokens_staked,
        total_participants=record.total_participants,
    )


def resolution_record(record: MarketResolution) -> ResolutionRecord:
    return ResolutionRecord(
        resolution_id=record.resolution_id,
        market_id=record.market_id,
        winning_option_id=record.winning_option_id,
        evidence=list(record.evidence or []),
        resolved_by=record.resolved_by,
        resolved_at=record.resolved_at,
        winner_count=record.winner_count,
        total_payout=record.total_payout,
        creator_fee_amount=record.creator_fee_amount,
        house_fee_amount=record.house_fee_amount,
        undistributed_amount=record.undistributed_amount,
        status=record.status,
    )


__all__ = [
    "balance_snapshot",
    "commit_attempt_snapshot",
    "commitment_snapshot",
    "market_snapshot",
    "resolution_record",
    "transaction_snapshot",
]

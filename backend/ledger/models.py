from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class MarketStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PENDING_RESOLUTION = "pending_resolution"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    COMMIT = "commit"
    REFUND = "refund"
    PAYOUT = "payout"
    LOSS = "loss"
    ROLLBACK = "rollback"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class CommitmentStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class ResolutionStatus(str, Enum):
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class CommitAttemptState(str, Enum):
    ATTEMPTED = "attempted"
    COMMITTED = "committed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserBalance(Base):
    __tablename__ = "user_balances"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    available_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    committed_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # The ledger bumps ``version`` itself; SQLAlchemy adds ``WHERE version = <read value>``
    # to every UPDATE and raises StaleDataError when a concurrent writer got there first.
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}


class TokenTransaction(Base):
    __tablename__ = "token_transactions"

    transaction_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    related_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TransactionStatus.COMPLETED.value
    )

    __table_args__ = (Index("ix_token_transactions_user_type", "user_id", "type"),)


class Market(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.ACTIVE.value)
    total_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens_staked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    winning_option_id: Mapped[str | None] = mapped_column(String, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    options: Mapped[list["MarketOption"]] = relationship(
        "MarketOption",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="MarketOption.position",
    )


class MarketOption(Base):
    __tablename__ = "market_options"

    market_id: Mapped[str] = mapped_column(
        String, ForeignKey("markets.market_id"), primary_key=True
    )
    option_id: Mapped[str] = mapped_column(String, primary_key=True)
    text: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commitment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    market: Mapped[Market] = relationship("Market", back_populates="options")


class PredictionCommitment(Base):
    __tablename__ = "prediction_commitments"

    commitment_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    prediction_id: Mapped[str] = mapped_column(
        String, ForeignKey("markets.market_id"), nullable=False, index=True
    )
    option_id: Mapped[str] = mapped_column(String, nullable=False)
    tokens_committed: Mapped[int] = mapped_column(Integer, nullable=False)
    odds: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    potential_winning: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=CommitmentStatus.ACTIVE.value
    )
    committed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("token_transactions.transaction_id"), nullable=True
    )
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_prediction_commitments_market_status", "prediction_id", "status"),
    )


class MarketResolution(Base):
    __tablename__ = "market_resolutions"

    resolution_id: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[str] = mapped_column(
        String, ForeignKey("markets.market_id"), nullable=False, index=True
    )
    winning_option_id: Mapped[str] = mapped_column(String, nullable=False)
    evidence: Mapped[list | None] = mapped_column(JSON, nullable=True)
    resolved_by: Mapped[str] = mapped_column(String, nullable=False)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    winner_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_payout: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    creator_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    house_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    undistributed_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    creator_fee_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ResolutionStatus.COMPLETED.value
    )


class ResolutionLog(Base):
    __tablename__ = "resolution_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    admin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class CommitAttempt(Base):
    __tablename__ = "commit_attempts"

    commitment_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    prediction_id: Mapped[str] = mapped_column(String, nullable=False)
    option_id: Mapped[str] = mapped_column(String, nullable=False)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(
        String, nullable=False, default=CommitAttemptState.ATTEMPTED.value, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AdminUser(Base):
    __tablename__ = "admin_users"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

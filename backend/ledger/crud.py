from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy.orm import Session

from ledger.domain import OptionSnapshot
from ledger.models import MarketStatus
from ledger.repositories import (
    AdminRepository,
    BalanceRepository,
    CommitmentRepository,
    MarketRepository,
    ResolutionRepository,
)

from .models import (
    AdminUser,
    CommitAttempt,
    Market,
    MarketResolution,
    ResolutionLog,
    TokenTransaction,
    UserBalance,
)


def upsert_market(
    session: Session,
    *,
    market_id: str,
    title: str,
    options: Sequence[OptionSnapshot],
    created_by: str | None = None,
    status: MarketStatus | str = MarketStatus.ACTIVE,
    ends_at: datetime | None = None,
) -> Market:
    return MarketRepository(session).upsert_market(
        market_id=market_id,
        title=title,
        options=options,
        created_by=created_by,
        status=status,
        ends_at=ends_at,
    )


def get_market(session: Session, market_id: str) -> Market | None:
    return MarketRepository(session).get_market(market_id)


def list_markets(
    session: Session,
    *,
    status: str | None = None,
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Market], int]:
    return MarketRepository(session).list_markets(
        status=status, order=order, limit=limit, offset=offset
    )


def upsert_admin(
    session: Session, user_id: str, *, display_name: str | None = None, is_active: bool = True
) -> AdminUser:
    return AdminRepository(session).upsert_admin(
        user_id, display_name=display_name, is_active=is_active
    )


def get_balance(session: Session, user_id: str) -> UserBalance | None:
    return BalanceRepository(session).get_balance(user_id)


def list_transactions(session: Session, user_id: str) -> list[TokenTransaction]:
    return BalanceRepository(session).list_transactions(user_id)


def list_unfinished_attempts(session: Session, updated_before: datetime) -> list[CommitAttempt]:
    return CommitmentRepository(session).list_unfinished_attempts(updated_before)


def get_resolution(session: Session, resolution_id: str) -> MarketResolution | None:
    return ResolutionRepository(session).get_resolution(resolution_id)


def list_resolution_logs(session: Session, market_id: str) -> list[ResolutionLog]:
    return ResolutionRepository(session).list_logs(market_id)

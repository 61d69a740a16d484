"""Market-focused data access helpers."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import asc, case, desc, func, select, update
from sqlalchemy.orm import Session, selectinload

from ledger.domain import OptionSnapshot
from ledger.models import Market, MarketOption, MarketStatus


def _floored(column, amount: int):
    return case((column > amount, column - amount), else_=0)


class MarketRepository:
    """Encapsulate market, option, and aggregate persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_market(
        self,
        *,
        market_id: str,
        title: str,
        options: Sequence[OptionSnapshot],
        created_by: str | None = None,
        status: MarketStatus | str = MarketStatus.ACTIVE,
        ends_at: datetime | None = None,
    ) -> Market:
        existing = self._session.get(Market, market_id)
        is_new = False
        if existing is None:
            existing = Market(
                market_id=market_id,
                total_participants=0,
                total_tokens_staked=0,
            )
            is_new = True

        existing.title = title
        existing.created_by = created_by
        existing.status = MarketStatus(status).value
        existing.ends_at = ends_at

        existing_options = {option.option_id: option for option in existing.options}
        for position, option in enumerate(options):
            record = existing_options.pop(option.option_id, None)
            if record is None:
                record = MarketOption(
                    option_id=option.option_id,
                    total_tokens=0,
                    participant_count=0,
                    commitment_count=0,
                    is_winner=False,
                )
                existing.options.append(record)
            record.text = option.text
            record.position = position

        for orphan in existing_options.values():
            if orphan.total_tokens:
                raise ValueError(f"Option {orphan.option_id} holds stakes and cannot be removed")
            existing.options.remove(orphan)

        if is_new:
            self._session.add(existing)
        return existing

    def transition_status(
        self,
        market_id: str,
        from_statuses: Iterable[MarketStatus | str],
        to_status: MarketStatus,
        **values: Any,
    ) -> bool:
        """Conditionally move a market to ``to_status``.

        Returns False when the market left ``from_statuses`` in the meantime,
        so only one of several concurrent callers wins the transition.
        """

        allowed = [MarketStatus(status).value for status in from_statuses]
        stmt = (
            update(Market)
            .where(Market.market_id == market_id, Market.status.in_(allowed))
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session="fetch")
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1

    def add_stake(
        self,
        market_id: str,
        option_id: str,
        amount: int,
        *,
        new_option_participant: bool,
        new_market_participant: bool,
    ) -> bool:
        """Add a stake to the cached totals of an active market.

        The increments run in SQL so concurrent commits never overwrite each
        other. Returns False, changing nothing, once the market has left
        ``active``; the market row stays locked until the caller commits, which
        holds off a concurrent status transition.
        """

        market_stmt = (
            update(Market)
            .where(Market.market_id == market_id, Market.status == MarketStatus.ACTIVE.value)
            .values(
                total_tokens_staked=Market.total_tokens_staked + amount,
                total_participants=Market.total_participants + int(new_market_participant),
            )
            .execution_options(synchronize_session=False)
        )
        if self._session.execute(market_stmt).rowcount != 1:
            return False

        option_stmt = (
            update(MarketOption)
            .where(MarketOption.market_id == market_id, MarketOption.option_id == option_id)
            .values(
                total_tokens=MarketOption.total_tokens + amount,
                commitment_count=MarketOption.commitment_count + 1,
                participant_count=MarketOption.participant_count + int(new_option_participant),
            )
            .execution_options(synchronize_session=False)
        )
        self._session.execute(option_stmt)
        self._expire_aggregates(market_id, option_id)
        return True

    def release_stake(
        self,
        market_id: str,
        option_id: str,
        amount: int,
        *,
        option_participant_left: bool,
        market_participant_left: bool,
    ) -> None:
        market_stmt = (
            update(Market)
            .where(Market.market_id == market_id)
            .values(
                total_tokens_staked=_floored(Market.total_tokens_staked, amount),
                total_participants=_floored(
                    Market.total_participants, int(market_participant_left)
                ),
            )
            .execution_options(synchronize_session=False)
        )
        option_stmt = (
            update(MarketOption)
            .where(MarketOption.market_id == market_id, MarketOption.option_id == option_id)
            .values(
                total_tokens=_floored(MarketOption.total_tokens, amount),
                commitment_count=_floored(MarketOption.commitment_count, 1),
                participant_count=_floored(
                    MarketOption.participant_count, int(option_participant_left)
                ),
            )
            .execution_options(synchronize_session=False)
        )
        self._session.execute(market_stmt)
        self._session.execute(option_stmt)
        self._expire_aggregates(market_id, option_id)

    def _expire_aggregates(self, market_id: str, option_id: str) -> None:
        market = self._session.get(Market, market_id)
        if market is not None:
            self._session.expire(market, ["total_tokens_staked", "total_participants"])
        option = self._session.get(MarketOption, (market_id, option_id))
        if option is not None:
            self._session.expire(
                option, ["total_tokens", "commitment_count", "participant_count"]
            )

    def set_winning_option(self, market: Market, option_id: str | None) -> None:
        for option in market.options:
            option.is_winner = option_id is not None and option.option_id == option_id

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, market_id: str) -> Market | None:
        query = (
            select(Market)
            .options(selectinload(Market.options))
            .where(Market.market_id == market_id)
        )
        return self._session.execute(query).scalar_one_or_none()

    def get_option(self, market_id: str, option_id: str) -> MarketOption | None:
        return self._session.get(MarketOption, (market_id, option_id))

    def get_status(self, market_id: str) -> str | None:
        return self._session.execute(
            select(Market.status).where(Market.market_id == market_id)
        ).scalar_one_or_none()

    def list_markets(
        self,
        *,
        status: str | None = None,
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Market], int]:
        filters: list[Any] = []
        if status:
            filters.append(Market.status == status)

        sort_direction = asc if order.lower() != "desc" else desc
        query = (
            select(Market)
            .options(selectinload(Market.options))
            .where(*filters)
            .order_by(sort_direction(Market.created_at))
            .limit(limit)
            .offset(offset)
        )
        total_query = select(func.count(Market.market_id)).where(*filters)

        markets = self._session.execute(query).scalars().all()
        total = self._session.execute(total_query).scalar_one()
        return list(markets), total


__all__ = ["MarketRepository"]

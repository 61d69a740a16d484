"""Resolution records and the resolution audit log."""

from __future__ import annotations

from typing import Any

from sqlalchemy import asc, desc, select
from sqlalchemy.orm import Session

from ledger.models import MarketResolution, ResolutionLog, utcnow


class ResolutionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Resolutions

    def add_resolution(self, record: MarketResolution) -> MarketResolution:
        self._session.add(record)
        return record

    def get_resolution(self, resolution_id: str) -> MarketResolution | None:
        return self._session.get(MarketResolution, resolution_id)

    def latest_resolution(self, market_id: str) -> MarketResolution | None:
        stmt = (
            select(MarketResolution)
            .where(MarketResolution.market_id == market_id)
            .order_by(desc(MarketResolution.resolved_at))
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    # ------------------------------------------------------------------
    # Audit log

    def add_log(
        self,
        *,
        market_id: str,
        action: str,
        admin_id: str | None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ResolutionLog:
        record = ResolutionLog(
            market_id=market_id,
            action=action,
            admin_id=admin_id,
            timestamp=utcnow(),
            details=details,
            error=error,
        )
        self._session.add(record)
        return record

    def last_log(self, market_id: str) -> ResolutionLog | None:
        stmt = (
            select(ResolutionLog)
            .where(ResolutionLog.market_id == market_id)
            .order_by(desc(ResolutionLog.log_id))
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def list_logs(self, market_id: str) -> list[ResolutionLog]:
        stmt = (
            select(ResolutionLog)
            .where(ResolutionLog.market_id == market_id)
            .order_by(asc(ResolutionLog.log_id))
        )
        return list(self._session.scalars(stmt))


__all__ = ["ResolutionRepository"]

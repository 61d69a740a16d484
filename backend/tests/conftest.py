from __future__ import annotations

import os
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest

from ledger import crud
from ledger.core.config import Settings
from ledger.db import Base, build_db_components
from ledger.domain import OptionSnapshot
from ledger.models import MarketStatus, TransactionType
from ledger.services.admin_auth import AdminDirectory
from ledger.services.balance_service import BalanceService
from ledger.services.commitment_service import CommitmentService
from ledger.services.resolution_service import ResolutionService
from ledger.services.rollback_service import RollbackService

ADMIN_ID = "admin-1"
CREATOR_ID = "creator"


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'ledger.db'}",
        ledger_transaction_max_attempts=3,
        ledger_transaction_backoff_seconds="0",
    )
    monkeypatch.setattr("ledger.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("ledger.core.config.settings", settings)
    monkeypatch.setattr("ledger.db.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine, factory = build_db_components(test_settings.resolved_database_url)
    Base.metadata.create_all(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def balance_service(session_factory) -> BalanceService:
    return BalanceService(session_factory)


@pytest.fixture
def rollback_service(session_factory, balance_service, test_settings) -> RollbackService:
    return RollbackService(
        session_factory, balance_service=balance_service, settings=test_settings
    )


@pytest.fixture
def commitment_service(
    session_factory, balance_service, rollback_service, test_settings
) -> CommitmentService:
    return CommitmentService(
        session_factory,
        balance_service=balance_service,
        rollback_service=rollback_service,
        settings=test_settings,
    )


@pytest.fixture
def admin_directory(session_factory) -> AdminDirectory:
    directory = AdminDirectory(session_factory)
    directory.grant(ADMIN_ID, display_name="Test Admin")
    return directory


@pytest.fixture
def resolution_service(
    session_factory, admin_directory, balance_service, rollback_service, test_settings
) -> ResolutionService:
    return ResolutionService(
        session_factory,
        authorizer=admin_directory,
        balance_service=balance_service,
        rollback_service=rollback_service,
        settings=test_settings,
    )


@pytest.fixture
def make_market(session_factory) -> Callable[..., str]:
    """Create a market with the given option ids and return its id."""

    def _make(
        market_id: str = "market-1",
        options: Sequence[str] = ("yes", "no"),
        *,
        created_by: str | None = CREATOR_ID,
        status: MarketStatus = MarketStatus.ACTIVE,
    ) -> str:
        with session_factory() as session, session.begin():
            crud.upsert_market(
                session,
                market_id=market_id,
                title=f"Will {market_id} happen?",
                options=[OptionSnapshot(option_id=option, text=option.title()) for option in options],
                created_by=created_by,
                status=status,
            )
        return market_id

    return _make


@pytest.fixture
def fund(balance_service) -> Callable[[str, int], None]:
    def _fund(user_id: str, amount: int) -> None:
        balance_service.update_balance(user_id, amount, TransactionType.PURCHASE)

    return _fund


@pytest.fixture
def evidence() -> list[dict[str, str]]:
    return [
        {"type": "url", "content": "https://example.com/results"},
        {"type": "description", "content": "Official results were published."},
    ]

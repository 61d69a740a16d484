from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ledger.db import run_in_transaction
from ledger.errors import InvalidAmount, TransactionFailed
from ledger.models import TransactionType, UserBalance


def test_stale_balance_write_is_retried(session_factory, balance_service, fund):
    """Verify a write fenced on an outdated version re-runs against fresh data."""
    fund("alice", 100)
    seen_versions = []

    def work(session):
        record = session.get(UserBalance, "alice")
        seen_versions.append(record.version)
        if len(seen_versions) == 1:
            balance_service.update_balance("alice", 50, TransactionType.PURCHASE)
        record.available_tokens += 1
        record.version += 1
        session.flush()
        return record.available_tokens

    result = run_in_transaction(work, session_factory=session_factory, backoff=[0])

    assert result == 151
    assert seen_versions == [1, 2]
    assert balance_service.get_balance("alice").version == 3


@pytest.mark.parametrize(
    "error",
    [
        StaleDataError("stale"),
        IntegrityError("INSERT INTO user_balances", {}, Exception("duplicate key")),
        OperationalError("UPDATE user_balances", {}, Exception("database is locked")),
    ],
)
def test_conflicts_are_retried_until_exhausted(session_factory, error):
    calls = []

    def work(session):
        calls.append(1)
        raise error

    with pytest.raises(TransactionFailed) as excinfo:
        run_in_transaction(work, session_factory=session_factory, max_attempts=2, backoff=[0])

    assert len(calls) == 2
    assert excinfo.value.details == {"attempts": 2}
    assert excinfo.value.http_status == 500


def test_attempts_default_to_settings(session_factory, test_settings):
    calls = []

    def work(session):
        calls.append(1)
        raise StaleDataError("stale")

    with pytest.raises(TransactionFailed):
        run_in_transaction(work, session_factory=session_factory)

    assert len(calls) == test_settings.ledger_transaction_max_attempts


def test_backoff_schedule_is_followed(session_factory, monkeypatch):
    delays = []
    monkeypatch.setattr("ledger.db.time.sleep", delays.append)

    def work(session):
        raise StaleDataError("stale")

    with pytest.raises(TransactionFailed):
        run_in_transaction(
            work, session_factory=session_factory, max_attempts=4, backoff=[0.1, 0.2]
        )

    assert delays == [0.1, 0.2, 0.2]


def test_ledger_errors_abort_without_retry(session_factory, balance_service):
    """Verify a business-rule failure rolls back the unit and is raised unchanged."""
    calls = []

    def work(session):
        calls.append(1)
        session.add(UserBalance(user_id="bob", available_tokens=10, committed_tokens=0, version=0))
        session.flush()
        raise InvalidAmount("nope")

    with pytest.raises(InvalidAmount):
        run_in_transaction(work, session_factory=session_factory)

    assert calls == [1]
    assert balance_service.get_balance("bob").available_tokens == 0


def test_other_store_errors_become_transaction_failed(session_factory):
    calls = []

    def work(session):
        calls.append(1)
        raise SQLAlchemyError("connection reset")

    with pytest.raises(TransactionFailed) as excinfo:
        run_in_transaction(work, session_factory=session_factory, label="balance read")

    assert calls == [1]
    assert excinfo.value.message == "Balance read could not be completed; please retry"
    assert "connection reset" not in excinfo.value.message

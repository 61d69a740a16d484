from __future__ import annotations

import pytest
from pydantic import ValidationError

from ledger.core.config import Settings


def test_backoff_accepts_comma_separated_values():
    settings = Settings(ledger_transaction_backoff_seconds="0.1, 0.5,1")

    assert settings.ledger_transaction_backoff_schedule == (0.1, 0.5, 1.0)


@pytest.mark.parametrize("value", ["fast", "0.1,-1", ","])
def test_backoff_rejects_invalid_values(value):
    with pytest.raises(ValidationError):
        Settings(ledger_transaction_backoff_seconds=value)


def test_backoff_defaults_when_blank():
    assert Settings(ledger_transaction_backoff_seconds="").ledger_transaction_backoff_schedule == (
        0.05,
        0.1,
        0.2,
        0.4,
    )


def test_creator_fee_bounds_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(creator_fee_min=0.06, creator_fee_max=0.05)


def test_default_creator_fee_must_fall_within_bounds():
    with pytest.raises(ValidationError):
        Settings(default_creator_fee_percentage=0.2)


def test_postgres_urls_are_normalized_for_psycopg():
    """Verify that Heroku-style URLs are rewritten for the psycopg driver."""
    settings = Settings(database_url="postgres://user:pw@db.example.com:5432/ledger")

    url = settings.resolved_database_url

    assert url.startswith("postgresql+psycopg://user:pw@db.example.com:5432/ledger")
    assert "sslmode=require" in url


def test_production_requires_its_own_database_url():
    settings = Settings(environment="production", production_database_url=None)

    with pytest.raises(ValueError):
        settings.resolved_database_url


def test_production_database_url_must_be_postgres():
    with pytest.raises(ValidationError):
        Settings(environment="production", production_database_url="sqlite:///ledger.db")

from __future__ import annotations

import pytest

from ledger.errors import InsufficientBalance, InvalidAmount
from ledger.models import TransactionStatus, TransactionType


def test_purchase_credits_available_tokens(balance_service):
    """Verify a purchase lands in the available balance and bumps the version."""
    balance = balance_service.update_balance("alice", 1000, TransactionType.PURCHASE)

    assert balance.available_tokens == 1000
    assert balance.committed_tokens == 0
    assert balance.total_earned == 1000
    assert balance.total_tokens == 1000
    assert balance.version == 1


def test_commit_moves_tokens_into_committed(balance_service, fund):
    fund("alice", 1000)

    balance = balance_service.update_balance(
        "alice", 300, TransactionType.COMMIT, related_id="commitment-1"
    )

    assert balance.available_tokens == 700
    assert balance.committed_tokens == 300
    assert balance.total_tokens == 1000
    assert balance.version == 2


def test_refund_returns_committed_tokens(balance_service, fund):
    fund("alice", 1000)
    balance_service.update_balance("alice", 300, TransactionType.COMMIT)

    balance = balance_service.update_balance("alice", 300, TransactionType.REFUND)

    assert balance.available_tokens == 1000
    assert balance.committed_tokens == 0


def test_refund_cannot_exceed_committed_tokens(balance_service, fund):
    """Verify a refund larger than the committed stake mints nothing."""
    fund("alice", 500)
    balance_service.update_balance("alice", 100, TransactionType.COMMIT)

    with pytest.raises(InsufficientBalance):
        balance_service.update_balance("alice", 300, TransactionType.REFUND)

    balance = balance_service.get_balance("alice")
    assert (balance.available_tokens, balance.committed_tokens) == (400, 100)


def test_loss_releases_committed_tokens(balance_service, fund):
    fund("alice", 1000)
    balance_service.update_balance("alice", 300, TransactionType.COMMIT)

    balance = balance_service.update_balance("alice", 300, TransactionType.LOSS)

    assert balance.available_tokens == 700
    assert balance.committed_tokens == 0
    assert balance.total_spent == 300


def test_commit_without_funds_raises_and_writes_nothing(balance_service, fund):
    """Verify an overdraft leaves both the balance and the log untouched."""
    fund("bob", 50)

    with pytest.raises(InsufficientBalance) as excinfo:
        balance_service.update_balance("bob", 80, TransactionType.COMMIT)

    assert excinfo.value.available_tokens == 50
    assert excinfo.value.required_tokens == 80
    assert excinfo.value.to_payload()["availableTokens"] == 50
    balance = balance_service.get_balance("bob")
    assert balance.available_tokens == 50
    assert balance.version == 1
    assert [item.type for item in balance_service.get_transactions("bob")] == ["purchase"]


def test_loss_larger_than_committed_is_rejected(balance_service, fund):
    fund("alice", 100)

    with pytest.raises(InsufficientBalance):
        balance_service.update_balance("alice", 10, TransactionType.LOSS)


@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
def test_non_positive_or_non_integer_amounts_are_rejected(balance_service, amount):
    with pytest.raises(InvalidAmount):
        balance_service.update_balance("alice", amount, TransactionType.PURCHASE)


def test_unknown_transaction_type_is_rejected(balance_service):
    with pytest.raises(ValueError):
        balance_service.update_balance("alice", 10, "gift")


def test_get_balance_creates_an_empty_row(balance_service):
    """Verify a first read returns a zero balance instead of failing."""
    balance = balance_service.get_balance("newcomer")

    assert balance.user_id == "newcomer"
    assert balance.available_tokens == 0
    assert balance.committed_tokens == 0
    assert balance.version == 0
    assert balance_service.validate_sufficient_balance("newcomer", 1) is False
    assert balance_service.validate_sufficient_balance("newcomer", 0) is True


def test_transaction_log_chains_balances(balance_service, fund):
    """Verify every entry's balance_before equals the previous balance_after."""
    fund("alice", 500)
    balance_service.update_balance("alice", 200, TransactionType.COMMIT, related_id="c1")
    balance_service.update_balance("alice", 200, TransactionType.REFUND, related_id="c1")

    transactions = list(reversed(balance_service.get_transactions("alice")))

    assert [item.type for item in transactions] == ["purchase", "commit", "refund"]
    assert [(item.balance_before, item.balance_after) for item in transactions] == [
        (0, 500),
        (500, 300),
        (300, 500),
    ]
    assert all(item.amount > 0 for item in transactions)
    assert all(item.status == TransactionStatus.COMPLETED.value for item in transactions)
    assert transactions[1].related_id == "c1"


def test_get_transactions_filters_and_limits(balance_service, fund):
    fund("alice", 100)
    fund("alice", 200)
    balance_service.update_balance("alice", 50, TransactionType.COMMIT)

    purchases = balance_service.get_transactions("alice", types=[TransactionType.PURCHASE])
    latest = balance_service.get_transactions("alice", limit=1)

    assert [item.amount for item in purchases] == [200, 100]
    assert [item.type for item in latest] == ["commit"]


def test_metadata_is_stored_with_the_transaction(balance_service):
    balance_service.update_balance(
        "alice", 10, TransactionType.PURCHASE, metadata={"source": "promo"}
    )

    (transaction,) = balance_service.get_transactions("alice")

    assert transaction.metadata == {"source": "promo"}


def test_resolution_payout_and_its_reversal(balance_service, fund, session_factory):
    """Verify a winning payout releases the stake and a reversal restores it."""
    fund("alice", 1000)
    balance_service.update_balance("alice", 300, TransactionType.COMMIT)

    with session_factory() as session, session.begin():
        mutation = balance_service.apply_resolution_payout(
            session, "alice", stake=300, payout_amount=502, related_id="r1"
        )
        assert mutation.transaction.amount == 502

    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 1202
    assert balance.committed_tokens == 0
    assert balance.total_earned == 1202

    with session_factory() as session, session.begin():
        mutation = balance_service.reverse_resolution_entry(
            session, "alice", stake=300, payout_amount=502, related_id="r1"
        )
        assert mutation.transaction.type == TransactionType.ROLLBACK.value

    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 700
    assert balance.committed_tokens == 300
    assert balance.total_earned == 1000


def test_reversing_a_spent_payout_is_rejected(balance_service, fund, session_factory):
    fund("alice", 100)
    balance_service.update_balance("alice", 100, TransactionType.COMMIT)
    with session_factory() as session, session.begin():
        balance_service.apply_resolution_payout(session, "alice", stake=100, payout_amount=150)
    balance_service.update_balance("alice", 150, TransactionType.COMMIT)

    with pytest.raises(InsufficientBalance):
        with session_factory() as session, session.begin():
            balance_service.reverse_resolution_entry(
                session, "alice", stake=100, payout_amount=150
            )

    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 0
    assert balance.committed_tokens == 150

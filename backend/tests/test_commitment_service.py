from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from ledger import crud
from ledger.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidOption,
    MarketInactive,
    MarketNotFound,
    TransactionFailed,
)
from ledger.models import (
    CommitAttempt,
    CommitAttemptState,
    CommitmentStatus,
    MarketStatus,
    PredictionCommitment,
    TransactionType,
)
from ledger.repositories import CommitmentRepository, MarketRepository
from ledger.services.commitment_service import implied_odds


def _attempts(session_factory) -> list[tuple[str, str]]:
    with session_factory() as session:
        records = session.scalars(select(CommitAttempt)).all()
        return [(record.commitment_id, record.state) for record in records]


def _market_totals(session_factory, market_id="market-1"):
    with session_factory() as session:
        market = crud.get_market(session, market_id)
        options = {
            option.option_id: (option.total_tokens, option.participant_count, option.commitment_count)
            for option in market.options
        }
        return market.total_tokens_staked, market.total_participants, options


def _break_commit(monkeypatch, *, after_commit: bool) -> None:
    """Make the commit transaction report failure, optionally after it committed."""
    from ledger.services import commitment_service as module

    real = module.run_in_transaction

    def flaky(work, **kwargs):
        if kwargs.get("label") != "commit":
            return real(work, **kwargs)
        if after_commit:
            real(work, **kwargs)
        raise TransactionFailed("Connection lost while committing")

    monkeypatch.setattr(module, "run_in_transaction", flaky)


@pytest.mark.parametrize(
    ("market_total", "option_total", "stake", "expected"),
    [
        (0, 0, 100, (1.0, 100)),
        (100, 0, 50, (3.0, 150)),
        (900, 500, 100, (1.6667, 166)),
        (10, 3, 7, (1.7, 11)),
    ],
)
def test_implied_odds(market_total, option_total, stake, expected):
    assert implied_odds(market_total, option_total, stake) == expected


def test_commit_debits_balance_and_records_commitment(
    commitment_service, balance_service, make_market, fund, session_factory
):
    """Verify a successful commit moves tokens and records odds and aggregates."""
    make_market()
    fund("alice", 1000)

    result = commitment_service.create_commitment("alice", "market-1", "yes", 100)

    assert result.balance.available_tokens == 900
    assert result.balance.committed_tokens == 100
    assert result.commitment.status == CommitmentStatus.ACTIVE.value
    assert result.commitment.odds == 1.0
    assert result.commitment.potential_winning == 100
    assert result.commitment.transaction_id is not None

    (commit_tx,) = balance_service.get_transactions("alice", types=[TransactionType.COMMIT])
    assert commit_tx.related_id == result.commitment.commitment_id
    assert commit_tx.amount == 100
    assert _attempts(session_factory) == [
        (result.commitment.commitment_id, CommitAttemptState.COMMITTED.value)
    ]


def test_odds_and_participants_track_the_pool(commitment_service, make_market, fund, session_factory):
    make_market()
    fund("alice", 1000)
    fund("bob", 1000)

    commitment_service.create_commitment("alice", "market-1", "yes", 100)
    second = commitment_service.create_commitment("bob", "market-1", "no", 50)
    commitment_service.create_commitment("alice", "market-1", "yes", 25)

    assert second.commitment.odds == 3.0
    assert second.commitment.potential_winning == 150
    staked, participants, options = _market_totals(session_factory)
    assert staked == 175
    assert participants == 2
    assert options["yes"] == (125, 1, 2)
    assert options["no"] == (50, 1, 1)


def test_concurrent_commits_both_reach_the_market_totals(
    commitment_service, make_market, fund, session_factory
):
    """Verify a commit holding stale market rows still adds to the latest totals."""
    make_market()
    fund("alice", 1000)
    fund("bob", 1000)
    commitment_service._record_attempt("c-alice", "alice", "market-1", "yes", 100)

    with session_factory() as session, session.begin():
        MarketRepository(session).get_market("market-1")
        commitment_service.create_commitment("bob", "market-1", "yes", 200)
        commitment_service._commit(session, "c-alice", "alice", "market-1", "yes", 100)

    staked, participants, options = _market_totals(session_factory)
    assert staked == 300
    assert participants == 2
    assert options["yes"] == (300, 2, 2)


def test_commit_loses_to_a_market_leaving_active(
    commitment_service, balance_service, make_market, fund, session_factory
):
    make_market()
    fund("alice", 1000)
    commitment_service._record_attempt("c-alice", "alice", "market-1", "yes", 100)

    with pytest.raises(MarketInactive) as excinfo:
        with session_factory() as session, session.begin():
            MarketRepository(session).get_market("market-1")
            with session_factory() as other, other.begin():
                assert MarketRepository(other).transition_status(
                    "market-1", [MarketStatus.ACTIVE], MarketStatus.RESOLVING
                )
            commitment_service._commit(session, "c-alice", "alice", "market-1", "yes", 100)

    assert excinfo.value.status == MarketStatus.RESOLVING.value
    assert balance_service.get_balance("alice").committed_tokens == 0
    assert _market_totals(session_factory)[:2] == (0, 0)
    with session_factory() as session:
        assert session.get(PredictionCommitment, "c-alice") is None


def test_commit_more_than_available_is_rejected(commitment_service, balance_service, make_market, fund, session_factory):
    """Verify a 100-token commit against 50 available changes nothing."""
    make_market()
    fund("alice", 50)

    with pytest.raises(InsufficientBalance) as excinfo:
        commitment_service.create_commitment("alice", "market-1", "yes", 100)

    assert excinfo.value.error_code == "INSUFFICIENT_BALANCE"
    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 50
    assert balance.committed_tokens == 0
    assert _attempts(session_factory) == []


def test_unfunded_user_cannot_commit(commitment_service, make_market):
    make_market()

    with pytest.raises(InsufficientBalance):
        commitment_service.create_commitment("ghost", "market-1", "yes", 1)


@pytest.mark.parametrize("status", [MarketStatus.PENDING_RESOLUTION, MarketStatus.RESOLVED, MarketStatus.DRAFT])
def test_commit_requires_an_active_market(commitment_service, make_market, fund, status):
    make_market(status=status)
    fund("alice", 100)

    with pytest.raises(MarketInactive):
        commitment_service.create_commitment("alice", "market-1", "yes", 10)


def test_commit_to_unknown_market_is_rejected(commitment_service, fund):
    fund("alice", 100)

    with pytest.raises(MarketNotFound):
        commitment_service.create_commitment("alice", "missing", "yes", 10)


def test_commit_to_unknown_option_is_rejected(commitment_service, make_market, fund):
    make_market()
    fund("alice", 100)

    with pytest.raises(InvalidOption):
        commitment_service.create_commitment("alice", "market-1", "maybe", 10)


@pytest.mark.parametrize("tokens", [0, -1, 2.5, 10_001])
def test_commit_amount_is_validated(commitment_service, make_market, fund, tokens):
    make_market()
    fund("alice", 20_000)

    with pytest.raises(InvalidAmount):
        commitment_service.create_commitment("alice", "market-1", "yes", tokens)


def test_commit_that_landed_despite_failure_is_compensated(
    commitment_service, balance_service, make_market, fund, session_factory, monkeypatch
):
    """Verify the saga refunds a commit whose success report was lost."""
    make_market()
    fund("alice", 1000)
    _break_commit(monkeypatch, after_commit=True)

    with pytest.raises(TransactionFailed):
        commitment_service.create_commitment("alice", "market-1", "yes", 300)

    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 1000
    assert balance.committed_tokens == 0
    ((commitment_id, state),) = _attempts(session_factory)
    assert state == CommitAttemptState.COMPENSATED.value
    with session_factory() as session:
        commitment = session.get(PredictionCommitment, commitment_id)
        assert commitment.status == CommitmentStatus.REFUNDED.value
        assert commitment.details["rollbackType"] == "commitment_failed"
    assert _market_totals(session_factory)[0] == 0
    refunds = balance_service.get_transactions("alice", types=[TransactionType.REFUND])
    assert [item.amount for item in refunds] == [300]


def test_commit_that_never_landed_is_marked_compensated(
    commitment_service, balance_service, make_market, fund, session_factory, monkeypatch
):
    make_market()
    fund("alice", 1000)
    _break_commit(monkeypatch, after_commit=False)

    with pytest.raises(TransactionFailed):
        commitment_service.create_commitment("alice", "market-1", "yes", 300)

    assert balance_service.get_balance("alice").available_tokens == 1000
    assert balance_service.get_transactions("alice", types=[TransactionType.REFUND]) == []
    ((_, state),) = _attempts(session_factory)
    assert state == CommitAttemptState.COMPENSATED.value


def test_resume_finishes_abandoned_attempts(
    commitment_service, balance_service, make_market, fund, session_factory
):
    """Verify the resume job settles landed, missing, and half-compensated attempts."""
    make_market()
    fund("alice", 1000)
    landed = commitment_service.create_commitment("alice", "market-1", "yes", 100)
    stuck = commitment_service.create_commitment("alice", "market-1", "no", 200)

    with session_factory() as session, session.begin():
        repo = CommitmentRepository(session)
        repo.transition_attempt(
            landed.commitment.commitment_id,
            [CommitAttemptState.COMMITTED],
            CommitAttemptState.ATTEMPTED,
        )
        repo.transition_attempt(
            stuck.commitment.commitment_id,
            [CommitAttemptState.COMMITTED],
            CommitAttemptState.COMPENSATING,
            error_message="worker crashed",
        )
        repo.record_attempt(
            commitment_id="never-landed",
            user_id="alice",
            prediction_id="market-1",
            option_id="yes",
            tokens=50,
        )

    resumed = commitment_service.resume_pending_attempts(timedelta(0))

    states = {attempt.commitment_id: attempt.state for attempt in resumed}
    assert states == {
        landed.commitment.commitment_id: CommitAttemptState.COMMITTED.value,
        stuck.commitment.commitment_id: CommitAttemptState.COMPENSATED.value,
        "never-landed": CommitAttemptState.COMPENSATED.value,
    }
    balance = balance_service.get_balance("alice")
    assert balance.available_tokens == 900
    assert balance.committed_tokens == 100
    assert commitment_service.resume_pending_attempts(timedelta(0)) == []


def test_resume_skips_recent_attempts(commitment_service, session_factory):
    with session_factory() as session, session.begin():
        CommitmentRepository(session).record_attempt(
            commitment_id="fresh",
            user_id="alice",
            prediction_id="market-1",
            option_id="yes",
            tokens=50,
        )

    assert commitment_service.resume_pending_attempts(timedelta(hours=1)) == []
    assert _attempts(session_factory) == [("fresh", CommitAttemptState.ATTEMPTED.value)]


def test_commitment_reads_are_lazy_and_filterable(commitment_service, rollback_service, make_market, fund):
    make_market()
    make_market("market-2")
    fund("alice", 1000)
    fund("bob", 1000)
    first = commitment_service.create_commitment("alice", "market-1", "yes", 10)
    commitment_service.create_commitment("alice", "market-2", "no", 20)
    commitment_service.create_commitment("bob", "market-1", "no", 30)
    rollback_service.rollback_multiple_commitments("market-2", "test cleanup")

    stream = commitment_service.get_user_commitments("alice")
    assert iter(stream) is stream

    assert {item.prediction_id for item in stream} == {"market-1", "market-2"}
    active = list(commitment_service.get_user_commitments("alice", CommitmentStatus.ACTIVE))
    assert [item.commitment_id for item in active] == [first.commitment.commitment_id]
    market_users = {item.user_id for item in commitment_service.get_prediction_commitments("market-1")}
    assert market_users == {"alice", "bob"}
    assert list(commitment_service.get_prediction_commitments("market-1", "refunded")) == []

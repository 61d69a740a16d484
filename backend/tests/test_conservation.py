from __future__ import annotations

import random

import pytest
from sqlalchemy import func, select

from conftest import ADMIN_ID, CREATOR_ID
from ledger.domain import RollbackRequest
from ledger.errors import LedgerError
from ledger.models import MarketResolution, ResolutionStatus, UserBalance
from ledger.services.reconciliation_service import ReconciliationService

USERS = ("u0", "u1", "u2", "u3", CREATOR_ID)
MARKETS = ("m0", "m1", "m2")
OPTIONS = ("a", "b", "c")


def _retained_by_house(session_factory) -> int:
    with session_factory() as session:
        stmt = select(
            func.coalesce(
                func.sum(MarketResolution.house_fee_amount + MarketResolution.undistributed_amount), 0
            )
        ).where(MarketResolution.status == ResolutionStatus.COMPLETED.value)
        return int(session.scalar(stmt))


def _held_by_users(session_factory) -> int:
    with session_factory() as session:
        balances = session.scalars(select(UserBalance)).all()
        assert all(item.available_tokens >= 0 and item.committed_tokens >= 0 for item in balances)
        return sum(item.available_tokens + item.committed_tokens for item in balances)


@pytest.mark.parametrize("seed", [3, 11, 2024])
def test_random_operations_conserve_tokens(
    seed,
    session_factory,
    balance_service,
    commitment_service,
    rollback_service,
    resolution_service,
    make_market,
    fund,
    evidence,
):
    """Verify no sequence of ledger operations mints or burns tokens."""
    rng = random.Random(seed)
    for market_id in MARKETS:
        make_market(market_id, options=OPTIONS)
    purchased = 0

    def do_fund():
        nonlocal purchased
        amount = rng.randint(1, 500)
        fund(rng.choice(USERS), amount)
        purchased += amount

    def do_commit():
        commitment_service.create_commitment(
            rng.choice(USERS), rng.choice(MARKETS), rng.choice(OPTIONS), rng.randint(1, 300)
        )

    def do_refund():
        user_id = rng.choice(USERS)
        active = list(commitment_service.get_user_commitments(user_id, "active"))
        if active:
            rollback_service.rollback_commitment(
                RollbackRequest(
                    user_id=user_id,
                    reason="random refund",
                    commitment_id=rng.choice(active).commitment_id,
                )
            )

    def do_resolve():
        resolution_service.resolve_market(
            rng.choice(MARKETS),
            rng.choice(OPTIONS),
            evidence,
            ADMIN_ID,
            rng.choice([0.01, 0.02, 0.033, 0.05]),
        )

    def do_cancel():
        resolution_service.cancel_market(rng.choice(MARKETS), "random cancel", ADMIN_ID)

    def do_rollback_resolution():
        market_id = rng.choice(MARKETS)
        record = resolution_service.get_market_resolution(market_id)
        if record is not None and record.status == ResolutionStatus.COMPLETED.value:
            resolution_service.rollback_resolution(market_id, record.resolution_id, ADMIN_ID)

    actions = [do_fund, do_commit, do_refund, do_resolve, do_cancel, do_rollback_resolution]
    weights = [4, 8, 2, 1, 0.3, 1]

    for _ in range(80):
        action = rng.choices(actions, weights=weights)[0]
        try:
            action()
        except LedgerError:
            pass
        assert _held_by_users(session_factory) + _retained_by_house(session_factory) == purchased

    report = ReconciliationService(session_factory).reconcile_users()
    assert report.inconsistent == []
    assert {audit.user_id for audit in report.audits} <= set(USERS)

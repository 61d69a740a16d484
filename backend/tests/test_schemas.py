from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from ledger.domain import BalanceSnapshot, CommitmentSnapshot
from ledger.schemas import Balance, CommitRequest, Commitment, ResolveRequest


def test_commit_request_accepts_camel_case_and_coerces_position():
    """Verify that numeric option positions are accepted as option ids."""
    request = CommitRequest.model_validate(
        {"predictionId": "m1", "tokensToCommit": 25, "position": 2, "userId": "alice"}
    )

    assert request.prediction_id == "m1"
    assert request.tokens_to_commit == 25
    assert request.position == "2"


@pytest.mark.parametrize("tokens", [0, -10, 10_001])
def test_commit_request_bounds_token_amount(tokens):
    with pytest.raises(ValidationError):
        CommitRequest(prediction_id="m1", tokens_to_commit=tokens, position="yes", user_id="alice")


def test_commit_request_rejects_boolean_position():
    with pytest.raises(ValidationError):
        CommitRequest(prediction_id="m1", tokens_to_commit=1, position=True, user_id="alice")


def test_balance_serializes_with_camel_case_aliases():
    """Verify that snapshots dump with the camelCase keys clients expect."""
    snapshot = BalanceSnapshot(
        user_id="alice",
        available_tokens=700,
        committed_tokens=300,
        total_earned=1000,
        total_spent=0,
        last_updated=datetime(2026, 1, 1, tzinfo=timezone.utc),
        version=2,
    )

    payload = Balance.model_validate(snapshot).model_dump(by_alias=True)

    assert payload["availableTokens"] == 700
    assert payload["committedTokens"] == 300
    assert payload["totalTokens"] == 1000
    assert "version" not in payload


def test_commitment_reads_domain_snapshots():
    snapshot = CommitmentSnapshot(
        commitment_id="c1",
        user_id="alice",
        prediction_id="m1",
        option_id="yes",
        tokens_committed=100,
        odds=1.5,
        potential_winning=150,
        status="active",
        committed_at=None,
    )

    commitment = Commitment.model_validate(snapshot)

    assert commitment.model_dump(by_alias=True)["potentialWinning"] == 150


def test_resolve_request_parses_evidence():
    request = ResolveRequest.model_validate(
        {
            "winningOptionId": "yes",
            "evidence": [{"type": "url", "content": "https://example.com"}],
            "creatorFeePercentage": 0.03,
        }
    )

    assert request.evidence[0].model_dump() == {
        "type": "url",
        "content": "https://example.com",
        "description": None,
    }
    assert request.creator_fee_percentage == 0.03

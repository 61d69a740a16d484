from __future__ import annotations

from itertools import islice
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from . import schemas
from .core.config import settings
from .db import get_session_factory, init_db
from .domain import RollbackRequest, RollbackType
from .errors import LedgerError
from .models import TransactionType
from .services.admin_auth import AdminDirectory, require_admin
from .services.balance_service import BalanceService
from .services.commitment_service import CommitmentService
from .services.resolution_service import ResolutionService
from .services.rollback_service import RollbackService

app = FastAPI(title="Token Ledger API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create ledger tables when the API boots."""

    init_db()


def _validation_error(message: str, errors: list[dict[str, object]] | None = None) -> JSONResponse:
    content: dict[str, object] = {
        "success": False,
        "error": "Invalid request data",
        "errorCode": "VALIDATION_ERROR",
        "message": message,
    }
    if errors is not None:
        content["details"] = errors
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    payload = exc.to_payload()
    market_id = request.path_params.get("market_id")
    if market_id is not None:
        payload.setdefault("marketId", market_id)
    if exc.http_status >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=payload)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    return _validation_error("Request failed validation", errors)


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Dependencies


def _balance_service(session_factory=Depends(get_session_factory)) -> BalanceService:
    return BalanceService(session_factory)


def _rollback_service(session_factory=Depends(get_session_factory)) -> RollbackService:
    return RollbackService(session_factory)


def _commitment_service(session_factory=Depends(get_session_factory)) -> CommitmentService:
    """Provide the commitment service wired with the process session factory."""

    return CommitmentService(session_factory)


def _resolution_service(session_factory=Depends(get_session_factory)) -> ResolutionService:
    return ResolutionService(session_factory)


def _admin_authorizer(session_factory=Depends(get_session_factory)) -> AdminDirectory:
    return AdminDirectory(session_factory)


AdminHeader = Annotated[str | None, Header(description="Acting admin user id (X-User-Id)")]


# ----------------------------------------------------------------------
# Token endpoints


@app.post("/tokens/commit", response_model=schemas.CommitResponse, tags=["tokens"])
def commit_tokens(
    payload: schemas.CommitRequest,
    service: CommitmentService = Depends(_commitment_service),
):
    """Stake tokens on one option of an active market."""

    result = service.create_commitment(
        payload.user_id, payload.prediction_id, payload.position, payload.tokens_to_commit
    )
    return schemas.CommitResponse(
        success=True,
        commitment=schemas.Commitment.model_validate(result.commitment),
        updated_balance=schemas.Balance.model_validate(result.balance),
    )


@app.get("/tokens/commitments", response_model=schemas.CommitmentList, tags=["tokens"])
def list_commitments(
    *,
    user_id: Annotated[str | None, Query(alias="userId")] = None,
    prediction_id: Annotated[str | None, Query(alias="predictionId")] = None,
    status: Annotated[
        str | None, Query(pattern="^(active|won|lost|refunded)$", description="Commitment status")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    service: CommitmentService = Depends(_commitment_service),
):
    """List commitments of a user or of a market, newest first."""

    if user_id:
        stream = service.get_user_commitments(user_id, status)
        if prediction_id:
            stream = (item for item in stream if item.prediction_id == prediction_id)
    elif prediction_id:
        stream = service.get_prediction_commitments(prediction_id, status)
    else:
        return _validation_error("Either userId or predictionId is required")

    items = [schemas.Commitment.model_validate(item) for item in islice(stream, limit)]
    return schemas.CommitmentList(total=len(items), items=items)


@app.get("/tokens/balance/{user_id}", response_model=schemas.Balance, tags=["tokens"])
def get_balance(user_id: str, service: BalanceService = Depends(_balance_service)):
    return schemas.Balance.model_validate(service.get_balance(user_id))


@app.post("/tokens/rollback", response_model=schemas.RollbackResult, tags=["tokens"])
def rollback_commitment(
    payload: schemas.RollbackRequest,
    service: RollbackService = Depends(_rollback_service),
):
    """Refund a recent, still-active commitment back to the user's available balance."""

    if not payload.commitment_id and payload.transaction_id is None:
        return _validation_error("Either commitmentId or transactionId is required")

    result = service.rollback_commitment(
        RollbackRequest(
            user_id=payload.user_id,
            reason=payload.reason,
            rollback_type=RollbackType.MANUAL_REFUND,
            commitment_id=payload.commitment_id,
            transaction_id=payload.transaction_id,
        )
    )
    return schemas.RollbackResult.model_validate(result)


# ----------------------------------------------------------------------
# Admin endpoints


@app.post("/admin/tokens/issue", response_model=schemas.IssueTokensResponse, tags=["admin"])
def issue_tokens(
    payload: schemas.IssueTokensRequest,
    x_user_id: AdminHeader = None,
    authorizer: AdminDirectory = Depends(_admin_authorizer),
    service: BalanceService = Depends(_balance_service),
):
    """Credit purchased tokens to a user's available balance."""

    admin_id = require_admin(authorizer, x_user_id)
    balance = service.update_balance(
        payload.user_id,
        payload.amount,
        TransactionType.PURCHASE,
        metadata={"issuedBy": admin_id, "reason": payload.reason},
    )
    logger.info("Admin {} issued {} tokens to {}", admin_id, payload.amount, payload.user_id)
    return schemas.IssueTokensResponse(success=True, balance=schemas.Balance.model_validate(balance))


@app.get(
    "/admin/markets/{market_id}/payout-preview",
    response_model=schemas.PayoutPreview,
    tags=["admin"],
)
def payout_preview(
    market_id: str,
    winning_option_id: Annotated[str, Query(alias="winningOptionId", min_length=1)],
    creator_fee_percentage: Annotated[float | None, Query(alias="creatorFeePercentage")] = None,
    x_user_id: AdminHeader = None,
    service: ResolutionService = Depends(_resolution_service),
):
    """Show what resolving the market for an option would pay out, without writing anything."""

    service.authorize(x_user_id)
    preview = service.get_payout_preview(market_id, winning_option_id, creator_fee_percentage)
    return schemas.PayoutPreview.model_validate(preview)


@app.post(
    "/admin/markets/{market_id}/resolve",
    response_model=schemas.ResolveResponse,
    tags=["admin"],
)
def resolve_market(
    market_id: str,
    payload: schemas.ResolveRequest,
    x_user_id: AdminHeader = None,
    service: ResolutionService = Depends(_resolution_service),
):
    outcome = service.resolve_market(
        market_id,
        payload.winning_option_id,
        [item.model_dump() for item in payload.evidence],
        x_user_id,
        payload.creator_fee_percentage,
    )
    return schemas.ResolveResponse.model_validate(outcome)


@app.post(
    "/admin/markets/{market_id}/cancel",
    response_model=schemas.CancelResponse,
    tags=["admin"],
)
def cancel_market(
    market_id: str,
    payload: schemas.CancelRequest,
    x_user_id: AdminHeader = None,
    service: ResolutionService = Depends(_resolution_service),
):
    """Cancel an unresolved market and refund its active commitments."""

    outcome = service.cancel_market(market_id, payload.reason, x_user_id)
    return schemas.CancelResponse.model_validate(outcome)


@app.post(
    "/admin/markets/{market_id}/resolutions/{resolution_id}/rollback",
    response_model=schemas.ResolutionRollbackResponse,
    tags=["admin"],
)
def rollback_resolution(
    market_id: str,
    resolution_id: str,
    x_user_id: AdminHeader = None,
    service: ResolutionService = Depends(_resolution_service),
):
    """Reverse a completed resolution and reopen the market for resolution."""

    outcome = service.rollback_resolution(market_id, resolution_id, x_user_id)
    return schemas.ResolutionRollbackResponse.model_validate(outcome)


@app.get(
    "/admin/markets/{market_id}/resolution-status",
    response_model=schemas.ResolutionStatus,
    tags=["admin"],
)
def resolution_status(
    market_id: str,
    x_user_id: AdminHeader = None,
    service: ResolutionService = Depends(_resolution_service),
):
    service.authorize(x_user_id)
    return schemas.ResolutionStatus.model_validate(service.get_resolution_status(market_id))

"""Ledger error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for failures the ledger reports to callers.

    ``error_code`` is the machine-readable identifier surfaced to clients and
    ``details`` carries structured context (never raw database error text).
    """

    error_code = "LEDGER_ERROR"
    http_status = 400
    default_message = "Ledger operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.default_message,
            "errorCode": self.error_code,
            "message": self.message,
        }
        payload.update(self.details)
        return payload


class InsufficientBalance(LedgerError):
    error_code = "INSUFFICIENT_BALANCE"
    default_message = "Insufficient balance"

    def __init__(self, available_tokens: int, required_tokens: int, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Insufficient balance: available={available_tokens}, required={required_tokens}",
            availableTokens=available_tokens,
            requiredTokens=required_tokens,
        )
        self.available_tokens = available_tokens
        self.required_tokens = required_tokens


class InvalidAmount(LedgerError):
    error_code = "INVALID_AMOUNT"
    default_message = "Invalid token amount"


class MarketNotFound(LedgerError):
    error_code = "MARKET_NOT_FOUND"
    http_status = 404
    default_message = "Market not found"

    def __init__(self, market_id: str, message: str | None = None) -> None:
        super().__init__(message, marketId=market_id)
        self.market_id = market_id


class MarketInactive(LedgerError):
    error_code = "MARKET_INACTIVE"
    default_message = "Market is not active"

    def __init__(self, market_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message, marketId=market_id, status=status)
        self.market_id = market_id
        self.status = status


class MarketNotReady(LedgerError):
    error_code = "MARKET_NOT_READY"
    http_status = 409
    default_message = "Market is not ready for resolution"

    def __init__(self, market_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message, marketId=market_id, status=status)
        self.market_id = market_id
        self.status = status


class AlreadyResolved(LedgerError):
    error_code = "ALREADY_RESOLVED"
    http_status = 409
    default_message = "Market is already resolved"

    def __init__(self, market_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message, marketId=market_id, status=status)
        self.market_id = market_id
        self.status = status


class Unauthorized(LedgerError):
    error_code = "UNAUTHORIZED"
    http_status = 401
    default_message = "Unauthorized"


class InvalidEvidence(LedgerError):
    error_code = "INVALID_EVIDENCE"
    default_message = "Invalid evidence"

    def __init__(self, errors: list[dict[str, str]], market_id: str | None = None) -> None:
        summary = ", ".join(error["message"] for error in errors) or "no evidence supplied"
        details: dict[str, Any] = {"errors": errors}
        if market_id is not None:
            details["marketId"] = market_id
        super().__init__(f"Invalid evidence: {summary}", **details)
        self.errors = errors


class InvalidWinningOption(LedgerError):
    error_code = "INVALID_WINNING_OPTION"
    default_message = "Invalid winning option"

    def __init__(self, market_id: str, option_id: str) -> None:
        super().__init__(
            f"Invalid winning option ID: {option_id}", marketId=market_id, optionId=option_id
        )


class InvalidOption(LedgerError):
    error_code = "INVALID_OPTION"
    default_message = "Invalid market option"

    def __init__(self, market_id: str, option_id: str) -> None:
        super().__init__(
            f"Option {option_id} does not belong to market {market_id}",
            marketId=market_id,
            optionId=option_id,
        )


class InvalidCreatorFee(LedgerError):
    error_code = "INVALID_CREATOR_FEE"
    default_message = "Invalid creator fee percentage"

    def __init__(self, percentage: float, minimum: float, maximum: float) -> None:
        super().__init__(
            f"Creator fee must be between {minimum * 100:g}% and {maximum * 100:g}%",
            creatorFeePercentage=percentage,
        )


class TransactionFailed(LedgerError):
    error_code = "TRANSACTION_FAILED"
    http_status = 500
    default_message = "Transaction failed"


class NothingToRollback(LedgerError):
    error_code = "NOTHING_TO_ROLLBACK"
    http_status = 404
    default_message = "No commitment or transaction found to rollback"


class RollbackIneligible(LedgerError):
    error_code = "ROLLBACK_INELIGIBLE"
    http_status = 409
    default_message = "Commitment cannot be rolled back"


class ResolutionNotFound(LedgerError):
    error_code = "RESOLUTION_NOT_FOUND"
    http_status = 404
    default_message = "Resolution not found"


__all__ = [
    "AlreadyResolved",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidCreatorFee",
    "InvalidEvidence",
    "InvalidOption",
    "InvalidWinningOption",
    "LedgerError",
    "MarketInactive",
    "MarketNotFound",
    "MarketNotReady",
    "NothingToRollback",
    "ResolutionNotFound",
    "RollbackIneligible",
    "TransactionFailed",
    "Unauthorized",
]

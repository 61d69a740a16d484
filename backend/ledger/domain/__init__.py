"""Domain models exchanged between the ledger services and their callers."""

from .models import (
    BalanceAudit,
    BalanceSnapshot,
    CancellationOutcome,
    CommitAttemptSnapshot,
    CommitmentSnapshot,
    CommitResult,
    CreatorPayout,
    EvidenceItem,
    FeeBreakdown,
    MarketSnapshot,
    OptionSnapshot,
    PayoutPreview,
    ReconciliationReport,
    ResolutionOutcome,
    ResolutionRecord,
    ResolutionRollbackOutcome,
    ResolutionStatusReport,
    RollbackEligibility,
    RollbackRequest,
    RollbackResult,
    RollbackType,
    TransactionSnapshot,
    WinnerPayout,
)

__all__ = [
    "BalanceAudit",
    "BalanceSnapshot",
    "CancellationOutcome",
    "CommitAttemptSnapshot",
    "CommitmentSnapshot",
    "CommitResult",
    "CreatorPayout",
    "EvidenceItem",
    "FeeBreakdown",
    "MarketSnapshot",
    "OptionSnapshot",
    "PayoutPreview",
    "ReconciliationReport",
    "ResolutionOutcome",
    "ResolutionRecord",
    "ResolutionRollbackOutcome",
    "ResolutionStatusReport",
    "RollbackEligibility",
    "RollbackRequest",
    "RollbackResult",
    "RollbackType",
    "TransactionSnapshot",
    "WinnerPayout",
]

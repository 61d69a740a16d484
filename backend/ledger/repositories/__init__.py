"""Repository abstractions for database interactions."""

from .admin_repository import AdminRepository
from .balance_repository import BalanceRepository
from .commitment_repository import CommitmentRepository
from .market_repository import MarketRepository
from .resolution_repository import ResolutionRepository

__all__ = [
    "AdminRepository",
    "BalanceRepository",
    "CommitmentRepository",
    "MarketRepository",
    "ResolutionRepository",
]

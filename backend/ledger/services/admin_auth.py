from __future__ import annotations

from typing import Protocol

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ledger.db import run_in_transaction
from ledger.errors import Unauthorized
from ledger.repositories import AdminRepository


class AdminAuthorizer(Protocol):
    def is_admin(self, user_id: str) -> bool: ...


class AdminDirectory:
    """Admin membership backed by the ``admin_users`` table."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    def is_admin(self, user_id: str) -> bool:
        def work(session: Session) -> bool:
            record = AdminRepository(session).get_admin(user_id)
            return bool(record and record.is_active)

        return run_in_transaction(
            work, session_factory=self._session_factory, label="admin lookup", max_attempts=1
        )

    def grant(self, user_id: str, display_name: str | None = None) -> None:
        self._store(user_id, display_name=display_name, is_active=True)
        logger.info("Granted admin rights to {}", user_id)

    def revoke(self, user_id: str) -> None:
        self._store(user_id, is_active=False)
        logger.info("Revoked admin rights from {}", user_id)

    def _store(self, user_id: str, *, display_name: str | None = None, is_active: bool) -> None:
        def work(session: Session) -> None:
            AdminRepository(session).upsert_admin(
                user_id, display_name=display_name, is_active=is_active
            )

        run_in_transaction(work, session_factory=self._session_factory, label="admin update")


def require_admin(authorizer: AdminAuthorizer, admin_id: str | None) -> str:
    """Return ``admin_id`` when it names an active admin, else raise ``Unauthorized``.

    An authorizer that fails is treated as a denial.
    """

    if not admin_id or not admin_id.strip():
        raise Unauthorized("Admin privileges required")
    try:
        allowed = authorizer.is_admin(admin_id)
    except Exception as exc:
        logger.warning("Admin check for {} failed: {}", admin_id, exc)
        raise Unauthorized("Admin privileges required") from exc
    if not allowed:
        raise Unauthorized("Admin privileges required")
    return admin_id


__all__ = ["AdminAuthorizer", "AdminDirectory", "require_admin"]

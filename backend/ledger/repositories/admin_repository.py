from __future__ import annotations

from sqlalchemy.orm import Session

from ledger.models import AdminUser, utcnow


class AdminRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_admin(self, user_id: str) -> AdminUser | None:
        return self._session.get(AdminUser, user_id)

    def upsert_admin(
        self, user_id: str, *, display_name: str | None = None, is_active: bool = True
    ) -> AdminUser:
        record = self._session.get(AdminUser, user_id)
        if record is None:
            record = AdminUser(user_id=user_id, created_at=utcnow())
            self._session.add(record)
        if display_name is not None:
            record.display_name = display_name
        record.is_active = is_active
        return record


__all__ = ["AdminRepository"]

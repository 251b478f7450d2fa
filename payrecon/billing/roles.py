from typing import Protocol

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from payrecon.extensions import db
from payrecon.observability import log_event
from payrecon.models import UserRole


class RoleGateway(Protocol):
    def apply_role(self, subscriber_id: int, granted: bool) -> None:
        ...


class DatabaseRoleGateway:
    """
    Mirrors the derived role into ``user_roles``.

    Ensure-granted / ensure-revoked semantics: other roles the identity holds
    are never touched, and repeating a call is a no-op. Runs inside the caller's
    transaction; the caller commits.
    """

    def __init__(self, role: str | None):
        self.role = role

    def apply_role(self, subscriber_id: int, granted: bool) -> None:
        if not self.role:
            return
        if granted:
            self._ensure_granted(subscriber_id)
        else:
            removed = (
                db.session.query(UserRole)
                .filter_by(user_id=subscriber_id, role=self.role)
                .delete(synchronize_session=False)
            )
            if removed:
                log_event("role.revoked", subscriber_id=subscriber_id, role=self.role)

    def _ensure_granted(self, subscriber_id: int) -> None:
        dialect = db.session.get_bind().dialect.name
        values = {"user_id": subscriber_id, "role": self.role}
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(UserRole).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "role"]
            )
            result = db.session.execute(stmt)
            if result.rowcount:
                log_event("role.granted", subscriber_id=subscriber_id, role=self.role)
            return
        exists = db.session.query(UserRole).filter_by(**values).first()
        if not exists:
            db.session.add(UserRole(**values))
            db.session.flush()

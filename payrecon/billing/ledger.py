from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from payrecon.extensions import db
from payrecon.observability import log_event
from payrecon.models import LedgerRecord
from payrecon.models.ledger import LEDGER_REFUNDED, LEDGER_STATUSES
from .errors import PersistenceConflict, ValidationError


_UPSERT_DIALECTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _utcnow():
    return datetime.now(timezone.utc)


class LedgerStore:
    """Append-mostly payment ledger keyed by the provider transaction id."""

    def get(self, provider_transaction_id: str) -> Optional[LedgerRecord]:
        return db.session.execute(
            select(LedgerRecord).where(LedgerRecord.provider_transaction_id == provider_transaction_id)
        ).scalar_one_or_none()

    def upsert(
        self,
        *,
        provider_transaction_id: str,
        provider_customer_id: str,
        status: str,
        amount_minor_units: int,
        currency_code: str,
        description: str = "",
        subscriber_id: Optional[int] = None,
        subscription_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Tuple[LedgerRecord, bool]:
        """
        Insert the record unless one with the same transaction id exists.
        Returns ``(record, created)``; a repeat call is a successful no-op.
        """
        if not provider_transaction_id:
            raise ValidationError("A transaction id is required.")
        if status not in LEDGER_STATUSES:
            raise ValidationError(f"Unknown ledger status {status!r}.")
        if amount_minor_units is None or int(amount_minor_units) < 0:
            raise ValidationError("Amount must be zero or more.")

        now = _utcnow()
        values = dict(
            provider_transaction_id=provider_transaction_id,
            provider_customer_id=provider_customer_id or "",
            subscriber_id=subscriber_id,
            subscription_id=subscription_id,
            status=status,
            amount_minor_units=int(amount_minor_units),
            currency_code=(currency_code or "").lower()[:3],
            description=description or "",
            metadata_json=metadata or {},
            created_at=created_at or now,
            updated_at=now,
        )

        try:
            created = self._insert_if_absent(values)
        except PersistenceConflict:
            created = False

        record = self.get(provider_transaction_id)
        if created:
            log_event("ledger.recorded", txn=provider_transaction_id, status=status)
        else:
            log_event("ledger.duplicate_ignored", txn=provider_transaction_id)
            # First write wins, but a late-resolved identity may still be attached
            if record is not None and record.subscriber_id is None and subscriber_id is not None:
                record.subscriber_id = subscriber_id
                db.session.commit()
        return record, created

    def _insert_if_absent(self, values: Dict[str, Any]) -> bool:
        dialect = db.session.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is not None:
            stmt = insert(LedgerRecord).values(**values).on_conflict_do_nothing(
                index_elements=["provider_transaction_id"]
            )
            result = db.session.execute(stmt)
            db.session.commit()
            return bool(result.rowcount)

        # Generic path: the unique constraint still arbitrates concurrent writers
        db.session.add(LedgerRecord(**values))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise PersistenceConflict(txn=values["provider_transaction_id"])
        return True

    def claim_signup_notice(self, provider_transaction_id: str) -> bool:
        """True for exactly one caller per transaction; the conditional update arbitrates races."""
        result = db.session.execute(
            update(LedgerRecord)
            .where(
                LedgerRecord.provider_transaction_id == provider_transaction_id,
                LedgerRecord.signup_notified_at.is_(None),
            )
            .values(signup_notified_at=_utcnow())
        )
        db.session.commit()
        return bool(result.rowcount)

    def mark_refunded(self, provider_transaction_id: str) -> Optional[Tuple[LedgerRecord, bool]]:
        """
        Transition a row to refunded under a row lock.
        Returns None when no row exists, else ``(record, changed)``.
        """
        record = db.session.execute(
            select(LedgerRecord)
            .where(LedgerRecord.provider_transaction_id == provider_transaction_id)
            .with_for_update()
        ).scalar_one_or_none()
        if record is None:
            db.session.rollback()
            return None
        if record.status == LEDGER_REFUNDED:
            db.session.rollback()
            return record, False
        record.status = LEDGER_REFUNDED
        record.updated_at = _utcnow()
        db.session.commit()
        return record, True

    def history(self, *, subscriber_id: Optional[int] = None, page: int = 1, per_page: int = 20):
        stmt = select(LedgerRecord).order_by(LedgerRecord.created_at.desc(), LedgerRecord.id.desc())
        if subscriber_id is not None:
            stmt = stmt.where(LedgerRecord.subscriber_id == subscriber_id)
        return db.paginate(stmt, page=page, per_page=per_page, error_out=False)

from sqlalchemy import func, CheckConstraint
from sqlalchemy.dialects.postgresql import JSONB
from payrecon.extensions import db

# Keep simple text+CHECK for evolvable statuses (no DB enum migration pain)
LEDGER_SUCCEEDED = "succeeded"
LEDGER_REFUNDED = "refunded"
LEDGER_FAILED = "failed"
LEDGER_STATUSES = (LEDGER_SUCCEEDED, LEDGER_REFUNDED, LEDGER_FAILED)

JSONType = db.JSON().with_variant(JSONB(), "postgresql")


class LedgerRecord(db.Model):
    __tablename__ = "payment_ledger"

    id = db.Column(db.Integer, primary_key=True)
    subscriber_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Idempotency key: one row per provider transaction, ever
    provider_transaction_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    provider_customer_id = db.Column(db.String(255), nullable=False, index=True)
    subscription_id = db.Column(db.String(255), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, index=True)
    amount_minor_units = db.Column(db.BigInteger, nullable=False)
    currency_code = db.Column(db.String(3), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    metadata_json = db.Column(JSONType, nullable=False, default=dict)
    # Set once, by whichever client confirmation first links an identity to the row
    signup_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("amount_minor_units >= 0", name="ck_payment_ledger_amount_non_negative"),
        CheckConstraint(
            "status IN ('succeeded','refunded','failed')",
            name="ck_payment_ledger_status_valid",
        ),
    )

    def to_dict(self):
        return dict(
            id=self.id,
            subscriber_id=self.subscriber_id,
            provider_transaction_id=self.provider_transaction_id,
            provider_customer_id=self.provider_customer_id,
            subscription_id=self.subscription_id,
            status=self.status,
            amount=self.amount_minor_units,
            currency=self.currency_code,
            description=self.description,
            metadata=self.metadata_json or {},
            created_at=self.created_at.isoformat() if self.created_at else None,
            updated_at=self.updated_at.isoformat() if self.updated_at else None,
        )

    def __repr__(self) -> str:
        return f"<LedgerRecord id={self.id} txn={self.provider_transaction_id!r} status={self.status!r}>"

from sqlalchemy import func
from payrecon.extensions import db
from payrecon.models.ledger import JSONType


class BillingEventLog(db.Model):
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    livemode = db.Column(db.Boolean, nullable=False, default=False)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True)
    payload = db.Column(JSONType, nullable=False, default=dict)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    retries = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEventLog {self.stripe_event_id} type={self.type!r} processed={self.processed}>"

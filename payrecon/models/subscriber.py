from sqlalchemy import func, CheckConstraint
from payrecon.extensions import db

STATUS_NONE = "none"
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_PAYMENT_FAILED = "payment_failed"
STATUS_CANCELED = "canceled"
STATUS_INCOMPLETE = "incomplete"
STATUS_INCOMPLETE_EXPIRED = "incomplete_expired"
STATUS_UNPAID = "unpaid"

SUBSCRIPTION_STATUSES = (
    STATUS_NONE,
    STATUS_TRIALING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_PAYMENT_FAILED,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_INCOMPLETE_EXPIRED,
    STATUS_UNPAID,
)

# Statuses that carry the subscriber role
ROLE_GRANTING_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

# A subscription in one of these may be replaced by a new one
SUPERSEDABLE_STATUSES = frozenset({STATUS_NONE, STATUS_CANCELED, STATUS_INCOMPLETE_EXPIRED})


def role_granted_for(status: str | None) -> bool:
    return status in ROLE_GRANTING_STATUSES


class SubscriberState(db.Model):
    __tablename__ = "subscriber_states"

    subscriber_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    provider_customer_id = db.Column(db.String(255), nullable=True, index=True)
    active_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    subscription_status = db.Column(db.String(32), nullable=False, default=STATUS_NONE, server_default=STATUS_NONE)
    role_granted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = db.relationship("User", backref=db.backref("subscriber_state", uselist=False))

    __table_args__ = (
        CheckConstraint(
            "subscription_status IN ('none','trialing','active','past_due','payment_failed',"
            "'canceled','incomplete','incomplete_expired','unpaid')",
            name="ck_subscriber_states_status_valid",
        ),
    )

    def to_dict(self):
        return dict(
            subscriber_id=self.subscriber_id,
            email=self.user.email if self.user else None,
            provider_customer_id=self.provider_customer_id,
            active_subscription_id=self.active_subscription_id,
            subscription_status=self.subscription_status,
            role_granted=bool(self.role_granted),
            updated_at=self.updated_at.isoformat() if self.updated_at else None,
        )

    def __repr__(self) -> str:
        return f"<SubscriberState subscriber_id={self.subscriber_id} status={self.subscription_status!r}>"

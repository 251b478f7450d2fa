from typing import Any, Mapping, Optional, Tuple

from sqlalchemy import select

from payrecon.extensions import db
from payrecon.observability import log_event
from payrecon.models import SubscriberState, User
from payrecon.models.subscriber import SUBSCRIPTION_STATUSES, role_granted_for
from .errors import NotFoundError, UnexpectedState
from .roles import RoleGateway


def extract_customer_id(obj: Mapping[str, Any]) -> Optional[str]:
    """Customer id from an event object: ``customer`` (id or expanded), or the object itself."""
    if not obj:
        return None
    cust = obj.get("customer")
    if isinstance(cust, Mapping):
        cust = cust.get("id")
    if cust:
        return str(cust)
    obj_id = obj.get("id")
    if isinstance(obj_id, str) and obj_id.startswith("cus_"):
        return obj_id
    return None


class IdentityResolver:
    """Maps provider customer ids to local subscriber ids. Never creates."""

    def resolve(self, provider_customer_id: Optional[str]) -> int:
        if not provider_customer_id:
            raise NotFoundError("No customer id on the event.")
        subscriber_id = db.session.execute(
            select(SubscriberState.subscriber_id)
            .where(SubscriberState.provider_customer_id == provider_customer_id)
            .order_by(SubscriberState.subscriber_id)
            .limit(1)
        ).scalar_one_or_none()
        if subscriber_id is None:
            raise NotFoundError("No subscriber for this customer.", customer=provider_customer_id)
        return subscriber_id

    def resolve_by_subscription(self, subscription_id: Optional[str]) -> Optional[int]:
        if not subscription_id:
            return None
        return db.session.execute(
            select(SubscriberState.subscriber_id)
            .where(SubscriberState.active_subscription_id == subscription_id)
            .limit(1)
        ).scalar_one_or_none()


class SubscriberStore:
    """
    Per-subscriber billing status and the derived role.

    Every status write recomputes ``role_granted`` and pushes it through the
    role gateway in the same transaction, so the two never diverge.
    """

    def __init__(self, role_gateway: RoleGateway):
        self.role_gateway = role_gateway

    def get(self, subscriber_id: int) -> Optional[SubscriberState]:
        return db.session.get(SubscriberState, subscriber_id)

    def find_or_create_user(self, email: str) -> Tuple[User, bool]:
        email = (email or "").strip().lower()
        user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user:
            return user, False
        user = User(email=email, is_active=True)
        user.set_unusable_password()
        db.session.add(user)
        db.session.commit()
        log_event("subscriber.identity_created", subscriber_id=user.id)
        return user, True

    def link_customer(self, subscriber_id: int, provider_customer_id: str) -> SubscriberState:
        """Attach the provider customer to the subscriber, creating the state row on first contact."""
        state = db.session.get(SubscriberState, subscriber_id)
        if state is None:
            state = SubscriberState(subscriber_id=subscriber_id, provider_customer_id=provider_customer_id)
            db.session.add(state)
        elif state.provider_customer_id != provider_customer_id:
            state.provider_customer_id = provider_customer_id
        db.session.commit()
        return state

    def set_status(
        self,
        subscriber_id: int,
        status: str,
        subscription_id: Optional[str] = None,
    ) -> Tuple[SubscriberState, Optional[str]]:
        """
        Write status (and optionally the active subscription id) under a row lock.
        Returns ``(state, previous_status)``; ``previous_status`` is None for a new row.
        """
        if status not in SUBSCRIPTION_STATUSES:
            raise UnexpectedState(f"Unknown subscription status {status!r}.", status=status)

        state = db.session.execute(
            select(SubscriberState)
            .where(SubscriberState.subscriber_id == subscriber_id)
            .with_for_update()
        ).scalar_one_or_none()
        previous = None
        if state is None:
            state = SubscriberState(subscriber_id=subscriber_id)
            db.session.add(state)
        else:
            previous = state.subscription_status

        state.subscription_status = status
        if subscription_id:
            state.active_subscription_id = subscription_id
        granted = role_granted_for(status)
        state.role_granted = granted

        try:
            self.role_gateway.apply_role(subscriber_id, granted)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        log_event(
            "subscriber.status_written",
            subscriber_id=subscriber_id,
            previous=previous,
            status=status,
            role_granted=granted,
        )
        return state, previous

    def list_states(self, *, status: Optional[str] = None, page: int = 1, per_page: int = 20):
        stmt = select(SubscriberState).order_by(SubscriberState.updated_at.desc(), SubscriberState.subscriber_id)
        if status:
            stmt = stmt.where(SubscriberState.subscription_status == status)
        return db.paginate(stmt, page=page, per_page=per_page, error_out=False)

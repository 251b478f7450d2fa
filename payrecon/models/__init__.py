from .user import User, UserRole
from .ledger import LedgerRecord
from .subscriber import SubscriberState
from .billing_event import BillingEventLog
from .email_log import EmailLog

__all__ = [
    "User",
    "UserRole",
    "LedgerRecord",
    "SubscriberState",
    "BillingEventLog",
    "EmailLog",
]

"""
Model package initialization
"""

from .user import User, SubscriptionTier, UserStatus
from .usage import UsageRecord
from .generation_event import DesignGenerationEvent
from .pending_credit import PendingCredit
from .billing_ledger import BillingLedgerEntry, LedgerKind, PaymentStatus

__all__ = [
    # Core models
    "User",
    "UsageRecord",
    "DesignGenerationEvent",
    "PendingCredit",
    "BillingLedgerEntry",

    # Enums
    "SubscriptionTier",
    "UserStatus",
    "LedgerKind",
    "PaymentStatus",
]

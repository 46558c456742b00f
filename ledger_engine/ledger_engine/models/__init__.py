"""Domain models for the credit ledger."""

from ledger_engine.models.ledger import (
    AccountTier,
    Allocation,
    ConsumeResult,
    PurchaseSource,
    PurchaseStatus,
)
from ledger_engine.models.subscription import (
    EventOutcome,
    EventResult,
    EventType,
    LifecycleEvent,
    SubscriptionStatus,
)

__all__ = [
    "AccountTier",
    "Allocation",
    "ConsumeResult",
    "EventOutcome",
    "EventResult",
    "EventType",
    "LifecycleEvent",
    "PurchaseSource",
    "PurchaseStatus",
    "SubscriptionStatus",
]

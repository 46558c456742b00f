"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ledger_engine.state.database import get_engine, get_session_factory
from ledger_engine.state.repository import (
    AccountRepository,
    PurchaseRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
    UsageRecordRepository,
)

__all__ = [
    "AccountRepository",
    "PurchaseRepository",
    "SubscriptionEventRepository",
    "SubscriptionRepository",
    "UsageRecordRepository",
    "get_engine",
    "get_session_factory",
]

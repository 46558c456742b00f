"""API router modules for the credit ledger service."""

from __future__ import annotations

from api.routers import account, analyze, billing, credits, health

__all__ = [
    "account",
    "analyze",
    "billing",
    "credits",
    "health",
]

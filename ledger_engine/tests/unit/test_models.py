"""Unit tests for ledger_engine.models."""

from __future__ import annotations

import pytest
from ledger_engine.errors import (
    ConflictError,
    DuplicateEventError,
    InsufficientCreditsError,
    LedgerError,
    StoreUnavailableError,
    UnknownSubscriptionRefError,
)
from ledger_engine.models.ledger import Allocation, ConsumeResult
from ledger_engine.models.subscription import (
    EventOutcome,
    EventResult,
    SubscriptionStatus,
    derive_event_id,
    map_provider_status,
)


class TestMapProviderStatus:
    @pytest.mark.parametrize(
        ("provider", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("unpaid", SubscriptionStatus.EXPIRED),
            ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ],
    )
    def test_mapping(self, provider: str, expected: SubscriptionStatus) -> None:
        assert map_provider_status(provider) == expected


class TestDeriveEventId:
    def test_stable(self) -> None:
        assert derive_event_id("coupon", "u1", "CODE") == derive_event_id("coupon", "u1", "CODE")

    def test_part_boundaries_matter(self) -> None:
        assert derive_event_id("ab", "c") != derive_event_id("a", "bc")

    def test_prefix(self) -> None:
        assert derive_event_id("x").startswith("local_")


class TestResultModels:
    def test_event_result_applied_flag(self) -> None:
        assert EventResult(event_id="e", outcome=EventOutcome.APPLIED).applied is True
        assert EventResult(event_id="e", outcome=EventOutcome.REJECTED, reason="x").applied is False

    def test_allocation_requires_positive_credits(self) -> None:
        with pytest.raises(ValueError):
            Allocation(purchase_id="p", credits=0)

    def test_consume_result_round_trip(self) -> None:
        result = ConsumeResult(
            owner_id="u",
            credits_consumed=2,
            purchase_id="p",
            allocations=[Allocation(purchase_id="p", credits=2)],
        )
        assert result.model_dump()["attempts"] == 1


class TestErrorLabels:
    @pytest.mark.parametrize(
        ("error", "label"),
        [
            (InsufficientCreditsError("u", 3, 1), "insufficient_credits"),
            (ConflictError("u", 4), "conflict"),
            (UnknownSubscriptionRefError("sub_x"), "unknown_subscription_ref"),
            (DuplicateEventError("evt"), "duplicate_event"),
            (StoreUnavailableError("reserve_and_consume"), "store_unavailable"),
        ],
    )
    def test_labels(self, error: LedgerError, label: str) -> None:
        assert isinstance(error, LedgerError)
        assert error.label == label

    def test_insufficient_carries_available(self) -> None:
        error = InsufficientCreditsError("u", 3, 1)
        assert error.available == 1
        assert error.requested == 3

"""Ledger error taxonomy.

Every error raised across the ledger boundary is one of these classes.  The
``label`` attribute is the only text that may reach an end user; internal
storage messages stay in the server logs.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger errors."""

    label = "ledger_error"


class InsufficientCreditsError(LedgerError):
    """The owner's eligible balance cannot cover the requested credits.

    User-recoverable: top up, or call with a caller-supplied resource key.
    """

    label = "insufficient_credits"

    def __init__(self, owner_id: str, requested: int, available: int) -> None:
        self.owner_id = owner_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient credits for {owner_id}: requested {requested}, available {available}")


class ConflictError(LedgerError):
    """Concurrent writers kept invalidating the read; safe to retry the request once."""

    label = "conflict"

    def __init__(self, owner_id: str, attempts: int) -> None:
        self.owner_id = owner_id
        self.attempts = attempts
        super().__init__(f"Credit deduction for {owner_id} conflicted on {attempts} attempt(s)")


class UnknownSubscriptionRefError(LedgerError):
    """A lifecycle event referenced a subscription this store has never seen."""

    label = "unknown_subscription_ref"

    def __init__(self, external_ref: str) -> None:
        self.external_ref = external_ref
        super().__init__(f"Unknown subscription ref: {external_ref}")


class DuplicateEventError(LedgerError):
    """The external event id has already been applied."""

    label = "duplicate_event"

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event already processed: {event_id}")


class StoreUnavailableError(LedgerError):
    """The purchase store could not be reached or failed mid-operation.

    Never interpreted as insufficient credits.  The wrapped driver error is
    kept on ``__cause__`` for logging only.
    """

    label = "store_unavailable"

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Store unavailable during {operation}")

"""Usage audit trail."""

from ledger_engine.usage.recorder import UsageRecorder

__all__ = ["UsageRecorder"]

"""Credit ledger: balance reads and atomic FIFO consumption."""

from ledger_engine.ledger.engine import LedgerEngine, plan_fifo
from ledger_engine.ledger.retry import RetryConfig

__all__ = ["LedgerEngine", "RetryConfig", "plan_fifo"]

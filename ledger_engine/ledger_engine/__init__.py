"""Credit ledger core: purchase store, FIFO consumption, subscription lifecycle."""

__version__ = "0.4.0"

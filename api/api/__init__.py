"""HTTP surface for the credit ledger: balance, metered analysis, billing webhooks."""

__version__ = "0.4.0"

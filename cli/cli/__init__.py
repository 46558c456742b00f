"""Operator command line for the credit ledger."""

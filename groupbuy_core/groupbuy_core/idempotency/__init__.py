"""Idempotency ledger for retry-safe order creation."""

"""API router modules for the group-buy platform."""

from __future__ import annotations

from api.routers import health, host_orders, line_webhooks, metrics, operations, public_orders

__all__ = [
    "health",
    "host_orders",
    "line_webhooks",
    "metrics",
    "operations",
    "public_orders",
]

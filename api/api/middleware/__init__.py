"""Middleware components for the group-buy API."""

from __future__ import annotations

from api.middleware.auth import HostAuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.middleware.rbac import ROLE_PERMISSIONS, Permission, Role, get_user_role, require_permission
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "HostAuthenticationMiddleware",
    "Permission",
    "PrometheusMiddleware",
    "ROLE_PERMISSIONS",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
    "get_user_role",
    "require_permission",
]

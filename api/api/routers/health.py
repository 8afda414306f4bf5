"""Liveness and readiness probes.

``/api/health`` always answers 200 so load balancers see the process as
alive; ``/ready`` is registered at the root and answers 503 while the
state store is unreachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.dependencies import get_session_factory

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _database_ok() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError, RuntimeError) as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _database_ok() else "degraded",
    }


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe() -> JSONResponse:
    """Readiness probe gated on database connectivity."""
    db_ok = await _database_ok()
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "ready" if db_ok else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if db_ok else "unavailable"},
        },
    )

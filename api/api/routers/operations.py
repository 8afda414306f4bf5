"""Operator endpoints: dead-letter inspection, requeue, stale-key release."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from api.dependencies import HostScopeDep, LedgerDep, NotificationQueueDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import IdempotencyReleaseResponse, NotificationResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/host", tags=["operations"])


@router.get("/notifications/dead-letters", response_model=list[NotificationResponse])
async def list_dead_letters(
    scope: HostScopeDep,
    queue: NotificationQueueDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    _role: Role = Depends(require_permission(Permission.READ_NOTIFICATIONS)),
) -> list[NotificationResponse]:
    rows = await queue.list_dead_letters(scope, limit=limit)
    return [NotificationResponse.from_row(row) for row in rows]


@router.post("/notifications/{notification_id}/requeue", response_model=NotificationResponse)
async def requeue_notification(
    notification_id: str,
    scope: HostScopeDep,
    queue: NotificationQueueDep,
    _role: Role = Depends(require_permission(Permission.REQUEUE_NOTIFICATIONS)),
) -> NotificationResponse:
    """Return a dead-lettered notification to ``Pending`` with a fresh retry budget."""
    return NotificationResponse.from_row(await queue.requeue(scope, notification_id))


@router.post("/idempotency/{key}/release", response_model=IdempotencyReleaseResponse)
async def release_idempotency_key(
    key: str,
    scope: HostScopeDep,
    ledger: LedgerDep,
    force: Annotated[bool, Query()] = False,
    _role: Role = Depends(require_permission(Permission.RELEASE_IDEMPOTENCY)),
) -> IdempotencyReleaseResponse:
    """Free an ``InProgress`` slot left behind by a crashed request.

    Only slots older than the stale-lock timeout are released unless
    ``force=true``.  Completed keys are never released.
    """
    released = await ledger.force_release(scope, key, ignore_age=force)
    logger.info("Idempotency release tenant=%s key=%s force=%s released=%s", scope.tenant_slug, key, force, released)
    return IdempotencyReleaseResponse(key=key, released=released)

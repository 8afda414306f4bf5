"""Inbound LINE platform webhooks.

The signature is checked against the raw body before anything is parsed
or stored.  Verified events are recorded as ``received`` before the
response is sent; if that write fails the platform gets a ``500`` and
redelivers.  Recorded events are applied after the response, and any event
whose apply fails stays ``received`` until the dispatcher's webhook sweep
replays it.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Header, Request
from groupbuy_core.errors import WebhookSignatureInvalid
from groupbuy_core.tenancy import ScopeToken
from groupbuy_core.webhooks.router import WebhookEvent, WebhookEventRouter

from api.dependencies import PublicScopeDep, WebhookRouterDep
from api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL
from api.schemas import WebhookAcceptedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/line", tags=["webhooks"])


async def route_events(webhook_router: WebhookEventRouter, scope: ScopeToken, events: list[WebhookEvent]) -> None:
    """Apply recorded events; a failed event stays recorded for the sweep."""
    for result in await webhook_router.process(scope, events):
        WEBHOOK_EVENTS_TOTAL.labels(outcome="duplicate" if result.duplicate else result.outcome).inc()


@router.post("/{tenant_slug}", response_model=WebhookAcceptedResponse)
async def receive_line_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    scope: PublicScopeDep,
    webhook_router: WebhookRouterDep,
    x_line_signature: Annotated[str | None, Header(alias="X-Line-Signature")] = None,
) -> WebhookAcceptedResponse:
    body = await request.body()
    try:
        webhook_router.verify(scope, body, x_line_signature)
    except WebhookSignatureInvalid:
        WEBHOOK_EVENTS_TOTAL.labels(outcome="rejected").inc()
        raise

    events = WebhookEventRouter.parse(body)
    if events:
        await webhook_router.record(scope, events)
        background_tasks.add_task(route_events, webhook_router, scope, events)
    logger.info("Webhook accepted tenant=%s events=%d bytes=%d", scope.tenant_slug, len(events), len(body))
    return WebhookAcceptedResponse()

"""Public storefront order intake."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Response
from groupbuy_core.models.order import OrderSubmission

from api.dependencies import IntakeDep, PublicScopeDep
from api.middleware.prometheus import ORDERS_CREATED_TOTAL
from api.schemas import OrderCreatedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["orders"])

REPLAYED_HEADER = "Idempotent-Replayed"


@router.post("/{tenant_slug}/orders", status_code=201, response_model=OrderCreatedResponse)
async def submit_order(
    submission: OrderSubmission,
    scope: PublicScopeDep,
    intake: IntakeDep,
    response: Response,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> OrderCreatedResponse:
    """Create an order, or replay the stored outcome for a retried key.

    A replay returns the original body and status, flagged with the
    ``Idempotent-Replayed`` header.
    """
    outcome = await intake.submit(scope, submission, idempotency_key)
    ORDERS_CREATED_TOTAL.labels(result="replayed" if outcome.replayed else "created").inc()
    if outcome.replayed:
        response.headers[REPLAYED_HEADER] = "true"
    return OrderCreatedResponse(**outcome.snapshot())

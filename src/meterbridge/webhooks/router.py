"""Inbound Stripe webhook endpoint and ledger administration."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from meterbridge.common.exceptions import WebhookSignatureError
from meterbridge.common.security import require_api_key
from meterbridge.webhooks.ledger import VALID_STATUSES
from meterbridge.webhooks.schemas import (
    RetrySweepRequest,
    RetrySweepResponse,
    WebhookEventResponse,
    WebhookReceipt,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks")


def _get_dispatcher():
    from meterbridge.deps import get_webhook_dispatcher
    return get_webhook_dispatcher()


def _get_ledger():
    from meterbridge.deps import get_webhook_ledger
    return get_webhook_ledger()


def _get_db():
    from meterbridge.deps import get_db
    return get_db()


@router.post("/stripe", response_model=WebhookReceipt)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
):
    body = await request.body()
    try:
        result = await _get_dispatcher().ingest(body, stripe_signature)
    except WebhookSignatureError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc.message)
        raise HTTPException(status_code=400, detail=exc.message)

    return WebhookReceipt(
        received=result.received,
        duplicate=result.duplicate,
        event_id=result.event_id,
        status=result.status,
    )


@router.get("/events", response_model=list[WebhookEventResponse])
async def list_webhook_events(
    status: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    if status is not None and status not in VALID_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid status: {status}. Valid statuses: {sorted(VALID_STATUSES)}",
        )
    ledger = _get_ledger()
    async with _get_db().get_session() as session:
        events = await ledger.list_events(
            session, status=status, event_type=event_type, limit=limit, offset=offset,
        )
        return [
            WebhookEventResponse(
                id=e.id,
                stripe_event_id=e.stripe_event_id,
                event_type=e.event_type,
                livemode=e.livemode,
                api_version=e.api_version,
                status=e.status,
                payload=e.payload or {},
                processed_at=e.processed_at,
                error=e.error,
                retry_count=e.retry_count,
                parked=ledger.is_parked(e),
                created_at=e.created_at,
                updated_at=e.updated_at,
            )
            for e in events
        ]


@router.post("/retry", response_model=RetrySweepResponse)
async def retry_webhook_events(
    body: RetrySweepRequest = RetrySweepRequest(),
    _=Depends(require_api_key),
):
    report = await _get_dispatcher().retry_sweep(limit=body.limit)
    return RetrySweepResponse(
        attempted=report.attempted, completed=report.completed, failed=report.failed,
    )

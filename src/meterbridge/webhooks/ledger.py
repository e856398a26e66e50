"""Webhook event ledger: durable, idempotent record of inbound provider events."""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.common.exceptions import DuplicateWebhookEventError
from meterbridge.webhooks.models import WebhookEventModel

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
VALID_STATUSES: frozenset[str] = frozenset({PENDING, PROCESSING, COMPLETED, FAILED})

DEFAULT_MAX_RETRIES = 5

# Sentinel so update_status can tell "leave error alone" from "clear error".
UNSET: Any = object()


class WebhookEventLedger:
    """Reads and writes ledger rows.

    A unique external event id guards ingestion: a second insert for the same id
    fails at the store. ``claim`` guards processing the same way.
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        self.max_retries = max_retries

    async def find_by_external_event_id(
        self, session: AsyncSession, external_id: str,
    ) -> Optional[WebhookEventModel]:
        result = await session.execute(
            select(WebhookEventModel).where(WebhookEventModel.stripe_event_id == external_id)
        )
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, event_id: str) -> Optional[WebhookEventModel]:
        return await session.get(WebhookEventModel, event_id)

    async def create(
        self,
        session: AsyncSession,
        external_id: str,
        event_type: str,
        livemode: bool,
        api_version: Optional[str],
        payload: dict[str, Any],
    ) -> WebhookEventModel:
        """Insert a pending entry.

        On a unique-key clash the session is rolled back and
        DuplicateWebhookEventError is raised; callers should run this as the
        only write in its transaction.
        """
        event = WebhookEventModel(
            stripe_event_id=external_id,
            event_type=event_type,
            livemode=livemode,
            api_version=api_version,
            status=PENDING,
            payload=payload,
            processed_at=None,
            error=None,
            retry_count=0,
        )
        session.add(event)
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise DuplicateWebhookEventError(external_id) from exc
        return event

    async def find_retry_candidates(
        self, session: AsyncSession, limit: int = 100,
    ) -> list[WebhookEventModel]:
        result = await session.execute(
            select(WebhookEventModel)
            .where(
                WebhookEventModel.status.in_((PENDING, FAILED)),
                WebhookEventModel.retry_count < self.max_retries,
            )
            .order_by(WebhookEventModel.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, session: AsyncSession, event_id: str) -> bool:
        """Move a pending or retryable failed entry to processing.

        The status check and the write are one UPDATE, so of several callers
        racing for the same entry exactly one gets True.
        """
        result = await session.execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.id == event_id,
                WebhookEventModel.status.in_((PENDING, FAILED)),
                WebhookEventModel.retry_count < self.max_retries,
            )
            .values(status=PROCESSING, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_status(
        self,
        session: AsyncSession,
        event_id: str,
        status: str,
        processed_at: Optional[datetime] = None,
        error: Optional[str] = UNSET,
        increment_retry: bool = False,
    ) -> Optional[WebhookEventModel]:
        """Set status; touch processed_at, error and retry_count only when asked."""
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid webhook event status: {status}")
        event = await self.get(session, event_id)
        if event is None:
            return None
        event.status = status
        event.updated_at = datetime.now(timezone.utc)
        if processed_at is not None:
            event.processed_at = processed_at
        if error is not UNSET:
            event.error = error
        if increment_retry:
            event.retry_count = event.retry_count + 1
        await session.flush()
        return event

    async def list_events(
        self,
        session: AsyncSession,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEventModel]:
        query = select(WebhookEventModel)
        if status is not None:
            query = query.where(WebhookEventModel.status == status)
        if event_type is not None:
            query = query.where(WebhookEventModel.event_type == event_type)
        query = query.order_by(WebhookEventModel.created_at.desc()).offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    def is_parked(self, event: WebhookEventModel) -> bool:
        """A failed entry that has used up its retries; needs operator attention."""
        return event.status == FAILED and event.retry_count >= self.max_retries

"""Webhook dispatcher: verify, record, route and settle inbound provider events.

One delivery moves through these steps, strictly in order:

1. verify the signature and parse the body (nothing is written on failure)
2. idempotency gate, then insert a pending ledger entry, committed on its own
3. claim the entry: one conditional UPDATE moves it to processing
4. run the handler and record ``completed`` in the same transaction
5. on handler failure, record ``failed`` with the error and one more retry
6. run deferred notifications, whose failures never touch the ledger

A concurrent duplicate delivery that slips past the gate collides on the unique
external event id in step 2 and is treated exactly like a gate hit. Overlapping
sweeps, or a sweep racing ingestion, meet at the claim in step 3: the loser skips
the entry, so a handler runs at most once per attempt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from meterbridge.common.config import MeterbridgeSettings
from meterbridge.common.database import DatabaseManager
from meterbridge.common.exceptions import DuplicateWebhookEventError
from meterbridge.webhooks import ledger as ledger_states
from meterbridge.webhooks.events import construct_event, parse_event
from meterbridge.webhooks.handlers import BillingEventHandlers, HandlerOutcome
from meterbridge.webhooks.ledger import WebhookEventLedger

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
    ledger_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class SweepReport:
    attempted: int = 0
    completed: int = 0
    failed: int = 0


class WebhookDispatcher:
    def __init__(
        self,
        db: DatabaseManager,
        ledger: WebhookEventLedger,
        handlers: BillingEventHandlers,
        settings: MeterbridgeSettings,
    ):
        self.db = db
        self.ledger = ledger
        self.handlers = handlers
        self.settings = settings

    async def ingest(self, raw_body: bytes, signature_header: str) -> IngestResult:
        """Accept one raw delivery. Raises only for signature/configuration failures."""
        raw_event = construct_event(
            raw_body,
            signature_header,
            self.settings.stripe_webhook_secret,
            self.settings.stripe_webhook_tolerance,
        )
        event = parse_event(raw_event)

        try:
            async with self.db.get_session() as session:
                existing = await self.ledger.find_by_external_event_id(session, event.id)
                if existing is not None:
                    logger.info("Webhook event %s already recorded; skipping", event.id)
                    return IngestResult(
                        duplicate=True, event_id=event.id,
                        ledger_id=existing.id, status=existing.status,
                    )
                entry = await self.ledger.create(
                    session,
                    external_id=event.id,
                    event_type=event.type,
                    livemode=event.livemode,
                    api_version=event.api_version,
                    payload=raw_event,
                )
                ledger_id = entry.id
        except DuplicateWebhookEventError:
            logger.info("Webhook event %s recorded concurrently; skipping", event.id)
            return IngestResult(duplicate=True, event_id=event.id)

        status = await self.process(ledger_id)
        return IngestResult(event_id=event.id, ledger_id=ledger_id, status=status)

    async def process(self, ledger_id: str) -> Optional[str]:
        """Run the handler for one ledger entry and settle its status.

        Entries another caller already claimed, completed or parked are left
        alone and their current status is returned.
        """
        _, status = await self._process(ledger_id)
        return status

    async def _process(self, ledger_id: str) -> tuple[bool, Optional[str]]:
        async with self.db.get_session() as session:
            claimed = await self.ledger.claim(session, ledger_id)
            entry = await self.ledger.get(session, ledger_id)
            if entry is None:
                logger.warning("Ledger entry %s not found", ledger_id)
                return False, None
            if not claimed:
                logger.debug("Ledger entry %s is %s; not claimed", ledger_id, entry.status)
                return False, entry.status
            payload = dict(entry.payload or {})

        event = parse_event(payload)
        try:
            async with self.db.get_session() as session:
                outcome = await self.handlers.handle(session, event)
                await self.ledger.update_status(
                    session,
                    ledger_id,
                    ledger_states.COMPLETED,
                    processed_at=datetime.now(timezone.utc),
                    error=None,
                )
        except Exception as exc:
            await self._record_failure(ledger_id, event.id, event.type, exc)
            return True, ledger_states.FAILED

        logger.info(
            "Processed webhook event %s (%s)", event.id, event.type,
            extra={"event_id": event.id, "category": outcome.category.value},
        )
        await self._run_notifications(event.id, outcome)
        return True, ledger_states.COMPLETED

    async def retry_sweep(self, limit: Optional[int] = None) -> SweepReport:
        """Re-run pending and failed entries that still have retries left."""
        limit = limit or self.settings.webhook_retry_batch_size
        async with self.db.get_session() as session:
            candidates = await self.ledger.find_retry_candidates(session, limit=limit)
            candidate_ids = [c.id for c in candidates]

        report = SweepReport()
        for ledger_id in candidate_ids:
            claimed, status = await self._process(ledger_id)
            if not claimed:
                continue
            report.attempted += 1
            if status == ledger_states.COMPLETED:
                report.completed += 1
            elif status == ledger_states.FAILED:
                report.failed += 1
        if report.attempted:
            logger.info(
                "Webhook retry sweep: %d attempted, %d completed, %d failed",
                report.attempted, report.completed, report.failed,
            )
        return report

    async def _record_failure(
        self, ledger_id: str, event_id: str, event_type: str, exc: Exception,
    ) -> None:
        logger.exception(
            "Webhook handler failed for event %s (%s): %s", event_id, event_type, exc,
            extra={"event_id": event_id, "event_type": event_type},
        )
        async with self.db.get_session() as session:
            entry = await self.ledger.update_status(
                session,
                ledger_id,
                ledger_states.FAILED,
                error=str(exc) or exc.__class__.__name__,
                increment_retry=True,
            )
            if entry is not None and self.ledger.is_parked(entry):
                logger.error(
                    "Webhook event %s (%s) exhausted %d retries and is parked",
                    event_id, event_type, entry.retry_count,
                    extra={"event_id": event_id, "event_type": event_type},
                )

    async def _run_notifications(self, event_id: str, outcome: HandlerOutcome) -> None:
        for notify in outcome.notifications:
            try:
                await notify()
            except Exception:
                logger.exception("Notification for webhook event %s failed", event_id)

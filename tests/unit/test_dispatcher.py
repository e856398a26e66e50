"""Tests for the webhook dispatcher state machine."""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from meterbridge.common.database import DatabaseManager
from meterbridge.common.exceptions import WebhookSignatureError
from meterbridge.webhooks.dispatcher import WebhookDispatcher
from meterbridge.webhooks.events import EventCategory
from meterbridge.webhooks.handlers import HandlerOutcome
from meterbridge.webhooks.ledger import COMPLETED, FAILED, PROCESSING, WebhookEventLedger

SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = SECRET) -> str:
    ts = str(int(time.time()))
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def delivery(event_id="evt_1", event_type="invoice.paid", obj=None) -> tuple[bytes, str]:
    body = json.dumps({
        "id": event_id,
        "type": event_type,
        "livemode": False,
        "created": 1_700_000_000,
        "data": {"object": obj or {"id": "in_1", "customer": "cus_1"}},
    }).encode()
    return body, sign(body)


@pytest.fixture
def handlers():
    mock = MagicMock()
    mock.handle = AsyncMock(return_value=HandlerOutcome(category=EventCategory.INVOICE))
    return mock


@pytest.fixture
def ledger():
    return WebhookEventLedger(max_retries=5)


@pytest.fixture
def dispatcher(db, ledger, handlers, settings):
    return WebhookDispatcher(db, ledger, handlers, settings)


class TestIngest:
    async def test_new_event_completes(self, dispatcher, handlers, db, ledger):
        result = await dispatcher.ingest(*delivery())
        assert result.received is True
        assert result.duplicate is False
        assert result.status == COMPLETED
        handlers.handle.assert_awaited_once()

        async with db.get_session() as session:
            entry = await ledger.find_by_external_event_id(session, "evt_1")
        assert entry.status == COMPLETED
        assert entry.processed_at is not None
        assert entry.error is None
        assert entry.retry_count == 0

    async def test_handler_receives_parsed_event(self, dispatcher, handlers):
        await dispatcher.ingest(*delivery(obj={"id": "in_9", "customer": "cus_9"}))
        _, event = handlers.handle.await_args.args
        assert event.id == "evt_1"
        assert event.type == "invoice.paid"
        assert event.data_object["id"] == "in_9"

    async def test_bad_signature_writes_nothing(self, dispatcher, handlers, db, ledger):
        body, _ = delivery()
        with pytest.raises(WebhookSignatureError):
            await dispatcher.ingest(body, sign(body, "wrong-secret"))
        handlers.handle.assert_not_awaited()
        async with db.get_session() as session:
            assert await ledger.list_events(session) == []

    async def test_sequential_duplicate_is_noop(self, dispatcher, handlers, db, ledger):
        first = await dispatcher.ingest(*delivery())
        second = await dispatcher.ingest(*delivery())
        assert first.duplicate is False
        assert second.duplicate is True
        assert second.ledger_id == first.ledger_id
        assert handlers.handle.await_count == 1
        async with db.get_session() as session:
            assert len(await ledger.list_events(session)) == 1

    async def test_racing_duplicate_collides_on_insert(self, dispatcher, handlers, db, ledger):
        await dispatcher.ingest(*delivery())
        # Second delivery passes the gate as if the first were not yet visible.
        with patch.object(ledger, "find_by_external_event_id", AsyncMock(return_value=None)):
            result = await dispatcher.ingest(*delivery())
        assert result.duplicate is True
        assert handlers.handle.await_count == 1
        async with db.get_session() as session:
            assert len(await ledger.list_events(session)) == 1


@pytest.fixture
async def file_db(tmp_path, settings):
    """A file-backed database, so concurrent sessions get separate connections."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"
    manager = DatabaseManager(settings.model_copy(update={"db_url": url}))
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def slow_handlers():
    calls = []

    async def handle(session, event):
        calls.append(event.id)
        await asyncio.sleep(0.05)
        return HandlerOutcome(category=EventCategory.INVOICE)

    mock = MagicMock()
    mock.handle = AsyncMock(side_effect=handle)
    mock.calls = calls
    return mock


class TestConcurrency:
    async def test_concurrent_duplicate_deliveries(self, file_db, ledger, slow_handlers, settings):
        dispatcher = WebhookDispatcher(file_db, ledger, slow_handlers, settings)
        body, signature = delivery()

        results = await asyncio.gather(
            dispatcher.ingest(body, signature), dispatcher.ingest(body, signature),
        )

        assert sorted(r.duplicate for r in results) == [False, True]
        assert slow_handlers.calls == ["evt_1"]
        async with file_db.get_session() as session:
            assert len(await ledger.list_events(session)) == 1

    async def test_overlapping_sweeps_claim_once(self, file_db, ledger, slow_handlers, settings):
        async with file_db.get_session() as session:
            entry = await ledger.create(
                session, "evt_1", "invoice.paid", False, None,
                json.loads(delivery()[0]),
            )
            ledger_id = entry.id
        dispatcher = WebhookDispatcher(file_db, ledger, slow_handlers, settings)

        reports = await asyncio.gather(dispatcher.retry_sweep(), dispatcher.retry_sweep())

        assert slow_handlers.calls == ["evt_1"]
        assert sum(r.attempted for r in reports) == 1
        assert sum(r.completed for r in reports) == 1
        async with file_db.get_session() as session:
            entry = await ledger.get(session, ledger_id)
        assert entry.status == COMPLETED

    async def test_claim_is_exclusive(self, db, ledger):
        async with db.get_session() as session:
            entry = await ledger.create(session, "evt_1", "invoice.paid", False, None, {})
        async with db.get_session() as session:
            assert await ledger.claim(session, entry.id) is True
        async with db.get_session() as session:
            assert await ledger.claim(session, entry.id) is False
            assert (await ledger.get(session, entry.id)).status == PROCESSING

    async def test_in_flight_entry_is_not_reprocessed(self, dispatcher, handlers, db, ledger):
        async with db.get_session() as session:
            entry = await ledger.create(session, "evt_1", "invoice.paid", False, None, {})
        async with db.get_session() as session:
            await ledger.claim(session, entry.id)

        assert await dispatcher.process(entry.id) == PROCESSING
        report = await dispatcher.retry_sweep()
        assert report.attempted == 0
        handlers.handle.assert_not_awaited()


class TestHandlerFailure:
    async def test_failure_recorded_not_raised(self, dispatcher, handlers, db, ledger, caplog):
        handlers.handle.side_effect = RuntimeError("database on fire")
        with caplog.at_level(logging.ERROR, logger="meterbridge.webhooks.dispatcher"):
            result = await dispatcher.ingest(*delivery())

        assert result.status == FAILED
        async with db.get_session() as session:
            entry = await ledger.find_by_external_event_id(session, "evt_1")
        assert entry.status == FAILED
        assert entry.error == "database on fire"
        assert entry.retry_count == 1
        assert any("evt_1" in r.getMessage() and "invoice.paid" in r.getMessage() for r in caplog.records)

    async def test_handler_writes_rolled_back_on_failure(self, dispatcher, handlers, db, billing, tenant):
        async def handle(session, event):
            await billing.update_customer_by_stripe_id(session, "cus_acme", email="changed@acme.test")
            raise RuntimeError("late failure")

        handlers.handle.side_effect = handle
        await dispatcher.ingest(*delivery())
        async with db.get_session() as session:
            customer = await billing.find_customer_by_stripe_id(session, "cus_acme")
        assert customer.email == "billing@acme.test"


class TestRetrySweep:
    async def test_retry_bounded_at_five(self, dispatcher, handlers, db, ledger, caplog):
        handlers.handle.side_effect = RuntimeError("always fails")
        await dispatcher.ingest(*delivery())

        for expected in range(2, 6):
            report = await dispatcher.retry_sweep()
            assert report.attempted == 1
            assert report.failed == 1
            async with db.get_session() as session:
                entry = await ledger.find_by_external_event_id(session, "evt_1")
            assert entry.retry_count == expected

        assert ledger.is_parked(entry)
        report = await dispatcher.retry_sweep()
        assert report.attempted == 0
        async with db.get_session() as session:
            assert await ledger.find_retry_candidates(session) == []
        assert handlers.handle.await_count == 5
        assert any("parked" in r.getMessage() for r in caplog.records if r.levelno == logging.ERROR)

    async def test_sweep_recovers_failed_event(self, dispatcher, handlers, db, ledger):
        handlers.handle.side_effect = [RuntimeError("transient"), HandlerOutcome(EventCategory.INVOICE)]
        await dispatcher.ingest(*delivery())

        report = await dispatcher.retry_sweep()
        assert report.completed == 1
        async with db.get_session() as session:
            entry = await ledger.find_by_external_event_id(session, "evt_1")
        assert entry.status == COMPLETED
        assert entry.retry_count == 1

    async def test_process_skips_completed(self, dispatcher, handlers):
        result = await dispatcher.ingest(*delivery())
        assert await dispatcher.process(result.ledger_id) == COMPLETED
        assert handlers.handle.await_count == 1

    async def test_process_unknown_id(self, dispatcher):
        assert await dispatcher.process("missing") is None


class TestNotifications:
    async def test_run_after_completion(self, dispatcher, handlers, db, ledger):
        seen = []

        async def notify():
            async with db.get_session() as session:
                entry = await ledger.find_by_external_event_id(session, "evt_1")
            seen.append(entry.status)

        handlers.handle.return_value = HandlerOutcome(EventCategory.INVOICE, notifications=[notify])
        await dispatcher.ingest(*delivery())
        assert seen == [COMPLETED]

    async def test_notification_failure_keeps_completed(self, dispatcher, handlers, db, ledger):
        failing = AsyncMock(side_effect=RuntimeError("smtp down"))
        handlers.handle.return_value = HandlerOutcome(EventCategory.INVOICE, notifications=[failing])

        result = await dispatcher.ingest(*delivery())
        assert result.status == COMPLETED
        failing.assert_awaited_once()
        async with db.get_session() as session:
            entry = await ledger.find_by_external_event_id(session, "evt_1")
        assert entry.status == COMPLETED

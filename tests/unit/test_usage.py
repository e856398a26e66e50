"""Tests for the usage record store and usage service."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from meterbridge.common.exceptions import (
    BillingCustomerNotFoundError,
    PaymentProviderError,
    SubscriptionAccessError,
    SubscriptionNotFoundError,
)
from meterbridge.usage.models import UsageRecordModel
from meterbridge.usage.service import UsageService
from meterbridge.usage.store import UsageRecordStore, UsageSummary, as_number

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
WINDOW = (T0, T0 + timedelta(days=30))


@pytest.fixture
def store():
    return UsageRecordStore()


async def _record(db, store, subscription_id, meter_id, quantity, at=T0 + timedelta(hours=1)):
    async with db.get_session() as session:
        return await store.create(
            session,
            subscription_id=subscription_id,
            meter_id=meter_id,
            meter_event_name=f"{meter_id}_event",
            quantity=quantity,
            timestamp=at,
        )


class TestAsNumber:
    @pytest.mark.parametrize("raw,expected", [
        (None, 0),
        (0, 0),
        (150, 150),
        (12.5, 12.5),
        ("350", 350),
        ("12.5", 12.5),
        (Decimal("200"), 200),
        (Decimal("0.25"), 0.25),
    ])
    def test_coerces(self, raw, expected):
        assert as_number(raw) == expected

    def test_numeric_strings_do_not_concatenate(self):
        assert as_number("100") + as_number("50") == 150

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            as_number("abc")
        with pytest.raises(ValueError):
            as_number("NaN")


class TestCreate:
    async def test_create_record(self, db, store, tenant):
        record = await _record(db, store, tenant["subscription"].id, "meterA", 5)
        assert record.id
        assert record.quantity == 5
        assert record.stripe_event_id is None

    async def test_unknown_subscription(self, db, store):
        with pytest.raises(SubscriptionNotFoundError):
            await _record(db, store, "no-such-subscription", "meterA", 1)

    async def test_each_create_gets_new_id(self, db, store, tenant):
        a = await _record(db, store, tenant["subscription"].id, "meterA", 1)
        b = await _record(db, store, tenant["subscription"].id, "meterA", 1)
        assert a.id != b.id


class TestFindBySubscriptionId:
    async def test_newest_first_with_inclusive_bounds(self, db, store, tenant):
        sub_id = tenant["subscription"].id
        times = [T0, T0 + timedelta(hours=1), T0 + timedelta(hours=2), T0 + timedelta(hours=3)]
        for i, at in enumerate(times):
            await _record(db, store, sub_id, "meterA", i, at=at)

        async with db.get_session() as session:
            everything = await store.find_by_subscription_id(session, sub_id)
            bounded = await store.find_by_subscription_id(
                session, sub_id, start_time=times[1], end_time=times[2],
            )
            open_end = await store.find_by_subscription_id(session, sub_id, start_time=times[2])
            limited = await store.find_by_subscription_id(session, sub_id, limit=2)

        assert [r.quantity for r in everything] == [3, 2, 1, 0]
        assert [r.quantity for r in bounded] == [2, 1]
        assert [r.quantity for r in open_end] == [3, 2]
        assert len(limited) == 2


class TestUsageSummary:
    async def test_zero_summary(self, db, store, tenant):
        async with db.get_session() as session:
            summary = await store.get_usage_summary(session, tenant["subscription"].id, *WINDOW)
        assert summary == UsageSummary(total=0, count=0, by_meter={})

    async def test_aggregation(self, db, store, tenant):
        sub_id = tenant["subscription"].id
        await _record(db, store, sub_id, "meterA", 100)
        await _record(db, store, sub_id, "meterA", 50)
        await _record(db, store, sub_id, "meterB", 200)

        async with db.get_session() as session:
            summary = await store.get_usage_summary(session, sub_id, *WINDOW)
        assert summary.total == 350
        assert summary.count == 3
        assert summary.by_meter == {"meterA": 150, "meterB": 200}

    async def test_null_quantity_counts_as_zero(self, db, store, tenant):
        sub_id = tenant["subscription"].id
        await _record(db, store, sub_id, "meterA", 10)
        async with db.get_session() as session:
            session.add(UsageRecordModel(
                subscription_id=sub_id,
                meter_id="meterA",
                meter_event_name="meterA_event",
                quantity=None,
                timestamp=T0 + timedelta(hours=2),
            ))

        async with db.get_session() as session:
            summary = await store.get_usage_summary(session, sub_id, *WINDOW)
        assert summary.total == 10
        assert summary.count == 2
        assert summary.by_meter == {"meterA": 10}

    async def test_window_excludes_outside_records(self, db, store, tenant):
        sub_id = tenant["subscription"].id
        await _record(db, store, sub_id, "meterA", 7, at=T0 - timedelta(days=1))
        await _record(db, store, sub_id, "meterA", 3, at=WINDOW[1])
        async with db.get_session() as session:
            summary = await store.get_usage_summary(session, sub_id, *WINDOW)
        assert summary.total == 3
        assert summary.count == 1


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.report_meter_event = AsyncMock(return_value={"identifier": "mev_123"})
    mock.list_meters = AsyncMock(return_value=[{"id": "mtr_1"}])
    mock.list_meter_event_summaries = AsyncMock(return_value=[{"id": "sum_1", "aggregated_value": 5}])
    return mock


@pytest.fixture
def usage_svc(db, store, billing, gateway):
    return UsageService(db, store, billing, gateway)


class TestUsageService:
    async def test_report_usage_reports_to_provider(self, usage_svc, gateway, tenant):
        record = await usage_svc.report_usage(
            tenant["company"].id, tenant["subscription"].id, "meterA", "api_calls", 12,
        )
        args, kwargs = gateway.report_meter_event.await_args
        assert args == ("api_calls", "cus_acme", 12)
        assert kwargs["identifier"]
        assert record.stripe_event_id == kwargs["identifier"]

    async def test_report_usage_without_gateway(self, db, store, billing, tenant):
        svc = UsageService(db, store, billing)
        record = await svc.report_usage(
            tenant["company"].id, tenant["subscription"].id, "meterA", "api_calls", 1,
        )
        assert record.stripe_event_id is None

    async def test_unknown_subscription_is_404(self, usage_svc, tenant):
        with pytest.raises(SubscriptionNotFoundError):
            await usage_svc.report_usage(tenant["company"].id, "missing", "meterA", "evt", 1)

    async def test_foreign_company_is_forbidden(self, db, usage_svc, billing, gateway, tenant):
        async with db.get_session() as session:
            other = await billing.create_company(session, "Other")
            await billing.create_customer(session, other.id, "cus_other", "o@other.test")
        with pytest.raises(SubscriptionAccessError):
            await usage_svc.report_usage(other.id, tenant["subscription"].id, "meterA", "evt", 1)
        gateway.report_meter_event.assert_not_awaited()

    async def test_provider_failure_writes_nothing(self, usage_svc, gateway, tenant):
        gateway.report_meter_event.side_effect = PaymentProviderError("down", status_code=503)
        with pytest.raises(PaymentProviderError):
            await usage_svc.report_usage(
                tenant["company"].id, tenant["subscription"].id, "meterA", "evt", 1,
            )
        records = await usage_svc.list_usage_records(tenant["company"].id, tenant["subscription"].id)
        assert records == []

    async def test_record_written_before_provider_report(self, usage_svc, store, gateway, tenant):
        order = []
        create = store.create

        async def tracked_create(*args, **kwargs):
            record = await create(*args, **kwargs)
            order.append(("create", record.stripe_event_id))
            return record

        async def tracked_report(*args, **kwargs):
            order.append(("report", kwargs["identifier"]))
            return {}

        gateway.report_meter_event.side_effect = tracked_report
        with patch.object(store, "create", side_effect=tracked_create):
            await usage_svc.report_usage(
                tenant["company"].id, tenant["subscription"].id, "meterA", "evt", 1,
            )

        assert [step for step, _ in order] == ["create", "report"]
        assert order[0][1] == order[1][1]

    async def test_commit_failure_after_report_is_logged(self, db, usage_svc, gateway, tenant, caplog):
        real_session = db.get_session

        @asynccontextmanager
        async def failing_commit():
            async with real_session() as session:
                yield session
                raise RuntimeError("disk I/O error")

        with patch.object(db, "get_session", failing_commit), \
                caplog.at_level(logging.ERROR, logger="meterbridge.usage.service"):
            with pytest.raises(RuntimeError):
                await usage_svc.report_usage(
                    tenant["company"].id, tenant["subscription"].id, "meterA", "evt", 1,
                )

        identifier = gateway.report_meter_event.await_args.kwargs["identifier"]
        assert any(
            r.levelno == logging.ERROR and identifier in r.getMessage() for r in caplog.records
        )
        records = await usage_svc.list_usage_records(tenant["company"].id, tenant["subscription"].id)
        assert records == []

    async def test_summary_shape(self, usage_svc, tenant):
        company_id, sub_id = tenant["company"].id, tenant["subscription"].id
        for meter, qty in (("meterA", 100), ("meterA", 50), ("meterB", 200)):
            await usage_svc.report_usage(company_id, sub_id, meter, "evt", qty, timestamp=T0 + timedelta(days=1))

        summary = await usage_svc.get_usage_summary(company_id, sub_id, *WINDOW)
        assert summary["subscriptionId"] == sub_id
        assert summary["totalUsage"] == 350
        assert summary["recordCount"] == 3
        assert summary["byMeter"] == {"meterA": 150, "meterB": 200}
        assert summary["startTime"] == WINDOW[0].isoformat()

    async def test_meter_summaries_use_company_customer(self, usage_svc, gateway, tenant):
        result = await usage_svc.get_meter_event_summaries(tenant["company"].id, "mtr_1", *WINDOW)
        assert result[0]["aggregated_value"] == 5
        gateway.list_meter_event_summaries.assert_awaited_once_with("mtr_1", "cus_acme", *WINDOW)

    async def test_meter_summaries_need_customer(self, db, usage_svc, billing):
        async with db.get_session() as session:
            company = await billing.create_company(session, "No billing")
        with pytest.raises(BillingCustomerNotFoundError):
            await usage_svc.get_meter_event_summaries(company.id, "mtr_1", *WINDOW)

    async def test_meters_require_gateway(self, db, store, billing):
        svc = UsageService(db, store, billing)
        with pytest.raises(PaymentProviderError) as exc_info:
            await svc.list_meters()
        assert exc_info.value.status_code == 503

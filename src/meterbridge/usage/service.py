"""Usage service: tenant-checked metering on top of the usage store."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.billing.gateway import StripeGateway
from meterbridge.billing.models import BillingCustomerModel, SubscriptionModel
from meterbridge.billing.repository import BillingRepository
from meterbridge.common.database import DatabaseManager
from meterbridge.common.exceptions import (
    BillingCustomerNotFoundError,
    PaymentProviderError,
    SubscriptionAccessError,
    SubscriptionNotFoundError,
)
from meterbridge.common.models import generate_uuid, isoformat
from meterbridge.usage.models import UsageRecordModel
from meterbridge.usage.store import UsageRecordStore

logger = logging.getLogger(__name__)


class UsageService:
    """Metered usage operations scoped to the calling company."""

    def __init__(
        self,
        db: DatabaseManager,
        store: UsageRecordStore,
        billing: BillingRepository,
        gateway: Optional[StripeGateway] = None,
    ):
        self.db = db
        self.store = store
        self.billing = billing
        self.gateway = gateway

    async def _authorize(
        self, session: AsyncSession, company_id: str, subscription_id: str,
    ) -> tuple[SubscriptionModel, BillingCustomerModel]:
        subscription = await self.billing.get_subscription(session, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        customer = await self.billing.find_customer_by_company_id(session, company_id)
        if customer is None or subscription.billing_customer_id != customer.id:
            raise SubscriptionAccessError()
        return subscription, customer

    def _require_gateway(self) -> StripeGateway:
        if self.gateway is None:
            raise PaymentProviderError("Payment provider not configured", status_code=503)
        return self.gateway

    async def report_usage(
        self,
        company_id: str,
        subscription_id: str,
        meter_id: str,
        meter_event_name: str,
        quantity: float,
        timestamp: Optional[datetime] = None,
    ) -> UsageRecordModel:
        """Record usage locally, then report it to the provider under the same identifier.

        The row is flushed before the provider call, so a provider failure leaves
        nothing behind. The reverse case, a reported event whose commit then
        fails, is logged as an error with the identifier for reconciliation.
        """
        timestamp = timestamp or datetime.now(timezone.utc)
        identifier = generate_uuid() if self.gateway is not None else None
        reported = False
        try:
            async with self.db.get_session() as session:
                _, customer = await self._authorize(session, company_id, subscription_id)
                record = await self.store.create(
                    session,
                    subscription_id=subscription_id,
                    meter_id=meter_id,
                    meter_event_name=meter_event_name,
                    quantity=quantity,
                    timestamp=timestamp,
                    stripe_event_id=identifier,
                )
                if self.gateway is not None:
                    await self.gateway.report_meter_event(
                        meter_event_name,
                        customer.stripe_customer_id,
                        quantity,
                        timestamp=timestamp,
                        identifier=identifier,
                    )
                    reported = True
        except Exception:
            if reported:
                logger.error(
                    "Meter event %s reported to Stripe but the usage record was not saved",
                    identifier,
                    extra={"company_id": company_id, "subscription_id": subscription_id},
                )
            raise
        logger.info(
            "Recorded usage %s=%s for subscription %s", meter_id, quantity, subscription_id,
            extra={"company_id": company_id},
        )
        return record

    async def list_usage_records(
        self,
        company_id: str,
        subscription_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[UsageRecordModel]:
        async with self.db.get_session() as session:
            await self._authorize(session, company_id, subscription_id)
            return await self.store.find_by_subscription_id(
                session, subscription_id, start_time=start_time, end_time=end_time, limit=limit,
            )

    async def get_usage_summary(
        self,
        company_id: str,
        subscription_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> dict[str, Any]:
        async with self.db.get_session() as session:
            await self._authorize(session, company_id, subscription_id)
            summary = await self.store.get_usage_summary(
                session, subscription_id, start_time, end_time,
            )
        return {
            "subscriptionId": subscription_id,
            "startTime": isoformat(start_time),
            "endTime": isoformat(end_time),
            "totalUsage": summary.total,
            "recordCount": summary.count,
            "byMeter": summary.by_meter,
        }

    async def list_meters(self) -> list[dict[str, Any]]:
        return await self._require_gateway().list_meters()

    async def get_meter_event_summaries(
        self,
        company_id: str,
        meter_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[dict[str, Any]]:
        gateway = self._require_gateway()
        async with self.db.get_session() as session:
            customer = await self.billing.find_customer_by_company_id(session, company_id)
        if customer is None:
            raise BillingCustomerNotFoundError()
        return await gateway.list_meter_event_summaries(
            meter_id, customer.stripe_customer_id, start_time, end_time,
        )

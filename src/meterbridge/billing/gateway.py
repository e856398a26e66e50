"""Stripe API gateway: the single boundary where provider errors are mapped."""

import logging
from datetime import datetime
from typing import Any, Optional

import stripe

from meterbridge.common.exceptions import call_provider

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeGateway:
    """Async wrapper over the stripe SDK calls the pipeline needs.

    Every call goes through ``call_provider`` so callers only ever see
    ``PaymentProviderError`` for provider-side failures.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = await call_provider(
            stripe.Subscription.retrieve_async,
            subscription_id,
            api_key=self.api_key,
            expand=["items.data.price"],
        )
        return _as_dict(subscription)

    async def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        invoice = await call_provider(
            stripe.Invoice.retrieve_async, invoice_id, api_key=self.api_key,
        )
        return _as_dict(invoice)

    async def report_meter_event(
        self,
        event_name: str,
        customer_id: str,
        value: float,
        timestamp: Optional[datetime] = None,
        identifier: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "event_name": event_name,
            "payload": {"stripe_customer_id": customer_id, "value": str(value)},
        }
        if identifier:
            params["identifier"] = identifier
        if timestamp is not None:
            params["timestamp"] = int(timestamp.timestamp())
        event = await call_provider(
            stripe.billing.MeterEvent.create_async, api_key=self.api_key, **params,
        )
        logger.debug("Reported meter event %s for customer %s", event_name, customer_id)
        return _as_dict(event)

    async def list_meters(self) -> list[dict[str, Any]]:
        meters = await call_provider(stripe.billing.Meter.list_async, api_key=self.api_key)
        return [_as_dict(m) for m in meters.data]

    async def list_meter_event_summaries(
        self,
        meter_id: str,
        customer_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[dict[str, Any]]:
        summaries = await call_provider(
            stripe.billing.Meter.list_event_summaries_async,
            meter_id,
            api_key=self.api_key,
            customer=customer_id,
            start_time=int(start_time.timestamp()),
            end_time=int(end_time.timestamp()),
        )
        return [_as_dict(s) for s in summaries.data]

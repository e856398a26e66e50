"""Keep local subscription and invoice rows in step with the payment provider."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.billing.gateway import StripeGateway
from meterbridge.billing.models import InvoiceModel
from meterbridge.billing.repository import BillingRepository

logger = logging.getLogger(__name__)


def from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    """Provider references arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription")) or object_id(invoice.get("subscription"))


@dataclass
class SyncResult:
    stripe_subscription_id: str
    found: bool
    previous_status: Optional[str] = None
    status: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.found and self.previous_status != self.status


class SubscriptionSync:
    """Pulls a subscription from the provider and applies it to the local row."""

    def __init__(self, billing: BillingRepository, gateway: StripeGateway):
        self.billing = billing
        self.gateway = gateway

    async def sync_from_provider(
        self, session: AsyncSession, stripe_subscription_id: str,
    ) -> SyncResult:
        remote = await self.gateway.retrieve_subscription(stripe_subscription_id)
        local = await self.billing.find_subscription_by_stripe_id(session, stripe_subscription_id)
        stripe_customer_id = object_id(remote.get("customer"))

        if local is None:
            logger.debug("Subscription %s has no local row; nothing to sync", stripe_subscription_id)
            return SyncResult(stripe_subscription_id, found=False, stripe_customer_id=stripe_customer_id)

        # Billing periods moved onto subscription items in newer API versions.
        items = (remote.get("items") or {}).get("data") or []
        period_source = items[0] if items and items[0].get("current_period_start") else remote

        previous_status = local.status
        await self.billing.update_subscription_by_stripe_id(
            session,
            stripe_subscription_id,
            status=remote.get("status"),
            current_period_start=from_epoch(period_source.get("current_period_start")),
            current_period_end=from_epoch(period_source.get("current_period_end")),
            cancel_at_period_end=bool(remote.get("cancel_at_period_end", False)),
            canceled_at=from_epoch(remote.get("canceled_at")),
            trial_start=from_epoch(remote.get("trial_start")),
            trial_end=from_epoch(remote.get("trial_end")),
        )
        return SyncResult(
            stripe_subscription_id,
            found=True,
            previous_status=previous_status,
            status=remote.get("status"),
            stripe_customer_id=stripe_customer_id,
        )


class InvoiceSync:
    """Creates or refreshes the local invoice row from the provider's copy.

    Invoices are only mirrored for customers we know; the row is keyed on the
    provider invoice id, so replays update in place.
    """

    def __init__(self, billing: BillingRepository, gateway: StripeGateway):
        self.billing = billing
        self.gateway = gateway

    async def sync_from_provider(
        self, session: AsyncSession, stripe_invoice_id: str,
    ) -> Optional[InvoiceModel]:
        remote = await self.gateway.retrieve_invoice(stripe_invoice_id)
        stripe_customer_id = object_id(remote.get("customer"))
        customer = None
        if stripe_customer_id:
            customer = await self.billing.find_customer_by_stripe_id(session, stripe_customer_id)
        if customer is None:
            logger.debug(
                "Invoice %s belongs to unknown customer %s; not synced",
                stripe_invoice_id, stripe_customer_id,
            )
            return None

        subscription_id = None
        stripe_subscription_id = invoice_subscription_id(remote)
        if stripe_subscription_id:
            subscription = await self.billing.find_subscription_by_stripe_id(
                session, stripe_subscription_id,
            )
            subscription_id = subscription.id if subscription else None

        transitions = remote.get("status_transitions") or {}
        return await self.billing.upsert_invoice(
            session,
            customer.id,
            stripe_invoice_id,
            subscription_id=subscription_id,
            status=remote.get("status"),
            amount_due=remote.get("amount_due"),
            amount_paid=remote.get("amount_paid"),
            currency=remote.get("currency"),
            attempt_count=remote.get("attempt_count"),
            attempted=remote.get("attempted"),
            paid_at=from_epoch(transitions.get("paid_at")),
            stripe_invoice_number=remote.get("number"),
            stripe_hosted_invoice_url=remote.get("hosted_invoice_url"),
            stripe_pdf_url=remote.get("invoice_pdf"),
        )

    async def subscription_for_invoice(self, stripe_invoice_id: str) -> Optional[str]:
        remote = await self.gateway.retrieve_invoice(stripe_invoice_id)
        return invoice_subscription_id(remote)

"""Billing-domain handlers for classified provider events.

Handlers mutate billing state inside the caller's session. Notifications are
not sent from here: they are returned as deferred calls on ``HandlerOutcome``
and run by the dispatcher once the ledger entry is committed.
"""

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.billing.repository import BillingRepository
from meterbridge.billing.sync import (
    InvoiceSync,
    SubscriptionSync,
    SyncResult,
    invoice_subscription_id,
    object_id,
)
from meterbridge.common.exceptions import PaymentProviderError
from meterbridge.notifications.service import NotificationService
from meterbridge.webhooks.events import EventCategory, WebhookEventData, classify_event_type

logger = logging.getLogger(__name__)

Deferred = Callable[[], Awaitable[None]]

# Only these subscription statuses move the company-level flag.
_COMPANY_FLAG_BY_STATUS = {"active": True, "canceled": False}


@dataclass
class HandlerOutcome:
    category: EventCategory
    handled: bool = True
    notifications: list[Deferred] = field(default_factory=list)


class BillingEventHandlers:
    def __init__(
        self,
        billing: BillingRepository,
        sync: SubscriptionSync,
        notifications: NotificationService,
        invoice_sync: InvoiceSync,
    ):
        self.billing = billing
        self.sync = sync
        self.notifications = notifications
        self.invoice_sync = invoice_sync

    async def handle(self, session: AsyncSession, event: WebhookEventData) -> HandlerOutcome:
        category = classify_event_type(event.type)
        outcome = HandlerOutcome(category=category)
        if category == EventCategory.SUBSCRIPTION:
            await self._handle_subscription(session, event, outcome)
        elif category == EventCategory.INVOICE:
            await self._handle_invoice(session, event, outcome)
        elif category == EventCategory.PAYMENT:
            await self._handle_payment(session, event, outcome)
        elif category == EventCategory.CUSTOMER:
            await self._handle_customer(session, event, outcome)
        else:
            logger.debug("Unhandled webhook event type: %s", event.type)
            outcome.handled = False
        return outcome

    # ── Subscriptions ──

    async def _handle_subscription(
        self, session: AsyncSession, event: WebhookEventData, outcome: HandlerOutcome,
    ) -> None:
        subscription_id = event.data_object.get("id")
        if not subscription_id:
            logger.warning("Subscription event %s carries no subscription id", event.id)
            return
        result = await self.sync.sync_from_provider(session, subscription_id)
        await self._update_company_flag(session, result)
        if result.status_changed and result.stripe_customer_id:
            outcome.notifications.append(functools.partial(
                self.notifications.send_subscription_status_change_email,
                stripe_customer_id=result.stripe_customer_id,
                status=result.status,
                subscription_id=subscription_id,
            ))

    async def _update_company_flag(self, session: AsyncSession, result: SyncResult) -> None:
        """Mirror the subscription status onto the owning company.

        A failure here is logged and does not fail the event.
        """
        is_active = _COMPANY_FLAG_BY_STATUS.get(result.status)
        if is_active is None or not result.stripe_customer_id:
            return
        try:
            customer = await self.billing.find_customer_by_stripe_id(
                session, result.stripe_customer_id,
            )
            if customer is None:
                logger.warning(
                    "Customer %s not found locally; company subscription flag unchanged",
                    result.stripe_customer_id,
                )
                return
            company = await self.billing.mark_subscription_status(
                session, customer.company_id, is_active,
            )
            if company is None:
                logger.warning("Company %s not found for customer %s",
                               customer.company_id, result.stripe_customer_id)
        except Exception:
            logger.error(
                "Failed to update company subscription flag for subscription %s",
                result.stripe_subscription_id, exc_info=True,
            )

    # ── Invoices ──

    async def _handle_invoice(
        self, session: AsyncSession, event: WebhookEventData, outcome: HandlerOutcome,
    ) -> None:
        invoice = event.data_object
        invoice_id = invoice.get("id")
        if invoice_id:
            await self.invoice_sync.sync_from_provider(session, invoice_id)

        customer_id = object_id(invoice.get("customer"))
        if not customer_id:
            logger.warning("Invoice event %s has no customer; skipping", event.id)
            return

        if event.type == "invoice.payment_failed":
            await self._invoice_payment_failed(session, invoice, customer_id, outcome)
        elif event.type == "invoice.paid":
            await self._invoice_paid(session, invoice)
        else:
            logger.debug("Synced invoice %s for event type %s", invoice_id, event.type)

    async def _invoice_payment_failed(
        self,
        session: AsyncSession,
        invoice: dict[str, Any],
        customer_id: str,
        outcome: HandlerOutcome,
    ) -> None:
        invoice_id = invoice.get("id")
        local = await self.billing.find_invoice_by_stripe_id(session, invoice_id)
        if local is None:
            logger.warning("Invoice %s not found locally; skipping payment failure", invoice_id)
            return

        await self.billing.update_invoice_by_stripe_id(
            session,
            invoice_id,
            status="uncollectible",
            attempt_count=invoice.get("attempt_count"),
            attempted=True,
        )
        amount_due = invoice.get("amount_due")
        error = invoice.get("last_finalization_error") or {}
        outcome.notifications.append(functools.partial(
            self.notifications.send_payment_failed_email,
            stripe_customer_id=customer_id,
            stripe_invoice_id=invoice_id,
            error_message=error.get("message"),
            amount=amount_due / 100 if amount_due is not None else None,
            currency=invoice.get("currency"),
        ))

    async def _invoice_paid(self, session: AsyncSession, invoice: dict[str, Any]) -> None:
        invoice_id = invoice.get("id")
        updated = await self.billing.update_invoice_by_stripe_id(
            session,
            invoice_id,
            status="paid",
            attempt_count=invoice.get("attempt_count"),
            attempted=invoice.get("attempted"),
        )
        if updated is None:
            logger.debug("Paid invoice %s has no local row", invoice_id)

        subscription_id = invoice_subscription_id(invoice)
        if subscription_id:
            await self.sync.sync_from_provider(session, subscription_id)

    # ── Payments ──

    async def _handle_payment(
        self, session: AsyncSession, event: WebhookEventData, outcome: HandlerOutcome,
    ) -> None:
        if event.type == "payment_intent.succeeded":
            await self._payment_succeeded(session, event.data_object)
            return
        if event.type != "payment_intent.payment_failed":
            logger.debug("No handler for payment event type %s", event.type)
            outcome.handled = False
            return

        intent = event.data_object
        customer_id = object_id(intent.get("customer"))
        if not customer_id:
            logger.warning("Payment intent %s has no customer; skipping", intent.get("id"))
            return

        error = intent.get("last_payment_error") or {}
        amount = intent.get("amount")
        outcome.notifications.append(functools.partial(
            self.notifications.send_payment_failed_email,
            stripe_customer_id=customer_id,
            stripe_payment_intent_id=intent.get("id"),
            error_message=error.get("message"),
            amount=amount / 100 if amount is not None else None,
            currency=intent.get("currency"),
        ))

    async def _payment_succeeded(self, session: AsyncSession, intent: dict[str, Any]) -> None:
        intent_id = intent.get("id")
        metadata = intent.get("metadata") or {}

        # One-time purchases are stored with the payment intent id as subscription id.
        if metadata.get("type") == "one_time_purchase":
            local = await self.billing.find_subscription_by_stripe_id(session, intent_id)
            if local is not None and local.status == "incomplete":
                await self.billing.update_subscription_by_stripe_id(
                    session, intent_id, status="active",
                )
                logger.info("Activated one-time purchase %s", intent_id)
            return

        invoice_id = object_id(intent.get("invoice"))
        if not invoice_id:
            logger.debug("Payment intent %s has no invoice; nothing to sync", intent_id)
            return
        try:
            subscription_id = await self.invoice_sync.subscription_for_invoice(invoice_id)
        except PaymentProviderError as exc:
            logger.warning("Could not fetch invoice %s for payment intent %s: %s",
                           invoice_id, intent_id, exc.message)
            return
        if subscription_id:
            await self.sync.sync_from_provider(session, subscription_id)

    # ── Customers ──

    async def _handle_customer(
        self, session: AsyncSession, event: WebhookEventData, outcome: HandlerOutcome,
    ) -> None:
        customer = event.data_object
        customer_id = customer.get("id")

        if event.type == "customer.deleted":
            cancelled = await self.billing.cancel_all_by_stripe_customer_id(
                session, customer_id, canceled_at=datetime.now(timezone.utc),
            )
            logger.info("Customer %s deleted; cancelled %d subscriptions", customer_id, cancelled)
        elif event.type == "customer.updated":
            updated = await self.billing.update_customer_by_stripe_id(
                session, customer_id, email=customer.get("email"), name=customer.get("name"),
            )
            if updated is None:
                logger.debug("Updated customer %s has no local row", customer_id)
        else:
            logger.debug("No handler for customer event type %s", event.type)
            outcome.handled = False

"""Customer-facing billing notifications.

Every public method here is best-effort: errors are logged and absorbed so a
notification problem can never fail the billing write that triggered it.
"""

import logging
from typing import Any, Optional

from meterbridge.billing.repository import BillingRepository
from meterbridge.common.database import DatabaseManager
from meterbridge.notifications.email import PAYMENT_FAILURE, SUBSCRIPTION_STATUS_CHANGE
from meterbridge.notifications.queue import DatabaseJobQueue, JobOptions

logger = logging.getLogger(__name__)

JOB_NAME = "billing-notification"


class NotificationService:
    def __init__(
        self,
        db: DatabaseManager,
        billing: BillingRepository,
        queue: DatabaseJobQueue,
        options: Optional[JobOptions] = None,
    ):
        self.db = db
        self.billing = billing
        self.queue = queue
        self.options = options or JobOptions()

    async def send_payment_failed_email(
        self,
        stripe_customer_id: str,
        stripe_invoice_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        error_message: Optional[str] = None,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
    ) -> None:
        try:
            async with self.db.get_session() as session:
                customer = await self.billing.find_customer_by_stripe_id(session, stripe_customer_id)
                if customer is None:
                    logger.warning(
                        "Customer %s not found; skipping payment failure email", stripe_customer_id
                    )
                    return
                invoice = None
                if stripe_invoice_id:
                    invoice = await self.billing.find_invoice_by_stripe_id(session, stripe_invoice_id)

            payload: dict[str, Any] = {
                "to": customer.email,
                "customerName": customer.name,
                "stripeCustomerId": stripe_customer_id,
                "stripeInvoiceId": stripe_invoice_id,
                "stripePaymentIntentId": stripe_payment_intent_id,
                "errorMessage": error_message or "Payment failed",
                "amount": amount,
                "currency": currency or "usd",
                "locale": "en",
            }
            if invoice is not None:
                payload["invoiceUrl"] = invoice.stripe_hosted_invoice_url
                payload["invoiceNumber"] = invoice.stripe_invoice_number

            await self.queue.add(
                JOB_NAME, {"jobType": PAYMENT_FAILURE, "payload": payload}, self.options
            )
            logger.info("Queued payment failure email for customer %s", stripe_customer_id)
        except Exception as exc:
            logger.error(
                "Failed to queue payment failure email for customer %s: %s",
                stripe_customer_id, exc,
                extra={"stripe_customer_id": stripe_customer_id},
            )

    async def send_subscription_status_change_email(
        self,
        stripe_customer_id: str,
        status: str,
        subscription_id: str,
    ) -> None:
        try:
            async with self.db.get_session() as session:
                customer = await self.billing.find_customer_by_stripe_id(session, stripe_customer_id)
            if customer is None:
                logger.warning(
                    "Customer %s not found; skipping subscription status email", stripe_customer_id
                )
                return

            payload = {
                "to": customer.email,
                "customerName": customer.name,
                "stripeCustomerId": stripe_customer_id,
                "subscriptionId": subscription_id,
                "status": status,
                "locale": "en",
            }
            await self.queue.add(
                JOB_NAME, {"jobType": SUBSCRIPTION_STATUS_CHANGE, "payload": payload}, self.options
            )
            logger.info(
                "Queued subscription status email for customer %s (%s)", stripe_customer_id, status
            )
        except Exception as exc:
            logger.error(
                "Failed to queue subscription status email for customer %s: %s",
                stripe_customer_id, exc,
                extra={"stripe_customer_id": stripe_customer_id},
            )

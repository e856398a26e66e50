"""Billing email delivery: SendGrid / Resend integration."""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

PAYMENT_FAILURE = "payment-failure"
SUBSCRIPTION_STATUS_CHANGE = "subscription-status-change"


def _format_amount(amount: Any, currency: str) -> str:
    if amount is None:
        return ""
    return f"{float(amount):.2f} {currency.upper()}"


def render(job_type: str, payload: dict[str, Any]) -> tuple[str, str]:
    """Return (subject, body) for a notification job."""
    name = payload.get("customerName") or "there"
    if job_type == PAYMENT_FAILURE:
        subject = "Action required: your payment failed"
        lines = [f"Hi {name},", "", "We were unable to process your latest payment."]
        amount = _format_amount(payload.get("amount"), payload.get("currency") or "usd")
        if amount:
            lines.append(f"Amount due: {amount}")
        if payload.get("invoiceNumber"):
            lines.append(f"Invoice: {payload['invoiceNumber']}")
        lines.append(f"Reason: {payload.get('errorMessage') or 'Payment failed'}")
        if payload.get("invoiceUrl"):
            lines += ["", f"Pay or update your payment method here: {payload['invoiceUrl']}"]
    elif job_type == SUBSCRIPTION_STATUS_CHANGE:
        subject = "Your subscription status has changed"
        lines = [
            f"Hi {name},",
            "",
            f"Subscription {payload.get('subscriptionId', '')} is now {payload.get('status', 'updated')}.",
        ]
    else:
        raise ValueError(f"Unknown notification type: {job_type}")
    return subject, "\n".join(lines) + "\n"


class EmailSender:
    """Sends billing emails.

    Supports SendGrid and Resend via environment configuration.
    Falls back to logging if no provider is configured.
    """

    def __init__(
        self,
        provider: str = "",
        api_key: str = "",
        from_email: str = "billing@meterbridge.local",
        from_name: str = "Meterbridge Billing",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider.lower()  # "sendgrid" or "resend"
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._client = http_client

    async def send(self, job_type: str, payload: dict[str, Any]) -> bool:
        """Render and send one notification. Returns False when delivery failed."""
        to = payload.get("to")
        if not to:
            logger.warning("Notification %s has no recipient; dropping", job_type)
            return False
        subject, body = render(job_type, payload)

        if self.provider == "sendgrid":
            return await self._send_sendgrid(to, subject, body)
        elif self.provider == "resend":
            return await self._send_resend(to, subject, body)
        logger.info("No email provider configured; %s email for %s: %s", job_type, to, subject)
        return True

    async def _post(self, url: str, json: dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return await self._client.post(url, headers=headers, json=json, timeout=30)
        async with httpx.AsyncClient() as client:
            return await client.post(url, headers=headers, json=json, timeout=30)

    async def _send_sendgrid(self, to: str, subject: str, body: str) -> bool:
        """Send via SendGrid v3 API."""
        try:
            resp = await self._post(
                "https://api.sendgrid.com/v3/mail/send",
                json={
                    "personalizations": [{"to": [{"email": to}]}],
                    "from": {"email": self.from_email, "name": self.from_name},
                    "subject": subject,
                    "content": [{"type": "text/plain", "value": body}],
                },
            )
        except httpx.HTTPError:
            logger.exception("SendGrid send failed")
            return False
        if resp.status_code in (200, 202):
            logger.info("SendGrid email sent to %s", to)
            return True
        logger.warning("SendGrid error: %s %s", resp.status_code, resp.text)
        return False

    async def _send_resend(self, to: str, subject: str, body: str) -> bool:
        """Send via Resend API."""
        try:
            resp = await self._post(
                "https://api.resend.com/emails",
                json={
                    "from": f"{self.from_name} <{self.from_email}>",
                    "to": [to],
                    "subject": subject,
                    "text": body,
                },
            )
        except httpx.HTTPError:
            logger.exception("Resend send failed")
            return False
        if resp.status_code in (200, 201):
            logger.info("Resend email sent to %s", to)
            return True
        logger.warning("Resend error: %s %s", resp.status_code, resp.text)
        return False

"""Stripe webhook verification, parsing and classification."""

import enum
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from meterbridge.common.exceptions import (
    WebhookConfigurationError,
    WebhookSignatureError,
)


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Verify Stripe webhook signature (v1 scheme).

    Stripe sends: t=<timestamp>,v1=<signature>[,v1=<signature>...]
    During secret rotation more than one v1 entry may be present; any match passes.
    """
    if not signature_header or not webhook_secret:
        return False

    timestamp = ""
    candidates: list[str] = []
    for item in signature_header.split(","):
        key, _, value = item.partition("=")
        key = key.strip()
        if key == "t":
            timestamp = value.strip()
        elif key == "v1":
            candidates.append(value.strip())

    if not timestamp or not candidates:
        return False

    if tolerance > 0:
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        current = time.time() if now is None else now
        if abs(current - signed_at) > tolerance:
            return False

    computed = compute_signature(payload, timestamp, webhook_secret)
    return any(hmac.compare_digest(computed, sig) for sig in candidates)


def construct_event(
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance: int = 300,
) -> dict[str, Any]:
    """Verify and decode a raw webhook body. Raises before anything is persisted."""
    if not webhook_secret:
        raise WebhookConfigurationError()
    if not signature_header:
        raise WebhookSignatureError("Missing stripe-signature header")
    if not verify_stripe_signature(payload, signature_header, webhook_secret, tolerance):
        raise WebhookSignatureError()
    try:
        event = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook payload is not a JSON object")
    return event


@dataclass(frozen=True)
class WebhookEventData:
    """Normalized view of a provider event."""

    id: str
    type: str
    livemode: bool
    created: datetime
    api_version: Optional[str] = None
    data_object: dict[str, Any] = field(default_factory=dict)


def parse_event(event: dict[str, Any]) -> WebhookEventData:
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise WebhookSignatureError("Webhook event is missing id or type")
    created = event.get("created")
    if created is None:
        created_at = datetime.now(timezone.utc)
    else:
        try:
            created_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise WebhookSignatureError("Webhook event has an invalid created timestamp") from exc
    data_object = (event.get("data") or {}).get("object") or {}
    return WebhookEventData(
        id=str(event_id),
        type=str(event_type),
        livemode=bool(event.get("livemode", False)),
        created=created_at,
        api_version=event.get("api_version"),
        data_object=dict(data_object),
    )


class EventCategory(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"
    PAYMENT = "payment"
    CUSTOMER = "customer"
    UNCLASSIFIED = "unclassified"


_PAYMENT_PREFIXES = ("payment_intent.", "payment_method.", "charge.")


def is_subscription_event(event_type: str) -> bool:
    return event_type.startswith("customer.subscription.")


def is_invoice_event(event_type: str) -> bool:
    return event_type.startswith("invoice.")


def is_payment_event(event_type: str) -> bool:
    return event_type.startswith(_PAYMENT_PREFIXES)


def is_customer_event(event_type: str) -> bool:
    return event_type.startswith("customer.") and not is_subscription_event(event_type)


def classify_event_type(event_type: str) -> EventCategory:
    """Map an event type to exactly one category.

    The prefix sets are disjoint (customer.* excludes customer.subscription.*),
    so the result does not depend on the order of checks.
    """
    if is_subscription_event(event_type):
        return EventCategory.SUBSCRIPTION
    if is_invoice_event(event_type):
        return EventCategory.INVOICE
    if is_payment_event(event_type):
        return EventCategory.PAYMENT
    if is_customer_event(event_type):
        return EventCategory.CUSTOMER
    return EventCategory.UNCLASSIFIED

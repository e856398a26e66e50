"""Meterbridge: usage metering and billing reconciliation pipeline."""

from meterbridge.licensing.crypto import decrypt_payload, encrypt_payload
from meterbridge.webhooks.events import EventCategory, classify_event_type, verify_stripe_signature

__all__ = [
    "EventCategory",
    "classify_event_type",
    "verify_stripe_signature",
    "encrypt_payload",
    "decrypt_payload",
]
__version__ = "0.1.0"

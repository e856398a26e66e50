"""Meterbridge exception hierarchy."""

from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class MeterbridgeError(Exception):
    """Base exception for all Meterbridge errors."""

    status_code: int = 500

    def __init__(self, message: str = "", code: str = "METERBRIDGE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class WebhookSignatureError(MeterbridgeError):
    """Raised when an inbound webhook fails signature verification."""

    status_code = 400

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message, code="INVALID_SIGNATURE")


class WebhookConfigurationError(WebhookSignatureError):
    """Raised when no webhook secret is configured; verification cannot run."""

    def __init__(self, message: str = "Webhook secret not configured"):
        MeterbridgeError.__init__(self, message, code="WEBHOOK_NOT_CONFIGURED")


class DuplicateWebhookEventError(MeterbridgeError):
    """Raised by the ledger when an external event id was already ingested."""

    status_code = 200

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Webhook event {external_id} already ingested", code="DUPLICATE")


class SubscriptionNotFoundError(MeterbridgeError):
    status_code = 404

    def __init__(self, message: str = "Subscription not found"):
        super().__init__(message, code="NOT_FOUND")


class SubscriptionAccessError(MeterbridgeError):
    """Raised when a subscription does not belong to the requesting company."""

    status_code = 403

    def __init__(self, message: str = "Subscription does not belong to this company"):
        super().__init__(message, code="FORBIDDEN")


class BillingCustomerNotFoundError(MeterbridgeError):
    status_code = 404

    def __init__(self, message: str = "Billing customer not found"):
        super().__init__(message, code="NOT_FOUND")


class CompanyNotFoundError(MeterbridgeError):
    status_code = 404

    def __init__(self, message: str = "Company not found"):
        super().__init__(message, code="NOT_FOUND")


class LicenseValidationError(MeterbridgeError):
    """The single user-facing error for every license activation failure."""

    status_code = 412

    def __init__(self, message: str = "License validation failed"):
        super().__init__(message, code="PRECONDITION_FAILED")


class PaymentProviderError(MeterbridgeError):
    """Domain view of a payment provider failure."""

    def __init__(
        self,
        message: str = "An unexpected payment error occurred",
        status_code: int = 500,
        provider_code: str | None = None,
        decline_code: str | None = None,
    ):
        super().__init__(message, code="PAYMENT_PROVIDER_ERROR")
        self.status_code = status_code
        self.provider_code = provider_code
        self.decline_code = decline_code


def map_provider_error(exc: Exception) -> Exception:
    """Translate a stripe SDK exception into a PaymentProviderError.

    Anything that is not a stripe error is returned untouched.
    """
    import stripe

    if not isinstance(exc, stripe.StripeError):
        return exc

    code = getattr(exc, "code", None)
    if isinstance(exc, stripe.CardError):
        return PaymentProviderError(
            exc.user_message or str(exc), 402, code, getattr(exc, "decline_code", None),
        )
    if isinstance(exc, stripe.RateLimitError):
        return PaymentProviderError(
            "Too many requests to payment service. Please try again later.", 429, code,
        )
    if isinstance(exc, stripe.InvalidRequestError):
        return PaymentProviderError(exc.user_message or str(exc), 400, code)
    if isinstance(exc, stripe.APIConnectionError):
        return PaymentProviderError("Unable to connect to payment service", 503, code)
    if isinstance(exc, stripe.AuthenticationError):
        return PaymentProviderError("Payment service configuration error", 500, code)
    if isinstance(exc, stripe.IdempotencyError):
        return PaymentProviderError("Duplicate request detected", 409, code)
    if isinstance(exc, stripe.APIError):
        return PaymentProviderError("Payment service temporarily unavailable", 503, code)
    return PaymentProviderError(status_code=500, provider_code=code)


async def call_provider(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Await a provider call, re-raising provider errors in the domain taxonomy."""
    try:
        return await fn(*args, **kwargs)
    except Exception as exc:
        mapped = map_provider_error(exc)
        if mapped is exc:
            raise
        raise mapped from exc

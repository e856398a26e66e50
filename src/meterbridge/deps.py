"""Dependency wiring for Meterbridge.

Each component receives its collaborators through its constructor; this
module builds the graph once from settings and caches it.
"""

from meterbridge.billing.gateway import StripeGateway
from meterbridge.billing.repository import BillingRepository
from meterbridge.billing.sync import InvoiceSync, SubscriptionSync
from meterbridge.common.config import get_settings
from meterbridge.common.database import DatabaseManager
from meterbridge.licensing.client import LicenseServiceClient
from meterbridge.licensing.service import LicenseActivationService
from meterbridge.notifications.email import EmailSender
from meterbridge.notifications.queue import Backoff, DatabaseJobQueue, JobOptions
from meterbridge.notifications.service import NotificationService
from meterbridge.notifications.worker import NotificationWorker
from meterbridge.usage.service import UsageService
from meterbridge.usage.store import UsageRecordStore
from meterbridge.webhooks.dispatcher import WebhookDispatcher
from meterbridge.webhooks.handlers import BillingEventHandlers
from meterbridge.webhooks.ledger import WebhookEventLedger

_db: DatabaseManager | None = None
_billing: BillingRepository | None = None
_gateway: StripeGateway | None = None
_ledger: WebhookEventLedger | None = None
_queue: DatabaseJobQueue | None = None
_notifications: NotificationService | None = None
_dispatcher: WebhookDispatcher | None = None
_usage: UsageService | None = None
_license: LicenseActivationService | None = None
_worker: NotificationWorker | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_billing_repository() -> BillingRepository:
    global _billing
    if _billing is None:
        _billing = BillingRepository()
    return _billing


def get_stripe_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway(get_settings().stripe_secret_key)
    return _gateway


def get_webhook_ledger() -> WebhookEventLedger:
    global _ledger
    if _ledger is None:
        _ledger = WebhookEventLedger(max_retries=get_settings().webhook_max_retries)
    return _ledger


def get_notification_queue() -> DatabaseJobQueue:
    global _queue
    if _queue is None:
        _queue = DatabaseJobQueue(get_db())
    return _queue


def get_notification_service() -> NotificationService:
    global _notifications
    if _notifications is None:
        settings = get_settings()
        _notifications = NotificationService(
            get_db(),
            get_billing_repository(),
            get_notification_queue(),
            JobOptions(
                attempts=settings.notification_attempts,
                backoff=Backoff("exponential", settings.notification_backoff_ms),
            ),
        )
    return _notifications


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        billing = get_billing_repository()
        gateway = get_stripe_gateway()
        handlers = BillingEventHandlers(
            billing,
            SubscriptionSync(billing, gateway),
            get_notification_service(),
            InvoiceSync(billing, gateway),
        )
        _dispatcher = WebhookDispatcher(
            get_db(), get_webhook_ledger(), handlers, get_settings(),
        )
    return _dispatcher


def get_usage_service() -> UsageService:
    global _usage
    if _usage is None:
        settings = get_settings()
        gateway = get_stripe_gateway() if settings.stripe_secret_key else None
        _usage = UsageService(get_db(), UsageRecordStore(), get_billing_repository(), gateway)
    return _usage


def get_license_activation_service() -> LicenseActivationService:
    global _license
    if _license is None:
        settings = get_settings()
        client = None
        if settings.license_service_base_url:
            client = LicenseServiceClient(
                settings.license_service_base_url, timeout=settings.license_timeout,
            )
        _license = LicenseActivationService(
            get_db(), get_billing_repository(), client, settings.license_private_key,
        )
    return _license


def get_notification_worker() -> NotificationWorker:
    global _worker
    if _worker is None:
        settings = get_settings()
        sender = EmailSender(
            provider=settings.email_provider,
            api_key=settings.email_api_key,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
        )
        _worker = NotificationWorker(get_notification_queue(), sender)
    return _worker


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _billing, _gateway, _ledger, _queue, _notifications
    global _dispatcher, _usage, _license, _worker
    _db = None
    _billing = None
    _gateway = None
    _ledger = None
    _queue = None
    _notifications = None
    _dispatcher = None
    _usage = None
    _license = None
    _worker = None

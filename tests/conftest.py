"""Shared test fixtures for Meterbridge."""

import os

import pytest
from httpx import ASGITransport, AsyncClient

from meterbridge.billing.repository import BillingRepository
from meterbridge.common.config import MeterbridgeSettings
from meterbridge.common.database import DatabaseManager


API_KEY = "test-admin-api-key"
WEBHOOK_SECRET = "whsec_test_secret"
LICENSE_PRIVATE_KEY = "test-license-private-key"


def make_settings(**overrides) -> MeterbridgeSettings:
    defaults = {
        "db_url": "sqlite+aiosqlite://",
        "api_key": API_KEY,
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "license_private_key": LICENSE_PRIVATE_KEY,
    }
    defaults.update(overrides)
    return MeterbridgeSettings(**defaults)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def billing():
    return BillingRepository()


@pytest.fixture
async def tenant(db, billing):
    """A company with one billing customer and one active subscription."""
    async with db.get_session() as session:
        company = await billing.create_company(session, "Acme")
        customer = await billing.create_customer(
            session, company.id, "cus_acme", "billing@acme.test", name="Acme Billing",
        )
        subscription = await billing.create_subscription(
            session, customer.id, "sub_acme", status="active",
        )
    return {"company": company, "customer": customer, "subscription": subscription}


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def app():
    """Create a test app with in-memory DB."""
    os.environ["METERBRIDGE_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["METERBRIDGE_API_KEY"] = API_KEY
    os.environ["METERBRIDGE_STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    os.environ["METERBRIDGE_STRIPE_SECRET_KEY"] = "sk_test_meterbridge"
    os.environ["METERBRIDGE_LICENSE_SERVICE_BASE_URL"] = "https://licenses.test"
    os.environ["METERBRIDGE_LICENSE_PRIVATE_KEY"] = LICENSE_PRIVATE_KEY

    # Clear caches and singletons so new env vars take effect
    from meterbridge.common.config import get_settings
    get_settings.cache_clear()

    from meterbridge.deps import reset_singletons
    reset_singletons()

    from meterbridge.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from meterbridge.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Meterbridge-Api-Key": API_KEY}


@pytest.fixture
async def app_tenant(client):
    """Seed a company/customer/subscription into the app's database."""
    from meterbridge.deps import get_billing_repository, get_db

    billing = get_billing_repository()
    async with get_db().get_session() as session:
        company = await billing.create_company(session, "Acme")
        customer = await billing.create_customer(
            session, company.id, "cus_acme", "billing@acme.test", name="Acme Billing",
        )
        subscription = await billing.create_subscription(session, customer.id, "sub_acme")
    return {"company": company, "customer": customer, "subscription": subscription}

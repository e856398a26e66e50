"""Queries over companies, billing customers, subscriptions and invoices."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.billing.models import (
    BillingCustomerModel,
    CompanyModel,
    InvoiceModel,
    SubscriptionModel,
)

_CANCELLABLE_STATUSES = ("active", "trialing", "past_due", "unpaid", "incomplete")
_INVOICE_FIELDS = (
    "subscription_id", "status", "amount_due", "amount_paid", "currency",
    "attempt_count", "attempted", "paid_at", "stripe_invoice_number",
    "stripe_hosted_invoice_url", "stripe_pdf_url",
)


class BillingRepository:
    """Narrow read/write surface over the billing tables."""

    # ── Companies ──

    async def create_company(self, session: AsyncSession, name: str) -> CompanyModel:
        company = CompanyModel(name=name)
        session.add(company)
        await session.flush()
        return company

    async def get_company(self, session: AsyncSession, company_id: str) -> Optional[CompanyModel]:
        return await session.get(CompanyModel, company_id)

    async def update_company_license(
        self,
        session: AsyncSession,
        company_id: str,
        license: str,
        license_expiration_date: datetime,
        license_last_validation: datetime,
    ) -> Optional[CompanyModel]:
        company = await self.get_company(session, company_id)
        if company is None:
            return None
        company.license = license
        company.license_expiration_date = license_expiration_date
        company.license_last_validation = license_last_validation
        await session.flush()
        return company

    async def mark_subscription_status(
        self, session: AsyncSession, company_id: str, is_active: bool,
    ) -> Optional[CompanyModel]:
        company = await self.get_company(session, company_id)
        if company is None:
            return None
        company.is_active_subscription = is_active
        await session.flush()
        return company

    # ── Customers ──

    async def create_customer(
        self,
        session: AsyncSession,
        company_id: str,
        stripe_customer_id: str,
        email: str,
        name: str = "",
        currency: str = "usd",
    ) -> BillingCustomerModel:
        customer = BillingCustomerModel(
            company_id=company_id,
            stripe_customer_id=stripe_customer_id,
            email=email,
            name=name,
            currency=currency,
        )
        session.add(customer)
        await session.flush()
        return customer

    async def find_customer_by_stripe_id(
        self, session: AsyncSession, stripe_customer_id: str,
    ) -> Optional[BillingCustomerModel]:
        result = await session.execute(
            select(BillingCustomerModel).where(
                BillingCustomerModel.stripe_customer_id == stripe_customer_id
            )
        )
        return result.scalar_one_or_none()

    async def find_customer_by_company_id(
        self, session: AsyncSession, company_id: str,
    ) -> Optional[BillingCustomerModel]:
        result = await session.execute(
            select(BillingCustomerModel).where(BillingCustomerModel.company_id == company_id)
        )
        return result.scalars().first()

    async def update_customer_by_stripe_id(
        self,
        session: AsyncSession,
        stripe_customer_id: str,
        **updates: Any,
    ) -> Optional[BillingCustomerModel]:
        customer = await self.find_customer_by_stripe_id(session, stripe_customer_id)
        if customer is None:
            return None
        for field in ("email", "name", "currency"):
            if updates.get(field) is not None:
                setattr(customer, field, updates[field])
        await session.flush()
        return customer

    # ── Subscriptions ──

    async def create_subscription(
        self,
        session: AsyncSession,
        billing_customer_id: str,
        stripe_subscription_id: str,
        status: str = "active",
    ) -> SubscriptionModel:
        subscription = SubscriptionModel(
            billing_customer_id=billing_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
        )
        session.add(subscription)
        await session.flush()
        return subscription

    async def get_subscription(
        self, session: AsyncSession, subscription_id: str,
    ) -> Optional[SubscriptionModel]:
        return await session.get(SubscriptionModel, subscription_id)

    async def find_subscription_by_stripe_id(
        self, session: AsyncSession, stripe_subscription_id: str,
    ) -> Optional[SubscriptionModel]:
        result = await session.execute(
            select(SubscriptionModel).where(
                SubscriptionModel.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def update_subscription_by_stripe_id(
        self,
        session: AsyncSession,
        stripe_subscription_id: str,
        **updates: Any,
    ) -> Optional[SubscriptionModel]:
        subscription = await self.find_subscription_by_stripe_id(session, stripe_subscription_id)
        if subscription is None:
            return None
        # canceled_at is nullable on purpose: a reactivated subscription clears it
        if "canceled_at" in updates:
            subscription.canceled_at = updates["canceled_at"]
        for field in ("status", "current_period_start", "current_period_end",
                      "cancel_at_period_end", "trial_start", "trial_end"):
            if updates.get(field) is not None:
                setattr(subscription, field, updates[field])
        await session.flush()
        return subscription

    async def cancel_all_by_stripe_customer_id(
        self,
        session: AsyncSession,
        stripe_customer_id: str,
        canceled_at: datetime,
    ) -> int:
        """Cancel every live subscription of a customer. Returns the number cancelled."""
        customer = await self.find_customer_by_stripe_id(session, stripe_customer_id)
        if customer is None:
            return 0
        result = await session.execute(
            update(SubscriptionModel)
            .where(
                SubscriptionModel.billing_customer_id == customer.id,
                SubscriptionModel.status.in_(_CANCELLABLE_STATUSES),
            )
            .values(status="canceled", canceled_at=canceled_at, updated_at=canceled_at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    # ── Invoices ──

    async def create_invoice(
        self,
        session: AsyncSession,
        billing_customer_id: str,
        stripe_invoice_id: str,
        **fields: Any,
    ) -> InvoiceModel:
        invoice = InvoiceModel(
            billing_customer_id=billing_customer_id,
            stripe_invoice_id=stripe_invoice_id,
            **fields,
        )
        session.add(invoice)
        await session.flush()
        return invoice

    async def find_invoice_by_stripe_id(
        self, session: AsyncSession, stripe_invoice_id: str,
    ) -> Optional[InvoiceModel]:
        result = await session.execute(
            select(InvoiceModel).where(InvoiceModel.stripe_invoice_id == stripe_invoice_id)
        )
        return result.scalar_one_or_none()

    async def update_invoice_by_stripe_id(
        self,
        session: AsyncSession,
        stripe_invoice_id: str,
        **updates: Any,
    ) -> Optional[InvoiceModel]:
        invoice = await self.find_invoice_by_stripe_id(session, stripe_invoice_id)
        if invoice is None:
            return None
        for field in _INVOICE_FIELDS:
            if updates.get(field) is not None:
                setattr(invoice, field, updates[field])
        await session.flush()
        return invoice

    async def upsert_invoice(
        self,
        session: AsyncSession,
        billing_customer_id: str,
        stripe_invoice_id: str,
        **fields: Any,
    ) -> InvoiceModel:
        """Create the invoice row or refresh it. ``None`` values leave a column as is."""
        updated = await self.update_invoice_by_stripe_id(session, stripe_invoice_id, **fields)
        if updated is not None:
            return updated
        values = {k: v for k, v in fields.items() if k in _INVOICE_FIELDS and v is not None}
        return await self.create_invoice(session, billing_customer_id, stripe_invoice_id, **values)

"""SQLAlchemy models for metered usage."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from meterbridge.common.models import Base, TimestampMixin, generate_uuid


class UsageRecordModel(Base, TimestampMixin):
    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    meter_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    meter_event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Stored as reported; a missing quantity stays NULL and aggregates as zero.
    quantity: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    stripe_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

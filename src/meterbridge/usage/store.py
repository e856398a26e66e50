"""Usage record persistence and aggregation."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbridge.billing.models import SubscriptionModel
from meterbridge.common.exceptions import SubscriptionNotFoundError
from meterbridge.common.models import to_utc
from meterbridge.usage.models import UsageRecordModel


def as_number(value: Any) -> float | int:
    """Coerce an aggregate read back from the store into a number.

    Drivers hand back sums as int, float, Decimal or even str depending on the
    backend and column type. None counts as zero. Integral values stay int.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a numeric aggregate: {value!r}") from None
    if not number.is_finite():
        raise ValueError(f"Not a finite aggregate: {value!r}")
    return int(number) if number == number.to_integral_value() else float(number)


@dataclass
class UsageSummary:
    total: float | int = 0
    count: int = 0
    by_meter: dict[str, float | int] = field(default_factory=dict)


class UsageRecordStore:
    """Append-only usage facts; summaries are computed fresh on every call."""

    async def create(
        self,
        session: AsyncSession,
        subscription_id: str,
        meter_id: str,
        meter_event_name: str,
        quantity: Optional[float],
        timestamp: datetime,
        stripe_event_id: Optional[str] = None,
    ) -> UsageRecordModel:
        if await session.get(SubscriptionModel, subscription_id) is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        record = UsageRecordModel(
            subscription_id=subscription_id,
            meter_id=meter_id,
            meter_event_name=meter_event_name,
            quantity=quantity,
            timestamp=to_utc(timestamp),
            stripe_event_id=stripe_event_id,
        )
        session.add(record)
        await session.flush()
        return record

    async def find_by_subscription_id(
        self,
        session: AsyncSession,
        subscription_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[UsageRecordModel]:
        query = select(UsageRecordModel).where(UsageRecordModel.subscription_id == subscription_id)
        if start_time is not None:
            query = query.where(UsageRecordModel.timestamp >= to_utc(start_time))
        if end_time is not None:
            query = query.where(UsageRecordModel.timestamp <= to_utc(end_time))
        query = query.order_by(UsageRecordModel.timestamp.desc()).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_usage_summary(
        self,
        session: AsyncSession,
        subscription_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> UsageSummary:
        result = await session.execute(
            select(
                UsageRecordModel.meter_id,
                func.sum(func.coalesce(UsageRecordModel.quantity, 0)).label("total"),
                func.count(UsageRecordModel.id).label("count"),
            )
            .where(
                UsageRecordModel.subscription_id == subscription_id,
                UsageRecordModel.timestamp >= to_utc(start_time),
                UsageRecordModel.timestamp <= to_utc(end_time),
            )
            .group_by(UsageRecordModel.meter_id)
        )

        summary = UsageSummary()
        for meter_id, total, count in result.all():
            meter_total = as_number(total)
            summary.by_meter[meter_id] = meter_total
            summary.total += meter_total
            summary.count += int(as_number(count))
        return summary

"""JSON:API shaped schemas for usage endpoints."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from meterbridge.common.models import isoformat
from meterbridge.usage.models import UsageRecordModel

USAGE_RECORDS = "usage-records"


class ResourceIdentifier(BaseModel):
    type: str = "subscriptions"
    id: str = Field(..., min_length=1)


class SubscriptionRelationship(BaseModel):
    data: ResourceIdentifier


class UsageRecordRelationships(BaseModel):
    subscription: SubscriptionRelationship


class UsageRecordAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meter_id: str = Field(..., alias="meterId", min_length=1, max_length=255)
    meter_event_name: str = Field(..., alias="meterEventName", min_length=1, max_length=255)
    quantity: float = Field(..., ge=0)
    timestamp: Optional[datetime] = None


class UsageRecordCreateData(BaseModel):
    type: Literal["usage-records"] = USAGE_RECORDS
    attributes: UsageRecordAttributes
    relationships: UsageRecordRelationships


class UsageRecordCreate(BaseModel):
    data: UsageRecordCreateData


def usage_record_resource(record: UsageRecordModel) -> dict[str, Any]:
    return {
        "type": USAGE_RECORDS,
        "id": record.id,
        "attributes": {
            "meterId": record.meter_id,
            "meterEventName": record.meter_event_name,
            "quantity": record.quantity,
            "timestamp": isoformat(record.timestamp),
            "stripeEventId": record.stripe_event_id,
            "createdAt": isoformat(record.created_at),
            "updatedAt": isoformat(record.updated_at),
        },
        "relationships": {
            "subscription": {"data": {"type": "subscriptions", "id": record.subscription_id}},
        },
    }

"""Pydantic schemas for webhook API endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookReceipt(BaseModel):
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
    status: Optional[str] = None


class WebhookEventResponse(BaseModel):
    id: str
    stripe_event_id: str
    event_type: str
    livemode: bool
    api_version: Optional[str] = None
    status: str
    payload: dict[str, Any] = {}
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int
    parked: bool = False
    created_at: datetime
    updated_at: datetime


class RetrySweepRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000)


class RetrySweepResponse(BaseModel):
    attempted: int
    completed: int
    failed: int

"""Usage API router."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from meterbridge.common.schemas import jsonapi_error
from meterbridge.common.security import require_company_id
from meterbridge.usage.schemas import UsageRecordCreate, usage_record_resource

router = APIRouter(prefix="/usage-records")


def _get_service():
    from meterbridge.deps import get_usage_service
    return get_usage_service()


class _BadRequest(Exception):
    def __init__(self, detail: str):
        self.detail = detail


def _bad_request(detail: str) -> JSONResponse:
    return JSONResponse(status_code=400, content=jsonapi_error(400, "Bad Request", detail))


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise _BadRequest(f"{name} query parameter is required")
    return value


def _parse_time(value: Optional[str], name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        # Accept the trailing "Z" emitted by most clients.
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise _BadRequest(f"{name} must be an ISO-8601 timestamp") from None


@router.post("", status_code=201)
async def create_usage_record(
    body: UsageRecordCreate,
    company_id: str = Depends(require_company_id),
):
    attrs = body.data.attributes
    record = await _get_service().report_usage(
        company_id,
        subscription_id=body.data.relationships.subscription.data.id,
        meter_id=attrs.meter_id,
        meter_event_name=attrs.meter_event_name,
        quantity=attrs.quantity,
        timestamp=attrs.timestamp,
    )
    return {"data": usage_record_resource(record)}


@router.get("")
async def list_usage_records(
    subscription_id: Optional[str] = Query(None, alias="filter[subscriptionId]"),
    start_time: Optional[str] = Query(None, alias="startTime"),
    end_time: Optional[str] = Query(None, alias="endTime"),
    limit: int = Query(100, ge=1, le=1000),
    company_id: str = Depends(require_company_id),
):
    try:
        subscription_id = _require(subscription_id, "filter[subscriptionId]")
        start = _parse_time(start_time, "startTime")
        end = _parse_time(end_time, "endTime")
    except _BadRequest as exc:
        return _bad_request(exc.detail)

    records = await _get_service().list_usage_records(
        company_id, subscription_id, start_time=start, end_time=end, limit=limit,
    )
    return {"data": [usage_record_resource(r) for r in records]}


@router.get("/summary")
async def get_usage_summary(
    subscription_id: Optional[str] = Query(None, alias="filter[subscriptionId]"),
    start_time: Optional[str] = Query(None, alias="startTime"),
    end_time: Optional[str] = Query(None, alias="endTime"),
    company_id: str = Depends(require_company_id),
):
    try:
        subscription_id = _require(subscription_id, "filter[subscriptionId]")
        start = _parse_time(_require(start_time, "startTime"), "startTime")
        end = _parse_time(_require(end_time, "endTime"), "endTime")
    except _BadRequest as exc:
        return _bad_request(exc.detail)

    summary = await _get_service().get_usage_summary(company_id, subscription_id, start, end)
    return {
        "data": {
            "type": "usage-summaries",
            "id": subscription_id,
            "attributes": summary,
        }
    }


@router.get("/meters")
async def list_meters(company_id: str = Depends(require_company_id)):
    meters = await _get_service().list_meters()
    return {
        "data": [
            {
                "type": "meters",
                "id": m.get("id"),
                "attributes": {
                    "displayName": m.get("display_name"),
                    "eventName": m.get("event_name"),
                    "status": m.get("status"),
                },
            }
            for m in meters
        ]
    }


@router.get("/meters/{meter_id}/summaries")
async def get_meter_summaries(
    meter_id: str,
    start_time: Optional[str] = Query(None, alias="startTime"),
    end_time: Optional[str] = Query(None, alias="endTime"),
    company_id: str = Depends(require_company_id),
):
    try:
        start = _parse_time(_require(start_time, "startTime"), "startTime")
        end = _parse_time(_require(end_time, "endTime"), "endTime")
    except _BadRequest as exc:
        return _bad_request(exc.detail)

    summaries = await _get_service().get_meter_event_summaries(company_id, meter_id, start, end)
    return {
        "data": [
            {
                "type": "meter-event-summaries",
                "id": s.get("id"),
                "attributes": {
                    "meterId": meter_id,
                    "aggregatedValue": s.get("aggregated_value"),
                    "startTime": s.get("start_time"),
                    "endTime": s.get("end_time"),
                },
            }
            for s in summaries
        ]
    }

"""Shared Pydantic schemas for Meterbridge."""

from typing import Any

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "meterbridge"


class JsonApiError(BaseModel):
    status: str
    title: str
    detail: str = ""
    code: str = ""


class JsonApiErrorDocument(BaseModel):
    errors: list[JsonApiError]


def jsonapi_error(status: int, title: str, detail: str = "", code: str = "") -> dict[str, Any]:
    """Build a JSON:API ``errors`` document body."""
    return JsonApiErrorDocument(
        errors=[JsonApiError(status=str(status), title=title, detail=detail, code=code)]
    ).model_dump()

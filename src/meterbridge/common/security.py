"""Header-based request dependencies."""

from fastapi import Header, HTTPException


async def require_api_key(
    x_meterbridge_api_key: str = Header(..., alias="X-Meterbridge-Api-Key"),
) -> str:
    """FastAPI dependency that validates admin API key from header."""
    from meterbridge.common.config import get_settings

    settings = get_settings()
    if x_meterbridge_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_meterbridge_api_key


async def require_company_id(
    x_company_id: str = Header(..., alias="X-Company-Id", min_length=1),
) -> str:
    """Resolve the calling company; handlers pass it on as an explicit argument."""
    return x_company_id

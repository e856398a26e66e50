"""License activation API router."""

from fastapi import APIRouter, Depends

from meterbridge.common.security import require_api_key
from meterbridge.licensing.schemas import LicenseActivationRequest, LicenseActivationResponse

router = APIRouter()


def _get_service():
    from meterbridge.deps import get_license_activation_service
    return get_license_activation_service()


@router.post(
    "/companies/{company_id}/license/activate",
    response_model=LicenseActivationResponse,
)
async def activate_license(
    company_id: str,
    body: LicenseActivationRequest,
    _=Depends(require_api_key),
):
    grant = await _get_service().activate(
        company_id,
        installation_identifier=body.installation_identifier,
        license_key=body.license,
        version=body.version,
        feature_ids=body.feature_ids,
        user_count=body.user_count,
        is_first_activation=body.is_first_activation,
    )
    return LicenseActivationResponse(
        license=grant.license,
        feature_ids=grant.feature_ids,
        expiration_date=grant.expiration_date,
    )

"""On-premise license activation against the external license authority."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from meterbridge.billing.repository import BillingRepository
from meterbridge.common.database import DatabaseManager
from meterbridge.common.exceptions import CompanyNotFoundError, LicenseValidationError
from meterbridge.licensing.client import LicenseServiceClient
from meterbridge.licensing.crypto import decrypt_payload, encrypt_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LicenseGrant:
    license: str
    feature_ids: list[str]
    expiration_date: datetime


def _parse_grant(data: dict) -> LicenseGrant:
    license_value = data.get("license")
    expiration = data.get("expirationDate")
    if not isinstance(license_value, str) or not license_value or not expiration:
        raise ValueError("License response is missing license or expirationDate")
    expiration_date = datetime.fromisoformat(str(expiration).replace("Z", "+00:00"))
    if expiration_date.tzinfo is None:
        expiration_date = expiration_date.replace(tzinfo=timezone.utc)
    feature_ids = data.get("featureIds") or []
    if not isinstance(feature_ids, list):
        raise ValueError("featureIds must be a list")
    return LicenseGrant(license_value, [str(f) for f in feature_ids], expiration_date)


class LicenseActivationService:
    def __init__(
        self,
        db: DatabaseManager,
        billing: BillingRepository,
        client: Optional[LicenseServiceClient],
        private_key: str,
    ):
        self.db = db
        self.billing = billing
        self.client = client
        self.private_key = private_key

    async def activate(
        self,
        company_id: str,
        installation_identifier: str,
        license_key: str,
        version: str,
        feature_ids: list[str],
        user_count: int,
        is_first_activation: bool = False,
    ) -> LicenseGrant:
        """Validate a license remotely and store the grant on the company.

        Every protocol failure surfaces as LicenseValidationError; the cause is
        only logged.
        """
        async with self.db.get_session() as session:
            if await self.billing.get_company(session, company_id) is None:
                raise CompanyNotFoundError(f"Company {company_id} not found")

        try:
            if self.client is None or not self.private_key:
                raise RuntimeError("License service is not configured")
            request_payload = encrypt_payload(
                {
                    "isFirstActivation": is_first_activation,
                    "license": license_key,
                    "installationIdentifier": installation_identifier,
                    "version": version,
                    "featureIds": feature_ids,
                    "userCount": user_count,
                },
                self.private_key,
            )
            reply = await self.client.validate(installation_identifier, request_payload)
            grant = _parse_grant(decrypt_payload(reply, self.private_key))
        except Exception as exc:
            logger.error(
                "License validation failed for company %s installation %s: %s",
                company_id, installation_identifier, exc,
                exc_info=True,
                extra={"company_id": company_id},
            )
            raise LicenseValidationError() from exc

        async with self.db.get_session() as session:
            await self.billing.update_company_license(
                session,
                company_id,
                license=grant.license,
                license_expiration_date=grant.expiration_date,
                license_last_validation=datetime.now(timezone.utc),
            )
        logger.info(
            "Activated license for company %s (expires %s)",
            company_id, grant.expiration_date.isoformat(),
        )
        return grant

"""HTTP client for the external license validation service."""

import json
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class LicenseServiceClient:
    """Calls ``/licenses/{installation_id}/validate`` on the license authority."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client

    async def validate(self, installation_id: str, encrypted_payload: str) -> str:
        """Submit an encrypted payload and return the encrypted reply.

        Raises httpx errors on transport failure, timeout or a non-2xx status.
        """
        url = f"{self.base_url}/licenses/{installation_id}/validate"
        body = {
            "data": {
                "id": installation_id,
                "type": "licenses",
                "attributes": {"payload": encrypted_payload},
            }
        }
        if self._client is not None:
            resp = await self._client.post(url, json=body, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=body)
        resp.raise_for_status()

        text = resp.text.strip()
        # Some deployments return the envelope as a JSON string literal.
        if text.startswith('"'):
            text = json.loads(text)
        return text

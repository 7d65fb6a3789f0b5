import asyncio
from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel

from ..config import settings

logger = structlog.get_logger(__name__)


class ProvisioningRequest(BaseModel):
    email: str
    product_id: str
    product_name: Optional[str] = None
    expiration_datetime: str


class ProvisioningClient:
    """Invite-link issuer for activated products."""

    def __init__(
        self,
        base_url: Optional[str] = settings.provisioning_api_base,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def _subscribe(self, client: httpx.AsyncClient, request: ProvisioningRequest) -> Optional[str]:
        resp = await client.post(f"{self.base_url}/subscribe", json=request.model_dump())
        resp.raise_for_status()
        try:
            body = resp.json()
        except ValueError:
            logger.warning("provisioning_unreadable_response", product_id=request.product_id, status=resp.status_code)
            return None
        if not isinstance(body, dict):
            return None
        return body.get("invite_link") or body.get("link")

    async def subscribe_many(self, requests: List[ProvisioningRequest]) -> List[str]:
        if not self.base_url:
            return []
        if self._client is not None:
            links = await asyncio.gather(*(self._subscribe(self._client, r) for r in requests))
        else:
            async with httpx.AsyncClient(timeout=20.0) as client:
                links = await asyncio.gather(*(self._subscribe(client, r) for r in requests))
        return [link for link in links if link]

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from ..config import settings
from ..errors import BackendError, NetworkOrTimeout
from ..schemas import (
    Coupon,
    GatewayDescriptor,
    IdentitySubmission,
    Profile,
    SignatureRequest,
    SignatureStatus,
    SubscriptionRecord,
)

logger = structlog.get_logger(__name__)


def _product_fields(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    # productId arrives either as an id string or a populated {_id, name} object
    if isinstance(raw, dict):
        return raw.get("_id") or raw.get("id"), raw.get("name")
    if raw:
        return str(raw), None
    return None, None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class BackendClient:
    """Bearer-authenticated JSON client for the subscriptions backend."""

    def __init__(
        self,
        base_url: str = settings.backend_api_base,
        timeout: float = settings.backend_timeout_seconds,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[dict] = None,
        unsuccessful_is_error: bool = False,
    ) -> dict:
        headers = {"accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, json=json, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("backend_timeout", method=method, path=path)
            raise NetworkOrTimeout("The request timed out. Please try again.") from exc
        except httpx.TransportError as exc:
            logger.warning("backend_unreachable", method=method, path=path, error=str(exc))
            raise NetworkOrTimeout() from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if resp.status_code >= 400:
            raise BackendError(resp.status_code, body)
        if unsuccessful_is_error and body.get("success") is False:
            raise BackendError(resp.status_code, body)
        return body

    # --- profile ---

    async def get_profile(self, token: str) -> Profile:
        body = await self._request("GET", "/api/user/profile", token)
        data = body.get("user") or body.get("data") or body
        return Profile(
            full_name=data.get("fullName"),
            email=data.get("email"),
            phone=data.get("phone"),
            date_of_birth=data.get("dateofBirth") or data.get("dateOfBirth"),
            tax_id=data.get("pandetails") or data.get("panDetails"),
        )

    async def update_profile(self, token: str, submission: IdentitySubmission) -> None:
        await self._request(
            "PUT",
            "/api/user/profile",
            token,
            json={
                "fullName": submission.full_name,
                "dateofBirth": submission.date_of_birth.isoformat(),
                "phone": submission.phone,
                "pandetails": submission.tax_id,
            },
        )

    # --- orders and mandates ---

    async def create_order(self, token: str, payload: dict) -> dict:
        return await self._request("POST", "/api/subscriptions/order", token, json=payload, unsuccessful_is_error=True)

    async def create_mandate(self, token: str, payload: dict) -> dict:
        return await self._request(
            "POST", "/api/subscriptions/emandate", token, json=payload, unsuccessful_is_error=True
        )

    async def verify_payment(self, token: str, payload: dict) -> dict:
        return await self._request("POST", "/api/subscriptions/verify", token, json=payload)

    async def verify_mandate(self, token: str, subscription_id: str, gateway: Optional[str] = None) -> dict:
        payload: Dict[str, Any] = {"subscription_id": subscription_id}
        if gateway:
            payload["gateway"] = gateway
        return await self._request("POST", "/api/subscriptions/emandate/verify", token, json=payload)

    async def get_subscriptions(self, token: str) -> List[SubscriptionRecord]:
        body = await self._request("GET", "/api/user/subscriptions", token)
        raw = list(body.get("bundleSubscriptions") or []) + list(body.get("individualSubscriptions") or [])
        if not raw:
            raw = list(body.get("subscriptions") or [])
        records = []
        for item in raw:
            product_id, product_name = _product_fields(item.get("productId"))
            if not product_id:
                continue
            records.append(
                SubscriptionRecord(
                    product_id=product_id,
                    product_name=product_name,
                    is_active=bool(item.get("isActive")),
                    expiry_date=_parse_datetime(item.get("expiryDate") or item.get("commitmentEndDate")),
                )
            )
        return records

    # --- gateways and coupons ---

    async def get_gateways(self) -> Tuple[List[GatewayDescriptor], Optional[str]]:
        body = await self._request("GET", "/api/payment/gateways")
        if not body.get("success", True):
            raise BackendError(200, body)
        gateways = [
            GatewayDescriptor(
                id=g["id"],
                name=g.get("name", g["id"]),
                supports_subscriptions=bool(g.get("supportsSubscriptions")),
                supports_one_time=bool(g.get("supportsOneTime", True)),
                supported_methods=list(g.get("supportedMethods") or []),
            )
            for g in body.get("gateways") or []
            if g.get("id")
        ]
        return gateways, body.get("defaultGateway")

    async def validate_coupon(self, code: str) -> Tuple[Optional[Coupon], Optional[str]]:
        """Look up a coupon; returns (coupon, None) or (None, reason)."""
        try:
            body = await self._request("GET", f"/api/coupons/check/{code}")
        except BackendError as exc:
            return None, exc.body.get("error") or exc.body.get("message") or "Invalid coupon code"
        except NetworkOrTimeout:
            logger.warning("coupon_lookup_unavailable", code=code)
            return None, "Invalid coupon code"
        raw = body.get("coupon")
        if not body.get("valid") or not raw:
            return None, body.get("message") or body.get("error") or "Invalid coupon code"
        applicable = raw.get("applicableProducts") or {}
        coupon = Coupon(
            code=raw.get("code") or code,
            discount_type=raw.get("discountType", "percentage"),
            discount_value=Decimal(str(raw.get("discountValue", 0))),
            valid_from=_parse_datetime(raw.get("validFrom")),
            valid_until=_parse_datetime(raw.get("validUntil")),
            min_order_value=Decimal(str(raw.get("minOrderValue") or 0)),
            max_discount_amount=Decimal(str(raw.get("maxDiscountAmount") or 0)),
            apply_to_all=bool(applicable.get("applyToAll", True)),
            portfolios=list(applicable.get("portfolios") or []),
            bundles=list(applicable.get("bundles") or []),
        )
        return coupon, None

    # --- digital signature ---

    async def create_signature(self, token: str, payload: dict) -> SignatureRequest:
        body = await self._request("POST", "/api/digio/create-sign-request", token, json=payload)
        return SignatureRequest(
            document_id=body["documentId"],
            authentication_url=body.get("authenticationUrl"),
        )

    async def get_signature_status(self, token: str, document_id: str) -> SignatureStatus:
        body = await self._request("GET", f"/api/digio/status/{document_id}", token)
        raw = body.get("agreement_status") or body.get("status") or "requested"
        try:
            return SignatureStatus(raw)
        except ValueError:
            # draft and other provider states are still waiting on the signer
            return SignatureStatus.REQUESTED

    async def verify_signature(self, token: str, document_id: str) -> bool:
        body = await self._request("POST", "/api/digio/esign/verify", token, json={"documentId": document_id})
        return bool(body.get("signed") or body.get("isSigned"))

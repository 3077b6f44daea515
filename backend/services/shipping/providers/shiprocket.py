"""
Procurement Hub - Shiprocket Client

Reference carrier integration against the Shiprocket external API.

Auth Flow:
1. POST /v1/external/auth/login with the account email/password
2. Bearer token cached on the instance (valid for 240 hours)
3. On 401 the token is dropped and the login repeated once

Shipment creation is two calls: create an adhoc order, then assign an AWB
(courier) to the resulting shipment.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional

import httpx

from services.shipping.providers.base import (
    LogisticsProvider, ShipmentPayload, CreateShipmentResult,
    TrackingResult, ServiceabilityResult, HealthCheckResult,
)

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

SHIPROCKET_API_BASE = "https://apiv2.shiprocket.in"
SHIPROCKET_REQUEST_TIMEOUT = 30
SHIPROCKET_TOKEN_TTL_HOURS = 240

SHIPROCKET_STATUS_MAP = {
    "NEW": "CREATED",
    "AWB ASSIGNED": "CREATED",
    "PICKUP SCHEDULED": "CREATED",
    "PICKED UP": "IN_TRANSIT",
    "IN TRANSIT": "IN_TRANSIT",
    "OUT FOR DELIVERY": "IN_TRANSIT",
    "DELIVERED": "DELIVERED",
    "CANCELED": "FAILED",
    "RTO INITIATED": "FAILED",
}


class ShiprocketError(Exception):
    def __init__(self, message: str, status_code: int = None, body: Any = None):
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(self.message)


class ShiprocketProvider(LogisticsProvider):

    provider_code = "SHIPROCKET"
    provider_name = "Shiprocket"

    def __init__(self, provider_id: str, credentials: Optional[Dict] = None):
        super().__init__(provider_id, credentials)
        self.api_base = (self.credentials.get("api_base_url") or SHIPROCKET_API_BASE).rstrip("/")
        self._token: Optional[str] = self.credentials.get("token")
        self._token_expires_at: Optional[datetime] = None

    def is_configured(self) -> bool:
        return bool(self.credentials.get("email") and self.credentials.get("password"))

    def _token_valid(self) -> bool:
        if not self._token:
            return False
        if self._token_expires_at is None:
            return True
        return datetime.now(timezone.utc) < self._token_expires_at - timedelta(seconds=60)

    async def _authenticate(self):
        if not self.is_configured():
            raise ShiprocketError("Shiprocket email and password are required")

        async with httpx.AsyncClient(timeout=SHIPROCKET_REQUEST_TIMEOUT) as client:
            resp = await client.post(
                f"{self.api_base}/v1/external/auth/login",
                json={"email": self.credentials["email"], "password": self.credentials["password"]},
            )
        if resp.status_code != 200:
            raise ShiprocketError(
                f"Shiprocket authentication failed ({resp.status_code})", resp.status_code, resp.text[:300]
            )

        self._token = resp.json().get("token")
        self._token_expires_at = datetime.now(timezone.utc) + timedelta(hours=SHIPROCKET_TOKEN_TTL_HOURS)
        logger.info("Shiprocket authenticated for provider %s", self.provider_id)

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_body: Optional[Dict] = None,
    ) -> Dict:
        """Authenticated request; raises ShiprocketError on any non-200 response."""
        if not self._token_valid():
            await self._authenticate()

        for attempt in range(2):
            headers = {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}
            async with httpx.AsyncClient(timeout=SHIPROCKET_REQUEST_TIMEOUT) as client:
                resp = await client.request(
                    method, f"{self.api_base}{endpoint}", headers=headers, params=params, json=json_body
                )

            if resp.status_code == 200:
                return resp.json()
            if resp.status_code == 401 and attempt == 0:
                logger.warning("Shiprocket returned 401, re-authenticating")
                self._token = None
                await self._authenticate()
                continue
            raise ShiprocketError(
                f"Shiprocket API error ({resp.status_code}) on {endpoint}", resp.status_code, resp.text[:500]
            )

        raise ShiprocketError(f"Shiprocket API unauthorized on {endpoint}", 401)

    # =========================================================================
    # CAPABILITIES
    # =========================================================================

    async def health_check(self) -> HealthCheckResult:
        if not self.is_configured():
            return HealthCheckResult(
                healthy=False,
                message="Authentication credentials missing",
                error="Email and password are required for Shiprocket authentication",
            )
        started = datetime.now(timezone.utc)
        try:
            await self._authenticate()
        except (ShiprocketError, httpx.HTTPError) as e:
            return HealthCheckResult(healthy=False, message="Health check failed", error=str(e))
        elapsed = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
        return HealthCheckResult(healthy=True, message="Shiprocket API reachable", response_time_ms=elapsed)

    def _order_body(self, payload: ShipmentPayload) -> Dict[str, Any]:
        to = payload.to_address
        items = payload.items or []
        return {
            "order_id": payload.pr_id,
            "order_date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M"),
            "pickup_location": self.credentials.get("pickup_location", "Primary"),
            "billing_customer_name": to.get("name", ""),
            "billing_last_name": "",
            "billing_address": to.get("address", ""),
            "billing_city": to.get("city", ""),
            "billing_pincode": to.get("pincode", ""),
            "billing_state": to.get("state", ""),
            "billing_country": "India",
            "billing_email": to.get("email", ""),
            "billing_phone": to.get("phone", ""),
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.get("product_name") or item.get("name") or "Item",
                    "sku": item.get("sku") or item.get("product_id") or "SKU",
                    "units": item.get("quantity", 1),
                    "selling_price": item.get("price", 0),
                }
                for item in items
            ],
            "payment_method": "Prepaid",
            "sub_total": payload.shipment_value or 0,
            "length": payload.length_cm or 10,
            "breadth": payload.breadth_cm or 10,
            "height": payload.height_cm or 10,
            "weight": payload.weight or 0.5,
        }

    async def create_shipment(self, payload: ShipmentPayload) -> CreateShipmentResult:
        try:
            created = await self._api_request("POST", "/v1/external/orders/create/adhoc", json_body=self._order_body(payload))
            shipment_id = created.get("shipment_id")
            if not shipment_id:
                return CreateShipmentResult(
                    success=False, error="Shiprocket did not return a shipment_id", raw_response=created
                )

            awb_body = {"shipment_id": shipment_id}
            if payload.courier_code:
                awb_body["courier_id"] = payload.courier_code
            assigned = await self._api_request("POST", "/v1/external/courier/assign/awb", json_body=awb_body)
        except ShiprocketError as e:
            logger.error("Shiprocket create_shipment failed for %s: %s", payload.pr_id, e.message)
            return CreateShipmentResult(success=False, error=e.message, http_status=e.status_code,
                                        raw_response={"body": e.body})
        except httpx.HTTPError as e:
            logger.error("Shiprocket create_shipment transport error for %s: %s", payload.pr_id, str(e))
            return CreateShipmentResult(success=False, error=f"Shiprocket request failed: {e}")

        data = (assigned.get("response") or {}).get("data") or {}
        awb = data.get("awb_code")
        return CreateShipmentResult(
            success=True,
            provider_shipment_reference=str(shipment_id),
            tracking_number=awb,
            tracking_url=f"https://shiprocket.co/tracking/{awb}" if awb else None,
            awb_number=awb,
            courier_code=str(data.get("courier_company_id") or payload.courier_code or "") or None,
            http_status=200,
            raw_response={"create_response": created, "awb_assign_response": assigned},
        )

    async def track_shipment(self, provider_shipment_reference: str) -> TrackingResult:
        try:
            body = await self._api_request(
                "GET", f"/v1/external/courier/track/shipment/{provider_shipment_reference}"
            )
        except (ShiprocketError, httpx.HTTPError) as e:
            return TrackingResult(success=False, error=str(e))

        tracking = body.get("tracking_data") or {}
        tracks = tracking.get("shipment_track") or [{}]
        current = (tracks[0].get("current_status") or "").upper()
        return TrackingResult(
            success=True,
            status=SHIPROCKET_STATUS_MAP.get(current, "IN_TRANSIT"),
            tracking_number=tracks[0].get("awb_code"),
            tracking_url=tracking.get("track_url"),
            current_location=tracks[0].get("destination"),
            raw_response=body,
        )

    async def check_serviceability(self, pincode: str, from_pincode: str = None, weight: float = None) -> ServiceabilityResult:
        params = {
            "pickup_postcode": from_pincode or self.credentials.get("pickup_pincode", ""),
            "delivery_postcode": pincode,
            "weight": weight or 0.5,
            "cod": 0,
        }
        try:
            body = await self._api_request("GET", "/v1/external/courier/serviceability/", params=params)
        except (ShiprocketError, httpx.HTTPError) as e:
            return ServiceabilityResult(serviceable=False, message=str(e))

        companies = (body.get("data") or {}).get("available_courier_companies") or []
        couriers = [
            {
                "courier_code": str(c.get("courier_company_id")),
                "courier_name": c.get("courier_name"),
                "estimated_days": c.get("estimated_delivery_days"),
                "estimated_cost": c.get("rate"),
            }
            for c in companies
        ]
        return ServiceabilityResult(
            serviceable=bool(couriers),
            estimated_days=min((c["estimated_days"] for c in couriers if c["estimated_days"]), default=None),
            available_couriers=couriers,
            raw_response=body,
        )

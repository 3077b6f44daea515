"""
Procurement Hub - Mock Logistics Provider

In-process provider for development and tests. Shipments live on the
instance. Setting ``simulate_error`` in the credentials makes every
creation fail with that message.
"""

import uuid
from typing import Optional, Dict

from services.shipping.providers.base import (
    LogisticsProvider, ShipmentPayload, CreateShipmentResult,
    TrackingResult, ServiceabilityResult, HealthCheckResult,
)


class MockProvider(LogisticsProvider):

    provider_code = "MOCK"
    provider_name = "Mock Logistics Provider"

    def __init__(self, provider_id: str, credentials: Optional[Dict] = None):
        super().__init__(provider_id, credentials)
        self.shipments: Dict[str, Dict] = {}

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(healthy=True, message="Mock provider is always available", response_time_ms=0)

    async def create_shipment(self, payload: ShipmentPayload) -> CreateShipmentResult:
        simulated = self.credentials.get("simulate_error")
        if simulated:
            return CreateShipmentResult(success=False, error=str(simulated), http_status=400)

        suffix = uuid.uuid4().hex[:8].upper()
        reference = f"MOCK-{suffix}"
        awb = f"AWB{suffix}"
        tracking_url = f"https://track.mock.local/{awb}"
        self.shipments[reference] = {"status": "CREATED", "awb": awb, "payload": payload.to_dict()}

        return CreateShipmentResult(
            success=True,
            provider_shipment_reference=reference,
            tracking_number=awb,
            tracking_url=tracking_url,
            awb_number=awb,
            courier_code=payload.courier_code,
            http_status=200,
            raw_response={"shipment_id": reference, "awb": awb, "tracking_url": tracking_url},
        )

    async def track_shipment(self, provider_shipment_reference: str) -> TrackingResult:
        shipment = self.shipments.get(provider_shipment_reference)
        if shipment is None:
            return TrackingResult(success=False, error="Shipment not found")
        return TrackingResult(
            success=True,
            status="IN_TRANSIT",
            tracking_number=shipment["awb"],
            raw_response={"shipment_id": provider_shipment_reference, "status": "IN_TRANSIT"},
        )

    async def check_serviceability(self, pincode: str, from_pincode: str = None, weight: float = None) -> ServiceabilityResult:
        serviceable = bool(pincode) and pincode.isdigit() and len(pincode) == 6
        return ServiceabilityResult(
            serviceable=serviceable,
            estimated_days=4 if serviceable else None,
            available_couriers=[{"courier_code": "MOCK_SURFACE", "courier_name": "Mock Surface", "estimated_days": 4}]
            if serviceable else [],
            message=None if serviceable else f"Pincode {pincode} is not serviceable",
        )

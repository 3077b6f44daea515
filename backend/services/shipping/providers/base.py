"""
Procurement Hub - Logistics Provider Interface

Every carrier/aggregator integration implements the same four capabilities.
Provider calls report failure through their result objects; they do not
raise for carrier-side errors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


@dataclass
class ShipmentPayload:
    pr_id: str
    vendor_id: str
    company_id: str
    from_address: Dict[str, Any] = field(default_factory=dict)
    to_address: Dict[str, Any] = field(default_factory=dict)
    items: List[Dict[str, Any]] = field(default_factory=list)
    courier_code: Optional[str] = None
    shipment_value: Optional[float] = None
    length_cm: Optional[float] = None
    breadth_cm: Optional[float] = None
    height_cm: Optional[float] = None
    weight: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pr_id": self.pr_id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "items": self.items,
            "courier_code": self.courier_code,
            "shipment_value": self.shipment_value,
            "length_cm": self.length_cm,
            "breadth_cm": self.breadth_cm,
            "height_cm": self.height_cm,
            "weight": self.weight,
        }


@dataclass
class CreateShipmentResult:
    success: bool
    provider_shipment_reference: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    awb_number: Optional[str] = None
    courier_code: Optional[str] = None
    error: Optional[str] = None
    http_status: Optional[int] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class TrackingResult:
    success: bool
    status: str = "FAILED"
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    current_location: Optional[str] = None
    error: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class ServiceabilityResult:
    serviceable: bool
    estimated_days: Optional[int] = None
    available_couriers: List[Dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class HealthCheckResult:
    healthy: bool
    message: Optional[str] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


class LogisticsProvider(ABC):
    """Base class for carrier integrations, built per call with resolved credentials."""

    provider_code: str = ""
    provider_name: str = ""

    def __init__(self, provider_id: str, credentials: Optional[Dict[str, Any]] = None):
        self.provider_id = provider_id
        self.credentials = credentials or {}

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...

    @abstractmethod
    async def create_shipment(self, payload: ShipmentPayload) -> CreateShipmentResult:
        ...

    @abstractmethod
    async def track_shipment(self, provider_shipment_reference: str) -> TrackingResult:
        ...

    @abstractmethod
    async def check_serviceability(
        self,
        pincode: str,
        from_pincode: Optional[str] = None,
        weight: Optional[float] = None,
    ) -> ServiceabilityResult:
        ...

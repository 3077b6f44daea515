"""
Procurement Hub - Shipping Models

Dispatch request payloads (camelCase on the wire, as sent by the vendor
portal) and the enums shared by the shipping modules.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field

from services.validation import ValidationError, validate_id


class CompanyShipmentMode(str, Enum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"


class ShipmentMode(str, Enum):
    MANUAL = "MANUAL"
    API = "API"


class ShipmentStatus(str, Enum):
    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class CourierSelection(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


# Modes of transport accepted for carrier-integrated dispatch
API_TRANSPORT_MODES = ("COURIER", "OTHER")

DEFAULT_SHIPPER_NAME = "Vendor"


class ShipmentData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipper_name: Optional[str] = Field(None, alias="shipperName")
    carrier_name: Optional[str] = Field(None, alias="carrierName")
    carrier_display_name: Optional[str] = Field(None, alias="carrierDisplayName")
    mode_of_transport: Optional[str] = Field(None, alias="modeOfTransport")
    tracking_number: Optional[str] = Field(None, alias="trackingNumber")
    dispatched_date: Optional[str] = Field(None, alias="dispatchedDate")
    expected_delivery_date: Optional[str] = Field(None, alias="expectedDeliveryDate")
    shipment_reference_number: Optional[str] = Field(None, alias="shipmentReferenceNumber")
    item_dispatched_quantities: Optional[List[Dict[str, Any]]] = Field(None, alias="itemDispatchedQuantities")

    # Mode and provider overrides
    shipment_mode: Optional[ShipmentMode] = Field(None, alias="shipmentMode")
    provider_id: Optional[str] = Field(None, alias="providerId")
    company_shipping_provider_id: Optional[str] = Field(None, alias="companyShippingProviderId")
    allow_manual_fallback: Optional[bool] = Field(None, alias="allowManualFallback")
    selected_courier_type: Optional[CourierSelection] = Field(None, alias="selectedCourierType")
    warehouse_ref_id: Optional[str] = Field(None, alias="warehouseRefId")

    # Package
    shipment_package_id: Optional[str] = Field(None, alias="shipmentPackageId")
    length_cm: Optional[float] = Field(None, alias="lengthCm")
    breadth_cm: Optional[float] = Field(None, alias="breadthCm")
    height_cm: Optional[float] = Field(None, alias="heightCm")
    volumetric_weight: Optional[float] = Field(None, alias="volumetricWeight")
    shipping_cost: Optional[float] = Field(None, alias="shippingCost")

    def validate_for_dispatch(self) -> "ShipmentData":
        """Check the fields every dispatch needs and apply defaults."""
        if not self.shipper_name or not self.shipper_name.strip():
            self.shipper_name = DEFAULT_SHIPPER_NAME
        if not self.dispatched_date:
            raise ValidationError("dispatchedDate is required", field="dispatchedDate")
        for name, value in (("dispatchedDate", self.dispatched_date),
                            ("expectedDeliveryDate", self.expected_delivery_date)):
            if value:
                try:
                    date_parser.isoparse(value)
                except ValueError:
                    raise ValidationError(f"{name} is not a valid ISO date", field=name)
        if not self.mode_of_transport:
            raise ValidationError("modeOfTransport is required", field="modeOfTransport")
        if self.item_dispatched_quantities is None:
            raise ValidationError("itemDispatchedQuantities array is required", field="itemDispatchedQuantities")
        return self

    def package_fields(self) -> Dict[str, Any]:
        fields = {
            "shipment_package_id": self.shipment_package_id,
            "length_cm": self.length_cm,
            "breadth_cm": self.breadth_cm,
            "height_cm": self.height_cm,
            "volumetric_weight": self.volumetric_weight,
        }
        return {k: v for k, v in fields.items() if v is not None}


class DispatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pr_id: Optional[str] = Field(None, alias="prId")
    vendor_id: Optional[str] = Field(None, alias="vendorId")
    shipment_data: Optional[ShipmentData] = Field(None, alias="shipmentData")

    def validate_ids(self) -> "DispatchRequest":
        if not self.pr_id:
            raise ValidationError("PR ID is required", field="prId")
        if not self.vendor_id:
            raise ValidationError("Vendor ID is required", field="vendorId")
        if self.shipment_data is None:
            raise ValidationError("Shipment data is required", field="shipmentData")
        validate_id(self.pr_id, "prId")
        validate_id(self.vendor_id, "vendorId")
        self.shipment_data.validate_for_dispatch()
        return self


@dataclass
class ResolutionContext:
    """
    Everything the mode resolver decides on, looked up once per dispatch request.

    The two fallback flags are the only place MANUAL substitution is permitted;
    both are False for an AUTOMATIC company.
    """
    pr_id: str
    vendor_id: str
    company_id: str
    order: Dict[str, Any]
    shipment_data: ShipmentData
    company_mode: CompanyShipmentMode = CompanyShipmentMode.MANUAL
    company_name: Optional[str] = None
    requested_mode: Optional[ShipmentMode] = None
    # Gates 3/4: no provider enabled, or no provider resolvable
    fallback_when_unavailable: bool = False
    # Gate 5: provider call failed
    fallback_on_failure: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def is_automatic(self) -> bool:
        return self.company_mode == CompanyShipmentMode.AUTOMATIC

    @property
    def explicit_api(self) -> bool:
        return self.requested_mode == ShipmentMode.API

    @property
    def should_use_api(self) -> bool:
        return self.explicit_api or self.is_automatic

    def describe(self) -> Dict[str, Any]:
        """Structured context for error payloads and logs. Never includes credentials."""
        return {
            "company_id": self.company_id,
            "company_name": self.company_name,
            "pr_id": self.pr_id,
            "vendor_id": self.vendor_id,
            "company_shipment_mode": self.company_mode.value,
            "requested_mode": self.requested_mode.value if self.requested_mode else None,
        }

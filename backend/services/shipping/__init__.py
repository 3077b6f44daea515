"""
Procurement Hub - Shipping

Components:
- models.py: dispatch request payloads and the per-request ResolutionContext
- routing.py: provider catalog, company enablement and vendor routing access
- credentials.py: credential vault for provider calls
- providers/: logistics provider registry (MOCK, SHIPROCKET)
- execution.py: Shipment records, provider API logs and order dispatch updates
- mode_resolver.py: AUTOMATIC/MANUAL decision pipeline
"""

from .models import DispatchRequest, ShipmentData, ResolutionContext, ShipmentMode, CompanyShipmentMode
from .mode_resolver import (
    ShipmentModeResolver, DispatchOutcome, ShipmentResolutionError,
    ProviderNotEnabled, ProviderResolutionFailed, ApiShipmentFailed,
    OrderNotFound, OrderVendorMismatch,
)
from .routing import ShippingConfigStore

__all__ = [
    'DispatchRequest',
    'ShipmentData',
    'ResolutionContext',
    'ShipmentMode',
    'CompanyShipmentMode',
    'ShipmentModeResolver',
    'DispatchOutcome',
    'ShipmentResolutionError',
    'ProviderNotEnabled',
    'ProviderResolutionFailed',
    'ApiShipmentFailed',
    'OrderNotFound',
    'OrderVendorMismatch',
    'ShippingConfigStore',
]

"""
Procurement Hub - Logistics Provider Registry

Provider classes keyed by provider code, registered once at startup.
"""

import logging
from typing import Dict, Type, Any, Optional

from .base import (
    LogisticsProvider, ShipmentPayload, CreateShipmentResult,
    TrackingResult, ServiceabilityResult, HealthCheckResult,
)
from .mock_provider import MockProvider
from .shiprocket import ShiprocketProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:

    def __init__(self):
        self._providers: Dict[str, Type[LogisticsProvider]] = {}

    def register(self, provider_code: str, provider_cls: Type[LogisticsProvider]):
        self._providers[provider_code.upper()] = provider_cls

    def supports(self, provider_code: Optional[str]) -> bool:
        return bool(provider_code) and provider_code.upper() in self._providers

    def create(self, provider: Dict[str, Any], credentials: Dict[str, Any]) -> Optional[LogisticsProvider]:
        """Instantiate the integration for a catalog row, or None if the code is unknown."""
        code = (provider.get("provider_code") or "").upper()
        provider_cls = self._providers.get(code)
        if provider_cls is None:
            logger.error("No logistics integration registered for provider code %s", code or "<empty>")
            return None
        client = provider_cls(provider["provider_id"], credentials)
        # several catalog codes can share one integration class
        client.provider_code = code
        return client

    @property
    def codes(self):
        return sorted(self._providers)


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("MOCK", MockProvider)
    registry.register("SHIPROCKET", ShiprocketProvider)
    registry.register("SHIPROCKET_ICICI", ShiprocketProvider)
    return registry


__all__ = [
    'ProviderRegistry',
    'default_registry',
    'LogisticsProvider',
    'ShipmentPayload',
    'CreateShipmentResult',
    'TrackingResult',
    'ServiceabilityResult',
    'HealthCheckResult',
    'MockProvider',
    'ShiprocketProvider',
]

"""
Procurement Hub - Shipment Mode Resolver

Decides for every dispatch request whether the shipment goes through a
carrier API or is recorded by hand.

Pipeline:
1. Mode determination: API when requested explicitly or the company is AUTOMATIC
2. Pre-check auto-repair: enable the provider named by the vendor routing
3. Enablement gate: at least one enabled provider for the company
4. Provider/courier resolution: explicit ids, else vendor routing
5. Dispatch attempt through the provider capability
6. MANUAL creation (direct path or sanctioned fallback)

An AUTOMATIC company never receives a MANUAL shipment: every gate that
cannot complete an API shipment raises instead. MANUAL fallback happens
only where the ResolutionContext flag for that gate allows it, and every
fallback is logged with its reason.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from pymongo.errors import PyMongoError

from services.shipping.credentials import CredentialVault
from services.shipping.execution import ShipmentExecutor, ApiShipmentOutcome
from services.shipping.models import (
    CompanyShipmentMode, ShipmentMode, ShipmentData, DispatchRequest,
    ResolutionContext, CourierSelection, API_TRANSPORT_MODES,
)
from services.shipping.providers import ProviderRegistry, default_registry
from services.shipping.routing import ShippingConfigStore
from services.validation import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class ShipmentResolutionError(Exception):
    """A dispatch request that must fail loudly rather than degrade."""

    error_type = "shipment_error"
    status_code = 400

    def __init__(self, message: str, details: Dict[str, Any] = None, status_code: int = None):
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": self.error_type, **self.details}


class ProviderNotEnabled(ShipmentResolutionError):
    error_type = "provider_not_enabled"
    status_code = 400


class ProviderResolutionFailed(ShipmentResolutionError):
    error_type = "provider_resolution_failed"
    status_code = 400


class ApiShipmentFailed(ShipmentResolutionError):
    error_type = "api_shipment_failed"
    status_code = 500


class OrderNotFound(ShipmentResolutionError):
    error_type = "not_found"
    status_code = 404


class OrderVendorMismatch(ShipmentResolutionError):
    error_type = "forbidden"
    status_code = 403


@dataclass
class DispatchOutcome:
    mode: ShipmentMode
    shipment_id: str
    order: Dict[str, Any]
    fallback_reason: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return {**self.order, "shipmentMode": self.mode.value, "shipmentId": self.shipment_id}


def _company_mode(company: Optional[Dict]) -> CompanyShipmentMode:
    raw = str((company or {}).get("shipment_request_mode") or "MANUAL").upper()
    try:
        return CompanyShipmentMode(raw)
    except ValueError:
        logger.warning("Unknown shipment_request_mode %r, treating as MANUAL", raw)
        return CompanyShipmentMode.MANUAL


class ShipmentModeResolver:

    def __init__(self, db, registry: ProviderRegistry = None, vault: CredentialVault = None):
        self.db = db
        self.store = ShippingConfigStore(db)
        self.executor = ShipmentExecutor(db, registry or default_registry(), vault or CredentialVault())

    # =========================================================================
    # CONTEXT
    # =========================================================================

    async def build_context(
        self,
        order: Dict[str, Any],
        vendor_id: str,
        company_id: str,
        shipment_data: ShipmentData,
        requested_mode: Optional[ShipmentMode] = None,
    ) -> ResolutionContext:
        company = await self.store.get_company(company_id)
        mode = _company_mode(company)
        automatic = mode == CompanyShipmentMode.AUTOMATIC
        explicit_api = requested_mode == ShipmentMode.API

        if automatic:
            if shipment_data.carrier_name and shipment_data.carrier_name.strip():
                logger.info(
                    "AUTOMATIC company %s: carrier override %r ignored, routing courier is used",
                    company_id, shipment_data.carrier_name
                )
            if shipment_data.mode_of_transport not in API_TRANSPORT_MODES:
                logger.info(
                    "AUTOMATIC company %s: modeOfTransport %s overridden to COURIER",
                    company_id, shipment_data.mode_of_transport
                )
                shipment_data.mode_of_transport = "COURIER"

        return ResolutionContext(
            pr_id=order["id"],
            vendor_id=vendor_id,
            company_id=company_id,
            order=order,
            shipment_data=shipment_data,
            company_mode=mode,
            company_name=(company or {}).get("name"),
            requested_mode=requested_mode,
            fallback_when_unavailable=not automatic and not explicit_api,
            fallback_on_failure=not automatic and shipment_data.allow_manual_fallback is not False,
        )

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """Validate a vendor dispatch request, check ownership, then resolve."""
        request.validate_ids()

        order = await self.db.orders.find_one({"id": request.pr_id, "vendor_id": request.vendor_id}, {"_id": 0})
        if order is None:
            other = await self.db.orders.find_one({"id": request.pr_id}, {"_id": 0, "id": 1, "vendor_id": 1})
            if other is not None:
                logger.warning(
                    "Dispatch for %s by vendor %s rejected: order belongs to vendor %s",
                    request.pr_id, request.vendor_id, other.get("vendor_id")
                )
                raise OrderVendorMismatch(
                    "Order not found for this vendor",
                    {"pr_id": request.pr_id, "vendor_id": request.vendor_id},
                )
            raise OrderNotFound(
                "Order not found",
                {"pr_id": request.pr_id, "vendor_id": request.vendor_id},
            )

        company_id = order.get("company_id")
        if not company_id:
            raise ValidationError("Company ID not found for order", field="company_id",
                                  details={"pr_id": request.pr_id})

        return await self.resolve_and_dispatch(
            order, request.vendor_id, company_id, request.shipment_data,
            requested_mode=request.shipment_data.shipment_mode,
        )

    async def resolve_and_dispatch(
        self,
        order: Dict[str, Any],
        vendor_id: str,
        company_id: str,
        shipment_data: ShipmentData,
        requested_mode: Optional[ShipmentMode] = None,
    ) -> DispatchOutcome:
        ctx = await self.build_context(order, vendor_id, company_id, shipment_data, requested_mode)
        logger.info("Shipment mode determination: %s", ctx.describe())

        # 1. Mode determination
        if not ctx.should_use_api:
            return await self._manual(ctx)

        # 2. Pre-check auto-repair
        await self._auto_repair(ctx)

        # 3. Enablement gate
        if not await self.store.is_api_shipment_enabled(ctx.company_id):
            self._gate(
                ctx,
                allowed=ctx.fallback_when_unavailable,
                error=ProviderNotEnabled(
                    f"No shipping providers enabled for company {ctx.company_name or ctx.company_id}. "
                    "Configure vendor shipping routing and enable a shipping provider before creating shipments.",
                    {**ctx.describe(), "gate": "enablement"},
                ),
            )
            return await self._manual(ctx, "no shipping provider enabled for company")

        # 4. Provider/courier resolution
        provider, company_provider, courier_code = await self._resolve_provider(ctx)
        if provider is None or company_provider is None:
            self._gate(
                ctx,
                allowed=ctx.fallback_when_unavailable,
                error=ProviderResolutionFailed(
                    f"Unable to resolve shipping provider for company {ctx.company_name or ctx.company_id}. "
                    "Ensure vendor shipping routing is configured and its provider is enabled.",
                    {
                        **ctx.describe(),
                        "gate": "provider_resolution",
                        "has_provider_id": provider is not None,
                        "has_company_shipping_provider_id": company_provider is not None,
                    },
                ),
            )
            return await self._manual(ctx, "shipping provider could not be resolved")

        # 5. Dispatch attempt
        outcome = await self.executor.create_api_shipment(ctx, provider, company_provider, courier_code)
        if outcome.success:
            order = await self.executor.mark_order_dispatched(ctx, outcome.shipment_id, ShipmentMode.API, outcome)
            return DispatchOutcome(ShipmentMode.API, outcome.shipment_id, order)

        self._gate(
            ctx,
            allowed=ctx.fallback_on_failure,
            error=self._api_failure(ctx, provider, company_provider, outcome),
        )
        return await self._manual(ctx, f"API shipment failed: {outcome.error}")

    # =========================================================================
    # STEPS
    # =========================================================================

    def _gate(self, ctx: ResolutionContext, allowed: bool, error: ShipmentResolutionError):
        """Raise unless this gate's fallback flag permits MANUAL substitution."""
        if not allowed:
            logger.error(
                "Shipment gate %s failed for %s (company %s, mode %s): %s",
                error.details.get("gate"), ctx.pr_id, ctx.company_id, ctx.company_mode.value, error.message
            )
            raise error

    async def _auto_repair(self, ctx: ResolutionContext):
        """Enable the provider named by the vendor's active routing, if it is not enabled."""
        try:
            routing = await self.store.get_active_vendor_routing(ctx.vendor_id, ctx.company_id)
            if routing is None:
                return
            provider = await self.store.get_provider_by_ref(routing.get("shipment_service_provider_ref_id"))
            if provider is None:
                logger.warning(
                    "Routing %s references unknown provider %s",
                    routing.get("routing_id"), routing.get("shipment_service_provider_ref_id")
                )
                return
            existing = await self.store.get_company_provider(ctx.company_id, provider["provider_id"])
            if existing is None or not existing.get("is_enabled"):
                await self.store.ensure_provider_enabled(ctx.company_id, provider)
                logger.info(
                    "Auto-enabled provider %s for company %s from vendor routing %s",
                    provider.get("provider_code"), ctx.company_id, routing.get("routing_id")
                )
        except PyMongoError as e:
            # The enablement gate below decides the outcome
            logger.warning("Pre-check auto-enablement failed for company %s: %s", ctx.company_id, str(e))

    async def _resolve_provider(
        self, ctx: ResolutionContext
    ) -> Tuple[Optional[Dict], Optional[Dict], Optional[str]]:
        data = ctx.shipment_data
        routing = await self.store.get_active_vendor_routing(ctx.vendor_id, ctx.company_id)
        courier_code = None
        if routing is not None:
            if data.selected_courier_type == CourierSelection.SECONDARY and routing.get("secondary_courier_code"):
                courier_code = routing.get("secondary_courier_code")
            else:
                courier_code = routing.get("primary_courier_code")

        if data.provider_id and data.company_shipping_provider_id:
            provider = await self.store.get_provider(data.provider_id)
            company_provider = await self.store.get_company_provider_by_id(data.company_shipping_provider_id)
            if (
                company_provider is None
                or company_provider.get("company_id") != ctx.company_id
                or company_provider.get("provider_id") != data.provider_id
                or not company_provider.get("is_enabled")
            ):
                logger.warning(
                    "Requested provider %s / %s is not enabled for company %s",
                    data.provider_id, data.company_shipping_provider_id, ctx.company_id
                )
                company_provider = None
            return provider, company_provider, courier_code

        if routing is None:
            logger.info("No active vendor routing for vendor %s, company %s", ctx.vendor_id, ctx.company_id)
            return None, None, None

        provider = await self.store.get_provider_by_ref(routing.get("shipment_service_provider_ref_id"))
        if provider is None:
            return None, None, courier_code

        company_provider = await self.store.get_company_provider(ctx.company_id, provider["provider_id"], enabled_only=True)
        if company_provider is None:
            company_provider = await self.store.ensure_provider_enabled(ctx.company_id, provider)
        return provider, company_provider, courier_code

    def _api_failure(
        self,
        ctx: ResolutionContext,
        provider: Dict,
        company_provider: Dict,
        outcome: ApiShipmentOutcome,
    ) -> ApiShipmentFailed:
        error = outcome.error or "Unknown error"
        if ctx.is_automatic:
            message = (
                f"Automatic shipment creation failed: {error}. "
                "Check provider credentials and configuration."
            )
        else:
            message = f"API shipment failed: {error}"
        credential_hint = any(word in error.lower() for word in ("credential", "email", "password", "auth"))
        return ApiShipmentFailed(message, {
            **ctx.describe(),
            "gate": "dispatch",
            "provider_id": provider.get("provider_id"),
            "company_shipping_provider_id": company_provider.get("company_shipping_provider_id"),
            "suggestion": "Check the provider credentials in company shipping settings."
            if credential_hint else "Check provider configuration and network connectivity.",
        })

    async def _manual(self, ctx: ResolutionContext, fallback_reason: Optional[str] = None) -> DispatchOutcome:
        # Never reachable for AUTOMATIC companies: every API gate raises first
        if ctx.is_automatic:
            raise ProviderResolutionFailed(
                "MANUAL shipment refused for AUTOMATIC company",
                {**ctx.describe(), "gate": "manual_creation"},
            )
        if fallback_reason:
            ctx.notes.append(fallback_reason)
            logger.warning("Falling back to MANUAL shipment for %s: %s (%s)", ctx.pr_id, fallback_reason, ctx.describe())

        shipment_id = await self.executor.create_manual_shipment(ctx, fallback_reason)
        order = await self.executor.mark_order_dispatched(ctx, shipment_id, ShipmentMode.MANUAL)
        logger.info("MANUAL shipment %s created for %s", shipment_id, ctx.pr_id)
        return DispatchOutcome(ShipmentMode.MANUAL, shipment_id, order, fallback_reason)

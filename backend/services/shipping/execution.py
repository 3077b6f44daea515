"""
Procurement Hub - Shipment Execution

Creates Shipment records (API or MANUAL) and applies the dispatch to the
order. Every provider call is written to shipment_api_logs.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from services.portal_config import utc_now, to_iso
from services.shipping.credentials import CredentialVault
from services.shipping.models import ResolutionContext, ShipmentMode, ShipmentStatus
from services.shipping.providers import ProviderRegistry, ShipmentPayload
from services.status_adapter import EntityStatus
from services.validation import generate_id

logger = logging.getLogger(__name__)


@dataclass
class ApiShipmentOutcome:
    success: bool
    shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    provider_code: Optional[str] = None
    courier_code: Optional[str] = None
    error: Optional[str] = None


def dispatched_items(order: Dict[str, Any], quantities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Pair dispatched quantities with the order lines they refer to."""
    lines = order.get("items") or []
    items = []
    for position, entry in enumerate(quantities or []):
        index = entry.get("item_index", entry.get("itemIndex", position))
        quantity = entry.get("dispatched_quantity", entry.get("dispatchedQuantity", 0))
        if not quantity or not isinstance(index, int) or index >= len(lines):
            continue
        line = lines[index]
        items.append({
            "item_index": index,
            "product_id": line.get("product_id"),
            "product_name": line.get("product_name") or line.get("name"),
            "quantity": quantity,
            "price": line.get("price", 0),
        })
    return items


class ShipmentExecutor:

    def __init__(self, db, registry: ProviderRegistry, vault: CredentialVault):
        self.db = db
        self.registry = registry
        self.vault = vault

    async def log_api_call(
        self,
        shipment_id: Optional[str],
        provider_id: str,
        operation: str,
        request: Dict[str, Any],
        response: Optional[Dict[str, Any]],
        http_status: Optional[int],
        success: bool,
        error: Optional[str] = None,
    ):
        await self.db.shipment_api_logs.insert_one({
            "log_id": generate_id("SAL", 12),
            "shipment_id": shipment_id,
            "provider_id": provider_id,
            "operation_type": operation,
            "request_payload": request,
            "response_payload": response,
            "http_status": http_status,
            "success": success,
            "error_details": error,
            "timestamp": to_iso(utc_now()),
        })

    async def _warehouse(self, ctx: ResolutionContext) -> Optional[Dict]:
        ref = ctx.shipment_data.warehouse_ref_id
        if ref:
            return await self.db.vendor_warehouses.find_one(
                {"warehouse_ref_id": ref, "vendor_id": ctx.vendor_id}, {"_id": 0}
            )
        return await self.db.vendor_warehouses.find_one(
            {"vendor_id": ctx.vendor_id, "is_primary": True}, {"_id": 0}
        )

    def _build_payload(self, ctx: ResolutionContext, warehouse: Optional[Dict], courier_code: Optional[str]) -> ShipmentPayload:
        data = ctx.shipment_data
        items = dispatched_items(ctx.order, data.item_dispatched_quantities)
        return ShipmentPayload(
            pr_id=ctx.pr_id,
            vendor_id=ctx.vendor_id,
            company_id=ctx.company_id,
            from_address=warehouse or {},
            to_address=ctx.order.get("delivery_address") or {},
            items=items,
            courier_code=courier_code,
            shipment_value=sum((i["price"] or 0) * i["quantity"] for i in items),
            length_cm=data.length_cm,
            breadth_cm=data.breadth_cm,
            height_cm=data.height_cm,
            weight=data.volumetric_weight,
        )

    async def create_api_shipment(
        self,
        ctx: ResolutionContext,
        provider: Dict[str, Any],
        company_provider: Dict[str, Any],
        courier_code: Optional[str] = None,
    ) -> ApiShipmentOutcome:
        """Call the provider and record the Shipment. Failures come back in the outcome."""
        if ctx.shipment_data.warehouse_ref_id:
            warehouse = await self._warehouse(ctx)
            if warehouse is None:
                return ApiShipmentOutcome(
                    success=False,
                    error=f"Warehouse {ctx.shipment_data.warehouse_ref_id} not found for vendor {ctx.vendor_id}",
                )
        else:
            warehouse = await self._warehouse(ctx)

        client = self.registry.create(provider, self.vault.credentials_for(provider, company_provider))
        if client is None:
            return ApiShipmentOutcome(
                success=False,
                error=f"Provider not found or not initialized: {provider.get('provider_id')}",
            )

        payload = self._build_payload(ctx, warehouse, courier_code)
        try:
            result = await client.create_shipment(payload)
        except Exception as e:
            logger.exception("Provider %s raised during create_shipment for %s", client.provider_code, ctx.pr_id)
            await self.log_api_call(None, provider["provider_id"], "CREATE", payload.to_dict(), None, None, False, str(e))
            return ApiShipmentOutcome(success=False, error=str(e), provider_code=client.provider_code)

        if not result.success:
            await self.log_api_call(
                None, provider["provider_id"], "CREATE", payload.to_dict(),
                result.raw_response, result.http_status, False, result.error,
            )
            return ApiShipmentOutcome(success=False, error=result.error or "Unknown provider error",
                                      provider_code=client.provider_code)

        awb = result.awb_number or result.tracking_number
        if not awb:
            error = "Courier AWB number not received from provider"
            await self.log_api_call(
                None, provider["provider_id"], "CREATE", payload.to_dict(),
                result.raw_response, result.http_status, False, error,
            )
            return ApiShipmentOutcome(success=False, error=error, provider_code=client.provider_code)

        shipment_id = generate_id("SHM")
        await self.log_api_call(
            shipment_id, provider["provider_id"], "CREATE", payload.to_dict(),
            result.raw_response, result.http_status, True,
        )

        now = utc_now()
        await self.db.shipments.insert_one({
            "shipment_id": shipment_id,
            "pr_id": ctx.pr_id,
            "vendor_id": ctx.vendor_id,
            "company_id": ctx.company_id,
            "shipment_mode": ShipmentMode.API.value,
            "provider_id": provider["provider_id"],
            "provider_code": client.provider_code,
            "company_shipping_provider_id": company_provider.get("company_shipping_provider_id"),
            "provider_shipment_reference": result.provider_shipment_reference,
            "tracking_number": result.tracking_number,
            "tracking_url": result.tracking_url,
            "courier_awb_number": awb,
            "courier_code": result.courier_code or courier_code,
            "warehouse_ref_id": (warehouse or {}).get("warehouse_ref_id"),
            "shipping_cost": ctx.shipment_data.shipping_cost,
            **ctx.shipment_data.package_fields(),
            **EntityStatus("SHIPMENT", ShipmentStatus.CREATED.value).to_fields(updated_by=ctx.vendor_id, now=now),
            "created_at": to_iso(now),
        })
        logger.info(
            "API shipment %s created for %s via %s (provider ref %s)",
            shipment_id, ctx.pr_id, client.provider_code, result.provider_shipment_reference
        )
        return ApiShipmentOutcome(
            success=True,
            shipment_id=shipment_id,
            tracking_number=awb,
            tracking_url=result.tracking_url,
            provider_code=client.provider_code,
            courier_code=result.courier_code or courier_code,
        )

    async def create_manual_shipment(self, ctx: ResolutionContext, fallback_reason: Optional[str] = None) -> str:
        data = ctx.shipment_data
        shipment_id = generate_id("SHM")
        now = utc_now()
        await self.db.shipments.insert_one({
            "shipment_id": shipment_id,
            "pr_id": ctx.pr_id,
            "vendor_id": ctx.vendor_id,
            "company_id": ctx.company_id,
            "shipment_mode": ShipmentMode.MANUAL.value,
            "shipper_name": data.shipper_name,
            "carrier_name": (data.carrier_name or "").strip() or None,
            "mode_of_transport": data.mode_of_transport,
            "tracking_number": (data.tracking_number or "").strip() or None,
            "dispatched_date": data.dispatched_date,
            "expected_delivery_date": data.expected_delivery_date,
            "shipping_cost": data.shipping_cost,
            "fallback_reason": fallback_reason,
            **data.package_fields(),
            **EntityStatus("SHIPMENT", ShipmentStatus.IN_TRANSIT.value).to_fields(updated_by=ctx.vendor_id, now=now),
            "created_at": to_iso(now),
        })
        return shipment_id

    async def mark_order_dispatched(
        self,
        ctx: ResolutionContext,
        shipment_id: str,
        mode: ShipmentMode,
        outcome: Optional[ApiShipmentOutcome] = None,
    ) -> Dict[str, Any]:
        """Apply the dispatch to the order and return the updated document."""
        data = ctx.shipment_data
        now = utc_now()
        update = {
            "dispatch_status": "SHIPPED",
            "shipment_id": shipment_id,
            "shipment_mode": mode.value,
            "shipper_name": data.shipper_name,
            "mode_of_transport": data.mode_of_transport,
            "dispatched_date": data.dispatched_date,
            "expected_delivery_date": data.expected_delivery_date,
            "item_dispatched_quantities": data.item_dispatched_quantities,
            "shipping_cost": data.shipping_cost,
            **EntityStatus("ORDER", "DISPATCHED").to_fields(updated_by=ctx.vendor_id, now=now),
        }
        for entry in dispatched_items(ctx.order, data.item_dispatched_quantities):
            update[f"items.{entry['item_index']}.dispatched_quantity"] = entry["quantity"]

        if mode == ShipmentMode.API and outcome is not None:
            carrier = (
                (data.carrier_display_name or "").strip()
                or (data.carrier_name or "").strip()
                or outcome.courier_code
                or outcome.provider_code
            )
            update.update({
                "carrier_name": carrier,
                "tracking_number": outcome.tracking_number,
                "logistics_provider_code": outcome.provider_code,
                "logistics_tracking_url": outcome.tracking_url,
                # Order and Shipment share one identifier
                "shipment_reference_number": shipment_id,
            })
        else:
            update.update({
                "carrier_name": (data.carrier_name or "").strip() or None,
                "tracking_number": (data.tracking_number or "").strip() or None,
                "shipment_reference_number": (data.shipment_reference_number or "").strip() or shipment_id,
            })

        await self.db.orders.update_one({"id": ctx.pr_id}, {"$set": update})
        return await self.db.orders.find_one({"id": ctx.pr_id}, {"_id": 0})

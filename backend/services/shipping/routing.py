"""
Procurement Hub - Shipping Configuration Store

Reads and repairs the three provider routing collections:

- shipment_service_providers: catalog of carrier/aggregator integrations
- company_shipping_providers: per-company enablement (unique company_id + provider_id)
- vendor_shipping_routings: per (vendor, company) provider binding and courier codes
"""

import logging
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument

from services import portal_config
from services.portal_config import utc_now, to_iso
from services.validation import generate_id

logger = logging.getLogger(__name__)


class ShippingConfigStore:

    def __init__(self, db):
        self.db = db

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_company(self, company_id: str) -> Optional[Dict]:
        return await self.db.companies.find_one({"id": company_id}, {"_id": 0})

    async def get_provider(self, provider_id: str) -> Optional[Dict]:
        return await self.db.shipment_service_providers.find_one({"provider_id": provider_id}, {"_id": 0})

    async def get_provider_by_ref(self, provider_ref_id: str) -> Optional[Dict]:
        return await self.db.shipment_service_providers.find_one(
            {"provider_ref_id": provider_ref_id}, {"_id": 0}
        )

    async def get_company_provider(
        self,
        company_id: str,
        provider_id: str,
        enabled_only: bool = False,
    ) -> Optional[Dict]:
        query = {"company_id": company_id, "provider_id": provider_id}
        if enabled_only:
            query["is_enabled"] = True
        return await self.db.company_shipping_providers.find_one(query, {"_id": 0})

    async def get_company_provider_by_id(self, company_shipping_provider_id: str) -> Optional[Dict]:
        return await self.db.company_shipping_providers.find_one(
            {"company_shipping_provider_id": company_shipping_provider_id}, {"_id": 0}
        )

    async def get_active_vendor_routing(self, vendor_id: str, company_id: str) -> Optional[Dict]:
        return await self.db.vendor_shipping_routings.find_one(
            {"vendor_id": vendor_id, "company_id": company_id, "is_active": True},
            {"_id": 0},
        )

    async def enabled_providers(self, company_id: str) -> List[Dict]:
        """Enabled company rows whose catalog provider is active, joined with the catalog."""
        rows = await self.db.company_shipping_providers.find(
            {"company_id": company_id, "is_enabled": True}, {"_id": 0}
        ).to_list(100)

        enabled = []
        for row in rows:
            provider = await self.get_provider(row["provider_id"])
            if provider is None or provider.get("is_active") is False:
                continue
            enabled.append({
                **row,
                "provider_code": provider.get("provider_code"),
                "provider_name": provider.get("provider_name"),
                "provider_family": provider.get("provider_family"),
            })
        return enabled

    async def is_api_shipment_enabled(self, company_id: str) -> bool:
        if not portal_config.SHIPPING_INTEGRATION_ENABLED:
            logger.info("Shipping integration is disabled system-wide")
            return False
        return len(await self.enabled_providers(company_id)) > 0

    # =========================================================================
    # ENABLEMENT
    # =========================================================================

    async def ensure_provider_enabled(
        self,
        company_id: str,
        provider: Dict[str, Any],
        updated_by: str = "System (auto-enabled from vendor routing)",
    ) -> Dict:
        """
        Enable a provider for a company, creating the enablement row if absent.

        Single upsert keyed by (company_id, provider_id): repeating the call
        leaves exactly one enabled row.
        """
        now = to_iso(utc_now())
        row = await self.db.company_shipping_providers.find_one_and_update(
            {"company_id": company_id, "provider_id": provider["provider_id"]},
            {
                "$set": {"is_enabled": True, "updated_by": updated_by, "updated_at": now},
                "$setOnInsert": {
                    "company_shipping_provider_id": generate_id("CSP"),
                    "company_id": company_id,
                    "provider_id": provider["provider_id"],
                    "is_default": False,
                    "created_by": updated_by,
                    "created_at": now,
                },
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

        if not portal_config.ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY:
            result = await self.db.company_shipping_providers.update_many(
                {"company_id": company_id, "provider_id": {"$ne": provider["provider_id"]}, "is_enabled": True},
                {"$set": {"is_enabled": False, "is_default": False, "updated_by": updated_by, "updated_at": now}},
            )
            if result.modified_count:
                logger.info(
                    "Disabled %d other provider(s) for company %s (single provider per company)",
                    result.modified_count, company_id
                )
        return row

    async def set_default_provider(self, company_id: str, provider_id: str, updated_by: str) -> Optional[Dict]:
        """Mark one enabled provider as the company default for its family."""
        provider = await self.get_provider(provider_id)
        if provider is None:
            return None
        family = provider.get("provider_family") or provider.get("provider_code")

        same_family = await self.db.shipment_service_providers.find(
            {"$or": [{"provider_family": family}, {"provider_code": family}]},
            {"_id": 0, "provider_id": 1},
        ).to_list(100)
        family_ids = [p["provider_id"] for p in same_family if p["provider_id"] != provider_id]

        now = to_iso(utc_now())
        if family_ids:
            await self.db.company_shipping_providers.update_many(
                {"company_id": company_id, "provider_id": {"$in": family_ids}},
                {"$set": {"is_default": False, "updated_by": updated_by, "updated_at": now}},
            )
        return await self.db.company_shipping_providers.find_one_and_update(
            {"company_id": company_id, "provider_id": provider_id, "is_enabled": True},
            {"$set": {"is_default": True, "updated_by": updated_by, "updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

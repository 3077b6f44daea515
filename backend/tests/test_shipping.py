"""
Tests for shipment mode resolution (services/shipping).

Covers the API/MANUAL decision per company mode, the fallback gates and
the shared order/shipment identifier.
"""
import pytest
from unittest.mock import patch

from services.shipping import (
    ShipmentModeResolver,
    DispatchRequest,
    ShipmentData,
    ShipmentResolutionError,
)
from services.shipping.credentials import CredentialVault
from services.shipping.providers import ProviderRegistry, MockProvider, CreateShipmentResult
from services.shipping.routing import ShippingConfigStore
from services.validation import ValidationError


class ExplodingProvider(MockProvider):
    """Provider whose HTTP layer raises."""

    provider_code = "EXPLODING"

    async def create_shipment(self, payload):
        raise ConnectionError("carrier endpoint unreachable")


class NoAwbProvider(MockProvider):
    provider_code = "NO_AWB"

    async def create_shipment(self, payload):
        return CreateShipmentResult(success=True, provider_shipment_reference="REF-1", http_status=200)


def shipment_payload(**overrides):
    data = {
        "shipperName": "Acme Supplies",
        "carrierName": "BlueDart",
        "modeOfTransport": "ROAD",
        "trackingNumber": "TRK-1",
        "dispatchedDate": "2026-03-01",
        "expectedDeliveryDate": "2026-03-05",
        "itemDispatchedQuantities": [{"itemIndex": 0, "dispatchedQuantity": 2}],
    }
    data.update(overrides)
    return {"prId": "PR-1", "vendorId": "V1", "shipmentData": data}


def make_request(**overrides):
    return DispatchRequest.model_validate(shipment_payload(**overrides))


async def setup_company(db, mode="MANUAL", routing=True, enabled=True, provider_code="MOCK", auth_config=None):
    await db.companies.insert_one({"id": "C1", "name": "Acme Corp", "shipment_request_mode": mode})
    await db.orders.insert_one({
        "id": "PR-1",
        "company_id": "C1",
        "vendor_id": "V1",
        "unified_status": "COMPANY_ADMIN_APPROVED",
        "items": [{"product_id": "P1", "product_name": "Paper", "quantity": 5, "price": 100}],
        "delivery_address": {"city": "Pune", "pincode": "411001"},
    })
    await db.shipment_service_providers.insert_one({
        "provider_id": "SSP-1",
        "provider_ref_id": "REF-MOCK",
        "provider_code": provider_code,
        "provider_name": "Test Provider",
        "is_active": True,
        "auth_config": auth_config or {},
    })
    if routing:
        await db.vendor_shipping_routings.insert_one({
            "routing_id": "RT-1",
            "vendor_id": "V1",
            "company_id": "C1",
            "shipment_service_provider_ref_id": "REF-MOCK",
            "primary_courier_code": "BLUEDART_AIR",
            "secondary_courier_code": "DELHIVERY_SURFACE",
            "is_active": True,
        })
    if enabled:
        await db.company_shipping_providers.insert_one({
            "company_shipping_provider_id": "CSP-1",
            "company_id": "C1",
            "provider_id": "SSP-1",
            "is_enabled": True,
        })


def make_resolver(db):
    registry = ProviderRegistry()
    registry.register("MOCK", MockProvider)
    registry.register("EXPLODING", ExplodingProvider)
    registry.register("NO_AWB", NoAwbProvider)
    return ShipmentModeResolver(db, registry=registry, vault=CredentialVault())


class TestRequestValidation:
    """Input checks before any lookup."""

    def test_missing_pr_id(self):
        payload = shipment_payload()
        payload.pop("prId")
        with pytest.raises(ValidationError) as exc:
            DispatchRequest.model_validate(payload).validate_ids()
        assert exc.value.message == "PR ID is required"

    def test_dispatched_date_required(self):
        with pytest.raises(ValidationError) as exc:
            make_request(dispatchedDate=None).validate_ids()
        assert exc.value.field == "dispatchedDate"

    def test_bad_date_rejected(self):
        with pytest.raises(ValidationError):
            make_request(expectedDeliveryDate="next tuesday").validate_ids()

    def test_items_required(self):
        with pytest.raises(ValidationError):
            make_request(itemDispatchedQuantities=None).validate_ids()

    def test_default_shipper_name(self):
        request = make_request(shipperName="  ").validate_ids()
        assert request.shipment_data.shipper_name == "Vendor"

    def test_snake_case_accepted(self):
        data = ShipmentData(dispatched_date="2026-03-01", mode_of_transport="AIR", item_dispatched_quantities=[])
        assert data.validate_for_dispatch().mode_of_transport == "AIR"


class TestOwnership:

    @pytest.mark.asyncio
    async def test_unknown_order(self, db):
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request())
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_order_of_another_vendor(self, db):
        await setup_company(db)
        payload = shipment_payload()
        payload["vendorId"] = "V2"
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(DispatchRequest.model_validate(payload))
        assert exc.value.status_code == 403
        assert exc.value.error_type == "forbidden"

    @pytest.mark.asyncio
    async def test_order_without_company(self, db):
        await db.orders.insert_one({"id": "PR-1", "vendor_id": "V1"})
        with pytest.raises(ValidationError):
            await make_resolver(db).dispatch(make_request())


class TestManualCompany:
    """MANUAL companies record shipments by hand unless API is requested."""

    @pytest.mark.asyncio
    async def test_manual_dispatch(self, db):
        await setup_company(db, mode="MANUAL")
        outcome = await make_resolver(db).dispatch(make_request())

        assert outcome.mode.value == "MANUAL"
        assert outcome.fallback_reason is None
        shipment = await db.shipments.find_one({"shipment_id": outcome.shipment_id})
        assert shipment["shipment_mode"] == "MANUAL"
        assert shipment["unified_shipment_status"] == "IN_TRANSIT"
        assert shipment["carrier_name"] == "BlueDart"

        order = outcome.order
        assert order["dispatch_status"] == "SHIPPED"
        assert order["unified_status"] == "DISPATCHED"
        assert order["status"] == "Dispatched"
        assert order["shipment_reference_number"] == outcome.shipment_id
        assert order["items"][0]["dispatched_quantity"] == 2

    @pytest.mark.asyncio
    async def test_vendor_reference_kept_for_manual(self, db):
        await setup_company(db, mode="MANUAL")
        outcome = await make_resolver(db).dispatch(make_request(shipmentReferenceNumber="VEN-REF-9"))
        assert outcome.order["shipment_reference_number"] == "VEN-REF-9"

    @pytest.mark.asyncio
    async def test_unknown_company_mode_is_manual(self, db):
        await setup_company(db, mode="SOMETIMES")
        outcome = await make_resolver(db).dispatch(make_request())
        assert outcome.mode.value == "MANUAL"

    @pytest.mark.asyncio
    async def test_explicit_api_request(self, db):
        await setup_company(db, mode="MANUAL")
        outcome = await make_resolver(db).dispatch(make_request(shipmentMode="API"))

        assert outcome.mode.value == "API"
        assert outcome.order["shipment_reference_number"] == outcome.shipment_id
        assert outcome.order["tracking_number"].startswith("AWB")

    @pytest.mark.asyncio
    async def test_explicit_api_without_provider_fails(self, db):
        await setup_company(db, mode="MANUAL", routing=False, enabled=False)
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request(shipmentMode="API"))

        assert exc.value.error_type == "provider_not_enabled"
        assert exc.value.details["gate"] == "enablement"
        assert await db.shipments.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_explicit_api_failure_falls_back(self, db):
        """An explicit API request that fails at the carrier may still be recorded by hand."""
        await setup_company(db, mode="MANUAL", auth_config={"simulate_error": "Carrier rejected pincode"})
        outcome = await make_resolver(db).dispatch(make_request(shipmentMode="API"))

        assert outcome.mode.value == "MANUAL"
        assert "Carrier rejected pincode" in outcome.fallback_reason

    @pytest.mark.asyncio
    async def test_fallback_can_be_refused(self, db):
        await setup_company(db, mode="MANUAL", auth_config={"simulate_error": "Carrier rejected pincode"})
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request(shipmentMode="API", allowManualFallback=False))

        assert exc.value.error_type == "api_shipment_failed"
        assert exc.value.status_code == 500
        assert await db.shipments.count_documents({}) == 0


class TestAutomaticCompany:
    """AUTOMATIC companies never receive a MANUAL shipment."""

    @pytest.mark.asyncio
    async def test_api_shipment_with_routing_courier(self, db):
        await setup_company(db, mode="AUTOMATIC")
        outcome = await make_resolver(db).dispatch(make_request())

        assert outcome.mode.value == "API"
        shipment = await db.shipments.find_one({"shipment_id": outcome.shipment_id}, {"_id": 0})
        assert shipment["courier_code"] == "BLUEDART_AIR"
        assert shipment["unified_shipment_status"] == "CREATED"
        assert outcome.order["shipment_id"] == outcome.shipment_id
        assert outcome.order["shipment_reference_number"] == outcome.shipment_id

        logs = await db.shipment_api_logs.find({}).to_list(10)
        assert len(logs) == 1 and logs[0]["success"] is True

    @pytest.mark.asyncio
    async def test_carrier_name_defaults_to_courier(self, db):
        await setup_company(db, mode="AUTOMATIC")
        outcome = await make_resolver(db).dispatch(make_request(carrierName=None))

        assert outcome.order["carrier_name"] == "BLUEDART_AIR"
        assert outcome.order["logistics_provider_code"] == "MOCK"

    @pytest.mark.asyncio
    async def test_secondary_courier(self, db):
        await setup_company(db, mode="AUTOMATIC")
        outcome = await make_resolver(db).dispatch(make_request(selectedCourierType="SECONDARY"))
        shipment = await db.shipments.find_one({"shipment_id": outcome.shipment_id})
        assert shipment["courier_code"] == "DELHIVERY_SURFACE"

    @pytest.mark.asyncio
    async def test_transport_mode_coerced_to_courier(self, db):
        await setup_company(db, mode="AUTOMATIC")
        outcome = await make_resolver(db).dispatch(make_request(modeOfTransport="ROAD"))
        assert outcome.order["mode_of_transport"] == "COURIER"

    @pytest.mark.asyncio
    async def test_auto_repair_enables_routing_provider(self, db):
        await setup_company(db, mode="AUTOMATIC", enabled=False)
        outcome = await make_resolver(db).dispatch(make_request())

        assert outcome.mode.value == "API"
        rows = await db.company_shipping_providers.find({"company_id": "C1"}).to_list(10)
        assert len(rows) == 1
        assert rows[0]["is_enabled"] is True
        assert rows[0]["company_shipping_provider_id"].startswith("CSP")

    @pytest.mark.asyncio
    async def test_no_provider_raises(self, db):
        await setup_company(db, mode="AUTOMATIC", routing=False, enabled=False)
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request())

        assert exc.value.error_type == "provider_not_enabled"
        assert exc.value.details["company_shipment_mode"] == "AUTOMATIC"
        assert await db.shipments.count_documents({}) == 0
        order = await db.orders.find_one({"id": "PR-1"})
        assert "dispatch_status" not in order

    @pytest.mark.asyncio
    async def test_enabled_provider_without_routing_raises(self, db):
        await setup_company(db, mode="AUTOMATIC", routing=False)
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request())
        assert exc.value.error_type == "provider_resolution_failed"

    @pytest.mark.asyncio
    async def test_carrier_failure_raises_with_suggestion(self, db):
        await setup_company(db, mode="AUTOMATIC", auth_config={"simulate_error": "Invalid credentials"})
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request(allowManualFallback=True))

        assert exc.value.error_type == "api_shipment_failed"
        assert exc.value.message.startswith("Automatic shipment creation failed")
        assert "credentials" in exc.value.details["suggestion"]
        assert await db.shipments.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_provider_exception_is_an_api_failure(self, db):
        await setup_company(db, mode="AUTOMATIC", provider_code="EXPLODING")
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request())

        assert "unreachable" in exc.value.message
        log = await db.shipment_api_logs.find_one({})
        assert log["success"] is False

    @pytest.mark.asyncio
    async def test_missing_awb_is_an_api_failure(self, db):
        await setup_company(db, mode="AUTOMATIC", provider_code="NO_AWB")
        with pytest.raises(ShipmentResolutionError) as exc:
            await make_resolver(db).dispatch(make_request())
        assert "AWB" in exc.value.message

    @pytest.mark.asyncio
    async def test_integration_switched_off(self, db):
        await setup_company(db, mode="AUTOMATIC")
        with patch("services.portal_config.SHIPPING_INTEGRATION_ENABLED", False):
            with pytest.raises(ShipmentResolutionError) as exc:
                await make_resolver(db).dispatch(make_request())
        assert exc.value.error_type == "provider_not_enabled"


class TestProviderEnablement:
    """ShippingConfigStore enablement rows."""

    @pytest.mark.asyncio
    async def test_enable_is_idempotent(self, db):
        store = ShippingConfigStore(db)
        provider = {"provider_id": "SSP-1"}
        first = await store.ensure_provider_enabled("C1", provider)
        second = await store.ensure_provider_enabled("C1", provider)

        assert first["company_shipping_provider_id"] == second["company_shipping_provider_id"]
        assert await db.company_shipping_providers.count_documents({"company_id": "C1"}) == 1

    @pytest.mark.asyncio
    async def test_single_provider_per_company(self, db):
        store = ShippingConfigStore(db)
        await store.ensure_provider_enabled("C1", {"provider_id": "SSP-1"})
        with patch("services.portal_config.ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY", False):
            await store.ensure_provider_enabled("C1", {"provider_id": "SSP-2"})

        enabled = await db.company_shipping_providers.find(
            {"company_id": "C1", "is_enabled": True}
        ).to_list(10)
        assert [row["provider_id"] for row in enabled] == ["SSP-2"]

    @pytest.mark.asyncio
    async def test_one_default_per_family(self, db):
        await db.shipment_service_providers.insert_many([
            {"provider_id": "SSP-A", "provider_code": "SHIPROCKET", "provider_family": "SHIPROCKET", "is_active": True},
            {"provider_id": "SSP-B", "provider_code": "SHIPROCKET_ICICI", "provider_family": "SHIPROCKET", "is_active": True},
        ])
        store = ShippingConfigStore(db)
        with patch("services.portal_config.ALLOW_MULTIPLE_PROVIDERS_PER_COMPANY", True):
            await store.ensure_provider_enabled("C1", {"provider_id": "SSP-A"})
            await store.ensure_provider_enabled("C1", {"provider_id": "SSP-B"})

        await store.set_default_provider("C1", "SSP-A", "U-CA")
        row = await store.set_default_provider("C1", "SSP-B", "U-CA")
        assert row["is_default"] is True

        defaults = await db.company_shipping_providers.find({"company_id": "C1", "is_default": True}).to_list(10)
        assert [d["provider_id"] for d in defaults] == ["SSP-B"]
        assert await store.set_default_provider("C1", "SSP-X", "U-CA") is None

    @pytest.mark.asyncio
    async def test_inactive_catalog_provider_not_counted(self, db):
        await setup_company(db)
        await db.shipment_service_providers.update_one({"provider_id": "SSP-1"}, {"$set": {"is_active": False}})
        assert await ShippingConfigStore(db).is_api_shipment_enabled("C1") is False


class TestCredentialVault:

    def test_company_values_override_provider(self):
        vault = CredentialVault(decrypt=lambda v: v.upper())
        credentials = vault.credentials_for(
            {"provider_id": "SSP-1", "auth_config": {"email": "ops@acme", "password": "a"}},
            {"auth_config": {"password": "b", "channel_id": None}},
        )
        assert credentials == {"email": "OPS@ACME", "password": "B"}

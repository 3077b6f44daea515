"""
Tests for the logistics provider integrations.
The Shiprocket client runs against an httpx MockTransport.
"""
import json
import pytest
import httpx
from unittest.mock import patch

from services.shipping.providers import MockProvider, ShipmentPayload, default_registry
from services.shipping.providers.shiprocket import ShiprocketProvider

CREDENTIALS = {"email": "ops@acme.test", "password": "secret", "api_base_url": "https://sr.test"}

_RealAsyncClient = httpx.AsyncClient


def payload():
    return ShipmentPayload(
        pr_id="PR-1",
        vendor_id="V1",
        company_id="C1",
        from_address={"pincode": "400001"},
        to_address={"name": "Acme Stores", "city": "Pune", "pincode": "411001"},
        items=[{"product_name": "Paper", "product_id": "P1", "quantity": 2, "price": 100}],
        courier_code="7",
        shipment_value=200,
    )


class FakeShiprocket:
    """Records calls and answers like the Shiprocket external API."""

    def __init__(self, unauthorized_once=False):
        self.calls = []
        self.unauthorized_once = unauthorized_once

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path == "/v1/external/auth/login":
            return httpx.Response(200, json={"token": f"T{self.calls.count(path)}"})
        if path == "/v1/external/orders/create/adhoc":
            if self.unauthorized_once:
                self.unauthorized_once = False
                return httpx.Response(401, json={"message": "Token expired"})
            body = json.loads(request.content)
            assert body["order_items"][0]["units"] == 2
            return httpx.Response(200, json={"order_id": 991, "shipment_id": 12345})
        if path == "/v1/external/courier/assign/awb":
            return httpx.Response(200, json={"response": {"data": {"awb_code": "AWB777", "courier_company_id": 7}}})
        if path.startswith("/v1/external/courier/track/shipment/"):
            return httpx.Response(200, json={"tracking_data": {
                "track_url": "https://shiprocket.co/tracking/AWB777",
                "shipment_track": [{"current_status": "Delivered", "awb_code": "AWB777"}],
            }})
        return httpx.Response(404, text="not found")

    def client_factory(self):
        def factory(**kwargs):
            return _RealAsyncClient(transport=httpx.MockTransport(self), **kwargs)
        return factory


class TestShiprocketProvider:

    @pytest.mark.asyncio
    async def test_create_shipment(self):
        fake = FakeShiprocket()
        provider = ShiprocketProvider("SSP-SR", CREDENTIALS)
        with patch.object(httpx, "AsyncClient", fake.client_factory()):
            result = await provider.create_shipment(payload())

        assert result.success is True
        assert result.provider_shipment_reference == "12345"
        assert result.awb_number == "AWB777"
        assert result.courier_code == "7"
        assert fake.calls == [
            "/v1/external/auth/login",
            "/v1/external/orders/create/adhoc",
            "/v1/external/courier/assign/awb",
        ]

    @pytest.mark.asyncio
    async def test_reauthenticates_once_on_401(self):
        fake = FakeShiprocket(unauthorized_once=True)
        provider = ShiprocketProvider("SSP-SR", CREDENTIALS)
        with patch.object(httpx, "AsyncClient", fake.client_factory()):
            result = await provider.create_shipment(payload())

        assert result.success is True
        assert fake.calls.count("/v1/external/auth/login") == 2

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = ShiprocketProvider("SSP-SR", {})
        result = await provider.create_shipment(payload())
        assert result.success is False
        assert "email and password" in result.error

        health = await provider.health_check()
        assert health.healthy is False

    @pytest.mark.asyncio
    async def test_tracking_status_mapped(self):
        fake = FakeShiprocket()
        provider = ShiprocketProvider("SSP-SR", {**CREDENTIALS, "token": "cached"})
        with patch.object(httpx, "AsyncClient", fake.client_factory()):
            tracking = await provider.track_shipment("12345")

        assert tracking.status == "DELIVERED"
        assert tracking.tracking_number == "AWB777"
        assert "/v1/external/auth/login" not in fake.calls


class TestMockProvider:

    @pytest.mark.asyncio
    async def test_create_and_track(self):
        provider = MockProvider("SSP-1")
        created = await provider.create_shipment(payload())
        assert created.awb_number.startswith("AWB")

        tracking = await provider.track_shipment(created.provider_shipment_reference)
        assert tracking.success is True

    @pytest.mark.asyncio
    async def test_serviceability(self):
        provider = MockProvider("SSP-1")
        assert (await provider.check_serviceability("411001")).serviceable is True
        assert (await provider.check_serviceability("ABC")).serviceable is False


class TestRegistry:

    def test_default_codes(self):
        registry = default_registry()
        assert registry.codes == ["MOCK", "SHIPROCKET", "SHIPROCKET_ICICI"]
        assert registry.supports("shiprocket")
        assert registry.create({"provider_code": "FEDEX", "provider_id": "X"}, {}) is None
        assert isinstance(registry.create({"provider_code": "MOCK", "provider_id": "X"}, {}), MockProvider)

    def test_instance_carries_catalog_code(self):
        client = default_registry().create({"provider_code": "shiprocket_icici", "provider_id": "SSP-ICICI"}, CREDENTIALS)
        assert isinstance(client, ShiprocketProvider)
        assert client.provider_code == "SHIPROCKET_ICICI"
        assert ShiprocketProvider.provider_code == "SHIPROCKET"

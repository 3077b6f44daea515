"""
API tests for the workflow, shipment and notification routers.
Requests go through httpx's ASGI transport against an in-memory database.
"""
import pytest
import httpx
from fastapi import FastAPI

from routes import workflows, shipments, notifications, install_error_handlers
from services.notifications import NotificationDispatcher, NotificationQueue
from services.notifications.email_service import EmailService, EmailProvider
from services.shipping import ShipmentModeResolver
from services.workflow_configuration import WorkflowConfigurationStore
from services.workflow_service import WorkflowStageEngine


def build_app(db):
    queue = NotificationQueue(db)
    workflows.set_dependencies(db, WorkflowStageEngine(db))
    shipments.set_dependencies(db, ShipmentModeResolver(db))
    notifications.set_dependencies(db, NotificationDispatcher(db, queue, EmailService(db=db, provider=EmailProvider.MOCK)))

    app = FastAPI()
    install_error_handlers(app)
    app.include_router(workflows.router, prefix="/api")
    app.include_router(shipments.router, prefix="/api")
    app.include_router(notifications.router, prefix="/api")
    return app


@pytest.fixture
async def client(db, users):
    await WorkflowConfigurationStore(db).seed_default_configurations()
    await db.users.insert_many([dict(u) for u in users])
    await db.orders.insert_one({
        "id": "ORD-1", "company_id": "C1", "location_id": "L1", "vendor_id": "V1",
        "requested_by": "U-EMP", "unified_status": "DRAFT",
    })
    transport = httpx.ASGITransport(app=build_app(db))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestWorkflowRoutes:

    @pytest.mark.asyncio
    async def test_submit_and_approve(self, client):
        resp = await client.post("/api/workflows/order/ORD-1/submit",
                                 json={"actor_id": "U-EMP", "actor_role": "EMPLOYEE"})
        assert resp.status_code == 200
        assert resp.json()["new_stage"] == "LOCATION_APPROVAL"

        resp = await client.post("/api/workflows/ORDER/ORD-1/transition", json={
            "actor_id": "U-LOC", "actor_role": "LOCATION_ADMIN", "action": "approve",
        })
        assert resp.status_code == 200
        assert resp.json()["new_status"] == "PENDING_COMPANY_ADMIN_APPROVAL"

        resp = await client.get("/api/workflows/ORDER/ORD-1/history")
        assert resp.status_code == 200
        assert len(resp.json()["history"]) == 1

    @pytest.mark.asyncio
    async def test_unauthorized_role_is_403(self, client):
        await client.post("/api/workflows/ORDER/ORD-1/submit", json={"actor_id": "U-EMP", "actor_role": "EMPLOYEE"})
        resp = await client.post("/api/workflows/ORDER/ORD-1/transition", json={
            "actor_id": "U-EMP", "actor_role": "EMPLOYEE", "action": "APPROVE",
        })
        assert resp.status_code == 403
        body = resp.json()
        assert body["type"] == "unauthorized_role"
        assert body["allowed_roles"] == ["LOCATION_ADMIN", "SITE_ADMIN"]

    @pytest.mark.asyncio
    async def test_missing_reason_code_is_400(self, client):
        await client.post("/api/workflows/ORDER/ORD-1/submit", json={"actor_id": "U-EMP", "actor_role": "EMPLOYEE"})
        resp = await client.post("/api/workflows/ORDER/ORD-1/transition", json={
            "actor_id": "U-LOC", "actor_role": "LOCATION_ADMIN", "action": "REJECT",
        })
        assert resp.status_code == 400
        assert resp.json()["field"] == "reason_code"

    @pytest.mark.asyncio
    async def test_malformed_body_is_400_validation(self, client):
        resp = await client.post("/api/workflows/ORDER/ORD-1/transition", json={
            "actor_role": "LOCATION_ADMIN", "action": "APPROVE",
        })
        assert resp.status_code == 400
        body = resp.json()
        assert body["type"] == "validation"
        assert body["field"] == "actor_id"

    @pytest.mark.asyncio
    async def test_unknown_entity_is_404(self, client):
        resp = await client.get("/api/workflows/ORDER/ORD-404/history")
        assert resp.status_code == 404
        assert resp.json()["type"] == "entity_not_found"

    @pytest.mark.asyncio
    async def test_process_timeouts(self, client):
        resp = await client.post("/api/workflows/process-timeouts")
        assert resp.status_code == 200
        assert resp.json() == {"escalated": 0, "reminded": 0, "errors": 0}


class TestShipmentRoutes:

    @pytest.mark.asyncio
    async def test_manual_dispatch(self, client, db):
        await db.companies.insert_one({"id": "C1", "name": "Acme Corp", "shipment_request_mode": "MANUAL"})
        resp = await client.post("/api/prs/shipment", json={
            "prId": "ORD-1",
            "vendorId": "V1",
            "shipmentData": {
                "modeOfTransport": "ROAD",
                "dispatchedDate": "2026-03-01",
                "itemDispatchedQuantities": [],
            },
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["shipmentMode"] == "MANUAL"
        assert body["shipment_reference_number"] == body["shipmentId"]
        assert body["shipper_name"] == "Vendor"

    @pytest.mark.asyncio
    async def test_missing_fields_are_400(self, client):
        resp = await client.post("/api/prs/shipment", json={"vendorId": "V1", "shipmentData": {}})
        assert resp.status_code == 400
        assert resp.json()["error"] == "PR ID is required"

    @pytest.mark.asyncio
    async def test_automatic_without_provider(self, client, db):
        await db.companies.insert_one({"id": "C1", "name": "Acme Corp", "shipment_request_mode": "AUTOMATIC"})
        resp = await client.post("/api/prs/shipment", json={
            "prId": "ORD-1",
            "vendorId": "V1",
            "shipmentData": {"modeOfTransport": "COURIER", "dispatchedDate": "2026-03-01",
                             "itemDispatchedQuantities": []},
        })
        assert resp.status_code == 400
        assert resp.json()["type"] == "provider_not_enabled"
        assert await db.shipments.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_unknown_shipment_mode_is_400_validation(self, client, db):
        resp = await client.post("/api/prs/shipment", json={
            "prId": "ORD-1",
            "vendorId": "V1",
            "shipmentData": {"modeOfTransport": "COURIER", "dispatchedDate": "2026-03-01",
                             "itemDispatchedQuantities": [], "shipmentMode": "BOGUS"},
        })
        assert resp.status_code == 400
        body = resp.json()
        assert body["type"] == "validation"
        assert body["field"] == "shipmentData.shipmentMode"
        assert await db.shipments.count_documents({}) == 0


class TestNotificationRoutes:

    @pytest.mark.asyncio
    async def test_dispatch_and_queue_listing(self, client, db):
        await db.notification_queue.insert_one({
            "queue_id": "NQ-1", "company_id": "C1", "channel": "EMAIL", "status": "PENDING",
            "recipient_email": "loc@example.com", "subject": "Hi", "body": "<p>Hi</p>",
            "scheduled_for": "2000-01-01T00:00:00.000000+00:00", "attempts": 0, "max_attempts": 3,
        })
        resp = await client.post("/api/notifications/dispatch")
        assert resp.status_code == 200
        assert resp.json()["sent"] == 1

        resp = await client.get("/api/notifications/queue", params={"status": "sent"})
        assert resp.json()["total"] == 1
        assert "body" not in resp.json()["entries"][0]

    @pytest.mark.asyncio
    async def test_cancel_non_pending_is_409(self, client):
        resp = await client.post("/api/notifications/queue/NQ-404/cancel")
        assert resp.status_code == 409

"""
Procurement Hub - Main Server

Workflow orchestration core: approval workflows, workflow notifications and
shipment mode resolution. Routes are organized in /routes/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import workflows, shipments, notifications, install_error_handlers

# ==================== SERVICES ====================
from services.portal_config import get_portal_status
from services.workflow_configuration import WorkflowConfigurationStore
from services.workflow_service import WorkflowStageEngine
from services.notifications import NotificationOrchestrator, NotificationQueue, NotificationDispatcher
from services.notifications.email_service import EmailService
from services.shipping import ShipmentModeResolver
from services.shipping.providers import default_registry

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "procurement_hub")

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    # Startup
    logger.info("Starting Procurement Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    await create_indexes()
    seeded = await WorkflowConfigurationStore(db).seed_default_configurations()
    if seeded:
        logger.info("Seeded %d default workflow configuration(s)", seeded)

    # Services
    email_service = EmailService(db=db)
    queue = NotificationQueue(db)
    engine = WorkflowStageEngine(db, notifier=NotificationOrchestrator(db, queue=queue))
    registry = default_registry()
    logger.info("Logistics providers registered: %s", ", ".join(registry.codes))

    # Initialize routers with database
    workflows.set_dependencies(db, engine)
    shipments.set_dependencies(db, ShipmentModeResolver(db, registry=registry))
    notifications.set_dependencies(db, NotificationDispatcher(db, queue, email_service))

    logger.info("Procurement Hub started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Procurement Hub...")
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    # Workflow configuration and ledger
    await db.workflow_configurations.create_index("id", unique=True)
    await db.workflow_configurations.create_index([("company_id", 1), ("entity_type", 1), ("is_active", 1)])
    # one active version per scope
    await db.workflow_configurations.create_index(
        [("company_id", 1), ("entity_type", 1)],
        unique=True,
        partialFilterExpression={"is_active": True},
        name="one_active_version_per_scope",
    )
    await db.workflow_approval_audits.create_index("id", unique=True)
    await db.workflow_approval_audits.create_index([("entity_type", 1), ("entity_id", 1)])
    await db.workflow_rejections.create_index("id", unique=True)
    await db.workflow_rejections.create_index([("entity_type", 1), ("entity_id", 1), ("is_resolved", 1)])
    await db.workflow_logs.create_index("event_id", unique=True)

    # Notifications
    await db.workflow_notification_mappings.create_index(
        [("company_id", 1), ("entity_type", 1), ("event_type", 1), ("is_active", 1)]
    )
    await db.notification_queue.create_index("queue_id", unique=True)
    await db.notification_queue.create_index([("status", 1), ("scheduled_for", 1)])
    await db.notification_logs.create_index("log_id", unique=True)
    await db.company_notification_configs.create_index("company_id", unique=True)

    # Shipping
    await db.shipment_service_providers.create_index("provider_id", unique=True)
    await db.shipment_service_providers.create_index("provider_ref_id", unique=True)
    await db.company_shipping_providers.create_index("company_shipping_provider_id", unique=True)
    await db.company_shipping_providers.create_index([("company_id", 1), ("provider_id", 1)], unique=True)
    await db.vendor_shipping_routings.create_index([("vendor_id", 1), ("company_id", 1), ("is_active", 1)])
    await db.shipments.create_index("shipment_id", unique=True)
    await db.shipments.create_index("pr_id")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title="Procurement Hub",
    description="Workflow orchestration for purchase requests, orders, GRNs, invoices and shipments",
    version="1.0.0",
    lifespan=lifespan
)

install_error_handlers(app)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(workflows.router)
api_router.include_router(shipments.router)
api_router.include_router(notifications.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Procurement Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "procurement-hub",
        "config": get_portal_status(),
    }

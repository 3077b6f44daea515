"""
Procurement Hub - Routes Package

Thin API routers over the workflow, notification and shipping services.
"""

from .workflows import router as workflows_router, set_dependencies as set_workflows_deps
from .shipments import router as shipments_router, set_dependencies as set_shipments_deps
from .notifications import router as notifications_router, set_dependencies as set_notifications_deps
from .errors import install_error_handlers

__all__ = [
    'workflows_router', 'set_workflows_deps',
    'shipments_router', 'set_shipments_deps',
    'notifications_router', 'set_notifications_deps',
    'install_error_handlers',
]

"""
Procurement Hub - Workflow Notifications

Components:
- events.py: WorkflowEventType and the event payload
- mappings.py: tiered mapping resolution into dispatch instructions
- recipients.py: resolver strategies per recipient tag
- queue.py: notification_queue lifecycle and delivery logs
- dispatcher.py: worker that delivers claimed entries
- orchestrator.py: event entry point used by the workflow engine
"""

from .events import WorkflowEventType, WorkflowEvent
from .mappings import NotificationMappingResolver, DispatchInstruction, NotificationChannel
from .queue import NotificationQueue
from .dispatcher import NotificationDispatcher, DeliveryFailure
from .orchestrator import NotificationOrchestrator

__all__ = [
    'WorkflowEventType',
    'WorkflowEvent',
    'NotificationMappingResolver',
    'DispatchInstruction',
    'NotificationChannel',
    'NotificationQueue',
    'NotificationDispatcher',
    'DeliveryFailure',
    'NotificationOrchestrator',
]

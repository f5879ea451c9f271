# =============================================================================
# sync_core/stores/__init__.py
# Domain stores used by screens
# =============================================================================

from .base_store import BaseStore, ServiceResult
from .appointment_store import AppointmentStore
from .task_store import TaskStore
from .message_store import MessageStore
from .reel_store import ReelStore

__all__ = [
    "BaseStore",
    "ServiceResult",
    "AppointmentStore",
    "TaskStore",
    "MessageStore",
    "ReelStore",
]

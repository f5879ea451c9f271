# =============================================================================
# sync_core/sync/__init__.py
# Mutation coordination and realtime reconciliation
# =============================================================================

from .screen_scope import ScreenScope
from .mutation_coordinator import (
    MutationAction,
    MutationCoordinator,
    MutationRecord,
    MutationState,
)
from .realtime_reconciler import RealtimeReconciler

__all__ = [
    "ScreenScope",
    "MutationAction",
    "MutationCoordinator",
    "MutationRecord",
    "MutationState",
    "RealtimeReconciler",
]

# =============================================================================
# sync_core/sync/screen_scope.py
# Lifetime of the screen that started a mutation
# =============================================================================

from __future__ import annotations
from typing import Any, Callable, List, Optional

from sync_core.cache import CacheChange, EntityCache
from sync_core.logging import get_logger
from sync_core.models import EntityKind

logger = get_logger(__name__)


class ScreenScope:
    """
    Callbacks tied to one mounted screen.

    Mutations started from a screen keep running after the screen goes away;
    only the callbacks registered here are skipped once it is unmounted.

    Usage:
        scope = ScreenScope("appointments")
        scope.on_settled(lambda record: st.toast(record.state.value))
        await coordinator.update(kind, entity_id, compute, scope=scope)
        scope.unmount()
    """

    def __init__(self, name: str = "screen"):
        self.name = name
        self.mounted = True
        self._settled_callbacks: List[Callable[[Any], None]] = []
        self._cleanups: List[Callable[[], None]] = []

    def on_settled(self, callback: Callable[[Any], None]) -> None:
        """Register a callback receiving each settled MutationRecord."""
        self._settled_callbacks.append(callback)

    def on_unmount(self, cleanup: Callable[[], None]) -> None:
        self._cleanups.append(cleanup)

    def observe(
        self,
        cache: EntityCache,
        callback: Callable[[CacheChange], None],
        kind: Optional[EntityKind] = None,
    ) -> None:
        """Forward cache changes (optionally for one kind) while mounted."""
        def observer(change: CacheChange) -> None:
            if self.mounted and (kind is None or change.kind == kind):
                callback(change)

        self.on_unmount(cache.subscribe(observer))

    def settled(self, record: Any) -> None:
        """Called by the coordinator when a mutation reaches a terminal state."""
        if not self.mounted:
            logger.debug(f"Screen '{self.name}' unmounted; skipping settle callbacks")
            return
        for callback in list(self._settled_callbacks):
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Error in settle callback for '{self.name}': {e}", exc_info=True)

    def unmount(self) -> None:
        if not self.mounted:
            return
        self.mounted = False
        for cleanup in self._cleanups:
            try:
                cleanup()
            except Exception as e:
                logger.error(f"Error unmounting '{self.name}': {e}", exc_info=True)
        self._cleanups.clear()
        self._settled_callbacks.clear()

# =============================================================================
# sync_core/sync/realtime_reconciler.py
# Applies pushed row changes to the Entity Cache
# =============================================================================
"""
RealtimeReconciler - keeps the cache in step with changes made elsewhere.

Every event is decoded and validated before it reaches the cache; malformed
rows are logged and dropped. Events for an entity with an in-flight mutation
are queued by the coordinator until that mutation settles. When a channel
drops, its kind is marked stale and a single resync runs on reconnect.

Usage:
    reconciler = RealtimeReconciler(cache, gateway, coordinator)
    await reconciler.watch(EntityKind.MESSAGE, Filter.where(receiver_id=user_id))
    ...
    await reconciler.close()
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional, Set

from sync_core.cache import EntityCache
from sync_core.errors import IntegrityError, SyncCoreError
from sync_core.gateway import (
    ChannelStatus,
    RealtimeEvent,
    RealtimeEventType,
    RemoteGateway,
    Subscription,
)
from sync_core.logging import get_logger
from sync_core.models import (
    ALL,
    Entity,
    EntityKind,
    Filter,
    Message,
    check_message_integrity,
    entity_from_row,
    merge_relations,
)
from .mutation_coordinator import MutationCoordinator

logger = get_logger(__name__)


@dataclass
class _Watch:
    kind: EntityKind
    filter: Filter
    subscription: Optional[Subscription] = None
    disconnected: bool = False
    resync: Optional[asyncio.Task] = None


class RealtimeReconciler:
    """Applies realtime events and resyncs after channel drops."""

    def __init__(
        self,
        cache: EntityCache,
        gateway: RemoteGateway,
        coordinator: MutationCoordinator,
    ):
        self.cache = cache
        self.gateway = gateway
        self.coordinator = coordinator
        self.dropped_events = 0
        self.applied_events = 0
        self._watches: Dict[EntityKind, _Watch] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def watch(self, kind: EntityKind, filter: Optional[Filter] = None) -> None:
        """
        Start applying changes of `kind` that match `filter`.

        One watch per kind; watching again with another filter replaces it.
        """
        kind = EntityKind(kind)
        filter = filter or ALL
        existing = self._watches.get(kind)
        if existing is not None:
            if existing.filter == filter:
                return
            await self.unwatch(kind)

        watch = _Watch(kind, filter)
        self._watches[kind] = watch
        self._closed = False
        try:
            watch.subscription = await self.gateway.subscribe(
                kind, filter, self.handle_event, self.handle_status
            )
        except BaseException:
            self._watches.pop(kind, None)
            raise
        logger.info(f"Watching {kind.value} ({filter})")

    async def unwatch(self, kind: EntityKind) -> None:
        kind = EntityKind(kind)
        watch = self._watches.pop(kind, None)
        if watch is None:
            return
        if watch.resync is not None and not watch.resync.done():
            watch.resync.cancel()
        if watch.subscription is not None:
            await watch.subscription.unsubscribe()

    async def close(self) -> None:
        """Unsubscribe everything; later events are ignored."""
        self._closed = True
        for kind in list(self._watches):
            try:
                await self.unwatch(kind)
            except SyncCoreError as e:
                logger.warning(f"Error closing {kind.value} watch: {e}")
        logger.info("Realtime reconciler closed")

    def watched_kinds(self) -> List[EntityKind]:
        return list(self._watches)

    async def wait_idle(self) -> None:
        """Wait for outstanding resync passes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _drop(self, event: RealtimeEvent, reason: str) -> None:
        self.dropped_events += 1
        logger.warning(f"Dropped {event.event_type.value} event for {event.kind.value}: {reason}")

    def handle_event(self, event: RealtimeEvent) -> None:
        """Validate one pushed change and apply it (possibly deferred)."""
        watch = self._watches.get(event.kind)
        if self._closed or watch is None:
            return

        if event.event_type is RealtimeEventType.DELETE:
            entity_id = event.entity_id
            if not entity_id:
                self._drop(event, "delete without id")
                return
            self.coordinator.after_settled(
                event.kind, entity_id, partial(self._apply_delete, event.kind, entity_id)
            )
            return

        try:
            record = entity_from_row(event.kind, event.row)
        except SyncCoreError as e:
            self._drop(event, e.message)
            return

        if not watch.filter.matches(record):
            logger.debug(f"Ignoring {event.kind.value}/{record.id} outside watch filter")
            return

        if isinstance(record, Message):
            try:
                self._check_message(record)
            except IntegrityError as e:
                self._drop(event, e.message)
                return

        self.coordinator.after_settled(
            event.kind, record.id, partial(self._apply_upsert, event.kind, record)
        )

    def _check_message(self, message: Message) -> None:
        conversation = self.cache.get(EntityKind.CONVERSATION, message.conversation_id)
        if conversation is None:
            logger.debug(f"Conversation {message.conversation_id} not cached; message accepted")
            return
        check_message_integrity(message, conversation)

    def _apply_upsert(self, kind: EntityKind, record: Entity) -> None:
        if self._closed:
            return
        self.cache.put(kind, merge_relations(self.cache.get(kind, record.id), record))
        self.applied_events += 1

    def _apply_delete(self, kind: EntityKind, entity_id: str) -> None:
        if self._closed:
            return
        self.cache.remove(kind, entity_id)
        self.applied_events += 1

    # =========================================================================
    # CHANNEL STATUS
    # =========================================================================

    def handle_status(self, kind: EntityKind, status: ChannelStatus) -> None:
        """
        Disconnect marks the kind stale; the next connect schedules exactly
        one resync of the watched filter.
        """
        watch = self._watches.get(EntityKind(kind))
        if self._closed or watch is None:
            return

        status = ChannelStatus(status)
        if status is ChannelStatus.DISCONNECTED:
            if not watch.disconnected:
                watch.disconnected = True
                self.cache.mark_stale(watch.kind)
                logger.warning(f"Realtime channel for {watch.kind.value} lost; marked stale")
            return

        if watch.disconnected:
            watch.disconnected = False
            if watch.resync is None or watch.resync.done():
                watch.resync = asyncio.ensure_future(self._resync(watch))
                self._tasks.add(watch.resync)
                watch.resync.add_done_callback(self._tasks.discard)

    async def _resync(self, watch: _Watch) -> None:
        logger.info(f"Resyncing {watch.kind.value} after reconnect")
        try:
            await self.coordinator.load(watch.kind, watch.filter, force=True)
        except SyncCoreError as e:
            # Kind stays stale; the next read refetches
            logger.error(f"Resync of {watch.kind.value} failed: {e}")

    def get_status_display(self) -> Dict[str, object]:
        """Get realtime status for UI display."""
        return {
            "watching": [k.value for k in self._watches],
            "disconnected": [k.value for k, w in self._watches.items() if w.disconnected],
            "applied_events": self.applied_events,
            "dropped_events": self.dropped_events,
        }

# =============================================================================
# sync_core/sync/mutation_coordinator.py
# Optimistic mutations with rollback
# =============================================================================
"""
MutationCoordinator - applies a change to the cache immediately, confirms it
with the backend, and either commits the server's version or restores the
exact pre-mutation state.

Features:
- One in-flight mutation per entity; later ones wait and run against the
  resolved state
- Realtime events for an entity with an in-flight mutation are queued
  until it settles (after_settled)
- Cancelling the caller does not abort a mutation already sent
- Read path (load) with per-filter caching and shared in-flight fetches
- Bounded history and status for UI display

Usage:
    coordinator = MutationCoordinator(cache, gateway)
    await coordinator.update(
        EntityKind.APPOINTMENT, appointment_id,
        lambda current: {"status": EventStatus.COMPLETED},
    )
"""

from __future__ import annotations
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple

from sync_core.cache import EntityCache
from sync_core.errors import NotFoundError
from sync_core.gateway import RemoteGateway
from sync_core.logging import get_logger
from sync_core.models import (
    ALL,
    Entity,
    EntityKind,
    Filter,
    is_temp_id,
    merge_relations,
    new_temp_id,
)
from .screen_scope import ScreenScope

logger = get_logger(__name__)

EntityKey = Tuple[EntityKind, str]
Compute = Callable[[Entity], Optional[Mapping[str, Any]]]


class MutationState(str, Enum):
    """Mutation lifecycle."""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass
class MutationRecord:
    """One mutation and its outcome."""
    mutation_id: str
    kind: EntityKind
    entity_id: str
    action: MutationAction
    state: MutationState = MutationState.PENDING
    server_id: Optional[str] = None
    error_message: Optional[str] = None
    noop: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not MutationState.PENDING


class MutationCoordinator:
    """Coordinates optimistic writes between the cache and the gateway."""

    HISTORY_SIZE = 100

    def __init__(self, cache: EntityCache, gateway: RemoteGateway, history_size: Optional[int] = None):
        self.cache = cache
        self.gateway = gateway
        self.history: Deque[MutationRecord] = deque(maxlen=history_size or self.HISTORY_SIZE)
        self._locks: Dict[EntityKey, asyncio.Lock] = {}
        self._queued: Dict[EntityKey, int] = {}
        self._pending: Dict[EntityKey, MutationRecord] = {}
        self._deferred: Dict[EntityKey, List[Callable[[], None]]] = {}
        self._loading: Dict[Tuple[EntityKind, Filter], asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._attached = True

    # =========================================================================
    # STATE
    # =========================================================================

    def is_pending(self, kind: EntityKind, entity_id: str) -> bool:
        return (EntityKind(kind), entity_id) in self._pending

    def pending_ids(self, kind: EntityKind) -> Set[str]:
        kind = EntityKind(kind)
        return {entity_id for k, entity_id in self._pending if k == kind}

    @property
    def attached(self) -> bool:
        return self._attached

    def after_settled(self, kind: EntityKind, entity_id: str, action: Callable[[], None]) -> bool:
        """
        Run `action` now, or once the in-flight mutation on the entity settles.

        Returns:
            True if the action ran immediately, False if it was queued
        """
        key = (EntityKind(kind), entity_id)
        if key in self._pending:
            self._deferred.setdefault(key, []).append(action)
            logger.debug(f"Deferred change for {key[0].value}/{entity_id} until its mutation settles")
            return False
        action()
        return True

    def detach(self) -> None:
        """
        Stop touching the cache.

        In-flight mutations still complete against the backend; their results
        and any queued realtime changes are discarded.
        """
        self._attached = False
        self._deferred.clear()
        logger.info(f"Coordinator detached with {len(self._pending)} mutation(s) in flight")

    async def wait_idle(self) -> None:
        """Wait for every in-flight mutation to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # CACHE ACCESS
    # =========================================================================

    def _put(self, kind: EntityKind, entity: Entity) -> None:
        if self._attached:
            self.cache.put(kind, entity)

    def _remove(self, kind: EntityKind, entity_id: str) -> None:
        if self._attached:
            self.cache.remove(kind, entity_id)

    def _flush_deferred(self, key: EntityKey) -> None:
        for action in self._deferred.pop(key, []):
            try:
                action()
            except Exception as e:
                logger.error(f"Error applying deferred change to {key[0].value}/{key[1]}: {e}", exc_info=True)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _run(
        self,
        kind: EntityKind,
        entity_id: str,
        action: MutationAction,
        body: Callable[[MutationRecord], Awaitable[Any]],
        scope: Optional[ScreenScope],
    ) -> Any:
        # The mutation runs in its own task so a cancelled caller cannot
        # interrupt it between the optimistic write and the settle.
        task = asyncio.ensure_future(self._execute((kind, entity_id), action, body, scope))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Mutation task finished with {type(task.exception()).__name__}")

    async def _execute(
        self,
        key: EntityKey,
        action: MutationAction,
        body: Callable[[MutationRecord], Awaitable[Any]],
        scope: Optional[ScreenScope],
    ) -> Any:
        kind, entity_id = key
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._queued[key] = self._queued.get(key, 0) + 1
        try:
            async with lock:
                record = MutationRecord(uuid.uuid4().hex, kind, entity_id, action)
                self._pending[key] = record
                self.history.append(record)
                logger.debug(f"Mutation {action.value} {kind.value}/{entity_id} pending")

                try:
                    result = await body(record)
                except BaseException as e:
                    record.state = MutationState.ROLLED_BACK
                    record.error_message = getattr(e, "message", None) or str(e) or type(e).__name__
                    logger.warning(
                        f"Mutation {action.value} {kind.value}/{entity_id} rolled back: "
                        f"{record.error_message}"
                    )
                    raise
                else:
                    record.state = MutationState.COMMITTED
                    logger.info(f"Mutation {action.value} {kind.value}/{entity_id} committed")
                    return result
                finally:
                    record.finished_at = datetime.now()
                    self._pending.pop(key, None)
                    self._flush_deferred(key)
                    if scope is not None:
                        scope.settled(record)
        finally:
            self._queued[key] -= 1
            if self._queued[key] == 0:
                del self._queued[key]
                self._locks.pop(key, None)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create(
        self,
        kind: EntityKind,
        optimistic: Entity,
        payload: Optional[Mapping[str, Any]] = None,
        scope: Optional[ScreenScope] = None,
    ) -> Entity:
        """
        Insert a record optimistically.

        Args:
            kind: Entity kind
            optimistic: Record shown until the server answers (a temporary id
                is assigned if it has none)
            payload: Attribute payload sent to the backend (default: the
                optimistic record's set attributes, without id)
            scope: Screen whose callbacks should see the outcome

        Returns:
            The server record, which replaces the optimistic one
        """
        kind = EntityKind(kind)
        if not is_temp_id(optimistic.id):
            optimistic = replace(optimistic, id=new_temp_id())
        body_payload = dict(payload) if payload is not None else optimistic.to_payload()

        async def body(record: MutationRecord) -> Entity:
            self._put(kind, optimistic)
            try:
                created = await self.gateway.create(kind, body_payload)
            except BaseException:
                self._remove(kind, optimistic.id)
                raise
            record.server_id = created.id
            self._remove(kind, optimistic.id)
            created = merge_relations(optimistic, created)
            self._put(kind, created)
            return created

        return await self._run(kind, optimistic.id, MutationAction.CREATE, body, scope)

    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        compute: Compute,
        scope: Optional[ScreenScope] = None,
    ) -> Optional[Entity]:
        """
        Apply a patch computed from the entity's resolved state.

        `compute` is called after any earlier mutation on the same entity has
        settled; it returns a patch dict, or None for no change (nothing is
        sent). A NotFoundError from the backend drops the entity from the
        cache and is re-raised.

        Returns:
            The server record (or the unchanged record for a no-op)
        """
        kind = EntityKind(kind)

        async def body(record: MutationRecord) -> Optional[Entity]:
            cached = self.cache.get(kind, entity_id)
            # An uncached entity is fetched but only enters the cache with the
            # optimistic write
            current = cached if cached is not None else await self._fetch_one(kind, entity_id)

            patch = compute(current)
            if not patch:
                record.noop = True
                return current

            optimistic = current.apply(patch)
            self._put(kind, optimistic)
            try:
                updated = await self.gateway.update(kind, entity_id, patch)
            except NotFoundError:
                self._remove(kind, entity_id)
                raise
            except BaseException:
                # Restore the exact snapshot
                if cached is None:
                    self._remove(kind, entity_id)
                else:
                    self._put(kind, cached)
                raise
            updated = merge_relations(current, updated)
            self._put(kind, updated)
            return updated

        return await self._run(kind, entity_id, MutationAction.UPDATE, body, scope)

    async def remove(
        self,
        kind: EntityKind,
        entity_id: str,
        scope: Optional[ScreenScope] = None,
    ) -> None:
        """
        Delete optimistically. An entity already gone server-side counts as
        removed.
        """
        kind = EntityKind(kind)

        async def body(record: MutationRecord) -> None:
            current = self.cache.get(kind, entity_id)
            self._remove(kind, entity_id)
            try:
                await self.gateway.remove(kind, entity_id)
            except NotFoundError:
                logger.info(f"{kind.value}/{entity_id} was already removed")
            except BaseException:
                if current is not None:
                    self._put(kind, current)
                raise

        await self._run(kind, entity_id, MutationAction.REMOVE, body, scope)

    async def _fetch_one(self, kind: EntityKind, entity_id: str) -> Entity:
        records = await self.gateway.fetch(kind, Filter.where(id=entity_id))
        if not records:
            raise NotFoundError(f"{kind.value} {entity_id} not found", kind=kind.value, entity_id=entity_id)
        return records[0]

    # =========================================================================
    # READS
    # =========================================================================

    async def load(
        self,
        kind: EntityKind,
        filter: Optional[Filter] = None,
        force: bool = False,
    ) -> List[Entity]:
        """
        Listing for `filter`, fetched only when not loaded (or stale, or forced).

        Rows of entities with an in-flight mutation are left to that
        mutation's outcome. Concurrent loads of the same filter share one
        fetch.
        """
        kind = EntityKind(kind)
        filter = filter or ALL
        if not force and self.cache.is_loaded(kind, filter):
            return self.cache.list(kind, filter)

        key = (kind, filter)
        shared = self._loading.get(key)
        if shared is None:
            shared = asyncio.ensure_future(self._fetch_and_reconcile(kind, filter))
            self._loading[key] = shared
            shared.add_done_callback(lambda _: self._loading.pop(key, None))
        await asyncio.shield(shared)
        return self.cache.list(kind, filter)

    async def _fetch_and_reconcile(self, kind: EntityKind, filter: Filter) -> None:
        started = self.cache.version
        records = await self.gateway.fetch(kind, filter)
        if not self._attached:
            return
        if self.cache.invalidated_since(kind, started):
            logger.debug(f"Discarding {kind.value} fetch that started before an invalidation")
            return
        # Rows committed or pushed while the fetch was in flight are newer
        # than what it read
        skip = self.pending_ids(kind) | self.cache.written_since(kind, started)
        previous = {r.id: r for r in self.cache.list(kind, filter)}
        records = [merge_relations(previous.get(r.id), r) for r in records]
        self.cache.reconcile(kind, filter, records, skip_ids=skip)

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status_display(self) -> Dict[str, Any]:
        """Get mutation status for UI display."""
        committed = sum(1 for r in self.history if r.state is MutationState.COMMITTED)
        rolled_back = [r for r in self.history if r.state is MutationState.ROLLED_BACK]
        last_error = rolled_back[-1].error_message if rolled_back else None
        return {
            "pending": len(self._pending),
            "committed": committed,
            "rolled_back": len(rolled_back),
            "last_error": last_error,
            "attached": self._attached,
        }

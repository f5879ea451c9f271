# =============================================================================
# sync_core/cache/entity_cache.py
# In-memory Entity Cache shared by every screen
# =============================================================================
"""
EntityCache - keyed, in-memory copy of fetched rows, one map per entity kind.

The cache holds a borrowed copy of backend state; it can be invalidated at any
time (identity change, explicit refresh, realtime event). It is the only
shared mutable state in the data layer and it is only changed through the
methods below. Observers are notified synchronously after each change has
been applied, never before.

Usage:
    cache = EntityCache()
    unsubscribe = cache.subscribe(lambda change: print(change))
    cache.put(EntityKind.APPOINTMENT, appointment)
    cache.list(EntityKind.APPOINTMENT, Filter.where(owner_id=client_id))
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pandas as pd

from sync_core.logging import get_logger
from sync_core.models import ALL, Entity, EntityKind, Filter, entity_type

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheChange:
    """Notification sent to observers after a cache change."""
    kind: EntityKind
    action: str  # put, remove, reconcile, invalidate, stale
    ids: Tuple[str, ...] = ()


CacheObserver = Callable[[CacheChange], None]


def order_records(kind: EntityKind, records: Iterable[Entity]) -> List[Entity]:
    """
    Sort records in the kind's declared order.

    Ties are broken by id; records without a value for the ordering
    attribute go last.
    """
    attr, descending = entity_type(kind).ORDER_BY
    by_id = sorted(records, key=lambda r: r.id)
    present = [r for r in by_id if getattr(r, attr) is not None]
    missing = [r for r in by_id if getattr(r, attr) is None]
    # list.sort is stable, also with reverse=True
    present.sort(key=lambda r: getattr(r, attr), reverse=descending)
    return present + missing


class EntityCache:
    """Keyed in-memory store of entity records, per kind."""

    def __init__(self):
        self._entries: Dict[EntityKind, Dict[str, Entity]] = {k: {} for k in EntityKind}
        self._loaded: Dict[EntityKind, Dict[Filter, datetime]] = {k: {} for k in EntityKind}
        self._stale: Set[EntityKind] = set()
        self._observers: List[CacheObserver] = []
        # Write version per id (put/remove) and per kind (invalidate), so a
        # fetch that started earlier can tell which rows it must not touch
        self._version = 0
        self._written: Dict[EntityKind, Dict[str, int]] = {k: {} for k in EntityKind}
        self._invalidated: Dict[EntityKind, int] = {k: 0 for k in EntityKind}

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        return self._entries[EntityKind(kind)].get(entity_id)

    def list(self, kind: EntityKind, filter: Optional[Filter] = None) -> List[Entity]:
        kind = EntityKind(kind)
        predicate = filter or ALL
        return order_records(
            kind,
            (r for r in self._entries[kind].values() if predicate.matches(r)),
        )

    def count(self, kind: EntityKind) -> int:
        return len(self._entries[EntityKind(kind)])

    def ids(self, kind: EntityKind) -> Set[str]:
        return set(self._entries[EntityKind(kind)])

    def is_stale(self, kind: EntityKind) -> bool:
        return EntityKind(kind) in self._stale

    def is_loaded(self, kind: EntityKind, filter: Optional[Filter] = None) -> bool:
        """True when `filter` was fetched for `kind` and the kind is not stale."""
        kind = EntityKind(kind)
        return kind not in self._stale and (filter or ALL) in self._loaded[kind]

    @property
    def version(self) -> int:
        """Current write version; take it before a fetch starts."""
        return self._version

    def written_since(self, kind: EntityKind, version: int) -> Set[str]:
        """Ids put or removed after `version`."""
        return {
            entity_id
            for entity_id, written in self._written[EntityKind(kind)].items()
            if written > version
        }

    def invalidated_since(self, kind: EntityKind, version: int) -> bool:
        return self._invalidated[EntityKind(kind)] > version

    def to_dataframe(self, kind: EntityKind, filter: Optional[Filter] = None) -> pd.DataFrame:
        """Listing as a DataFrame (stored attributes only), for table screens."""
        kind = EntityKind(kind)
        columns = list(entity_type(kind).attributes())
        rows = [
            {k: (v.value if isinstance(v, Enum) else v) for k, v in record.as_dict().items()}
            for record in self.list(kind, filter)
        ]
        return pd.DataFrame(rows, columns=columns)

    # =========================================================================
    # WRITES
    # =========================================================================

    def put(self, kind: EntityKind, entity: Entity) -> None:
        """Upsert by id."""
        kind = EntityKind(kind)
        expected = entity_type(kind)
        if not isinstance(entity, expected):
            raise TypeError(
                f"Cannot store {type(entity).__name__} under {kind.value}; "
                f"expected {expected.__name__}"
            )
        self._entries[kind][entity.id] = entity
        self._mark_written(kind, entity.id)
        self._notify(CacheChange(kind, "put", (entity.id,)))

    def remove(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        kind = EntityKind(kind)
        removed = self._entries[kind].pop(entity_id, None)
        self._mark_written(kind, entity_id)
        if removed is not None:
            self._notify(CacheChange(kind, "remove", (entity_id,)))
        return removed

    def reconcile(
        self,
        kind: EntityKind,
        filter: Optional[Filter],
        records: Iterable[Entity],
        skip_ids: Iterable[str] = (),
    ) -> Tuple[str, ...]:
        """
        Replace the cached rows matching `filter` with a fetched result set.

        Cached rows that match the filter but are missing from `records` are
        dropped. Ids in `skip_ids` are left exactly as they are.

        Returns:
            Ids that were added, replaced or dropped
        """
        kind = EntityKind(kind)
        predicate = filter or ALL
        skipped = set(skip_ids)
        entries = self._entries[kind]
        fresh = {record.id: record for record in records}

        changed: Set[str] = set()
        for entity_id, cached in list(entries.items()):
            if entity_id in skipped or entity_id in fresh:
                continue
            if predicate.matches(cached):
                del entries[entity_id]
                changed.add(entity_id)

        for entity_id, record in fresh.items():
            if entity_id in skipped:
                continue
            if entries.get(entity_id) != record:
                changed.add(entity_id)
            entries[entity_id] = record

        self._loaded[kind][predicate] = datetime.now()
        self._stale.discard(kind)
        self._notify(CacheChange(kind, "reconcile", tuple(sorted(changed))))
        return tuple(sorted(changed))

    def mark_stale(self, kind: EntityKind) -> None:
        """Flag a kind as possibly missing events; the next read refetches."""
        kind = EntityKind(kind)
        self._stale.add(kind)
        self._loaded[kind].clear()
        self._notify(CacheChange(kind, "stale"))

    def invalidate(self, kind: Optional[EntityKind] = None) -> None:
        """Drop everything for `kind`, or for every kind when omitted."""
        kinds = list(EntityKind) if kind is None else [EntityKind(kind)]
        for k in kinds:
            dropped = tuple(sorted(self._entries[k]))
            self._entries[k].clear()
            self._loaded[k].clear()
            self._stale.discard(k)
            self._version += 1
            self._written[k].clear()
            self._invalidated[k] = self._version
            self._notify(CacheChange(k, "invalidate", dropped))
        logger.debug(f"Cache invalidated: {[k.value for k in kinds]}")

    def _mark_written(self, kind: EntityKind, entity_id: str) -> None:
        self._version += 1
        self._written[kind][entity_id] = self._version

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def subscribe(self, observer: CacheObserver) -> Callable[[], None]:
        """
        Register an observer; returns a callable that unregisters it.
        """
        if observer not in self._observers:
            self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, change: CacheChange) -> None:
        """Notify all registered observers."""
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception as e:
                logger.error(f"Error in cache observer: {e}", exc_info=True)

    def get_status_display(self) -> Dict[str, Any]:
        """Get cache status for UI display."""
        return {
            "counts": {k.value: len(v) for k, v in self._entries.items() if v},
            "stale": sorted(k.value for k in self._stale),
            "loaded": {
                k.value: [str(f) for f in filters]
                for k, filters in self._loaded.items()
                if filters
            },
            "observers": len(self._observers),
        }

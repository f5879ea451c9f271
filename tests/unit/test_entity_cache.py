# =============================================================================
# tests/unit/test_entity_cache.py
# Unit Tests for EntityCache
# =============================================================================

import pytest
import pandas as pd

from sync_core.cache import EntityCache
from sync_core.models import EntityKind, Filter, entity_from_row


def _appointment(row_factory, entity_id, client_id, day=1, status="booked"):
    return entity_from_row(EntityKind.APPOINTMENT, row_factory(entity_id, client_id, day=day, status=status))


class TestCacheReadsAndWrites:
    """Test put/get/list/remove"""

    def test_put_then_get(self, cache, appointment_row):
        record = _appointment(appointment_row, "apt-1", "client-1")
        cache.put(EntityKind.APPOINTMENT, record)

        assert cache.get(EntityKind.APPOINTMENT, "apt-1") is record
        assert cache.count(EntityKind.APPOINTMENT) == 1

    def test_put_rejects_wrong_record_type(self, cache, appointment_row):
        record = _appointment(appointment_row, "apt-1", "client-1")
        with pytest.raises(TypeError):
            cache.put(EntityKind.TASK, record)

    def test_list_is_ordered_and_filtered(self, cache, appointment_row):
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-late", "client-1", day=5))
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-early", "client-1", day=1))
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-other", "client-2", day=3))

        ordered = [r.id for r in cache.list(EntityKind.APPOINTMENT)]
        mine = [r.id for r in cache.list(EntityKind.APPOINTMENT, Filter.where(owner_id="client-1"))]

        assert ordered == ["apt-early", "apt-other", "apt-late"]
        assert mine == ["apt-early", "apt-late"]

    def test_remove_missing_is_silent(self, cache):
        changes = []
        cache.subscribe(changes.append)

        assert cache.remove(EntityKind.APPOINTMENT, "nope") is None
        assert changes == []

    def test_to_dataframe_uses_plain_values(self, cache, appointment_row):
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))

        df = cache.to_dataframe(EntityKind.APPOINTMENT)

        assert isinstance(df, pd.DataFrame)
        assert list(df["status"]) == ["booked"]
        assert "owner" not in df.columns

    def test_empty_dataframe_keeps_columns(self, cache):
        df = cache.to_dataframe(EntityKind.TASK)
        assert df.empty
        assert "due_date" in df.columns


class TestCacheReconcile:
    """Test replacing a filter's rows with a fetched result set"""

    def test_reconcile_drops_rows_missing_from_result(self, cache, appointment_row):
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-gone", "client-1"))
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-other", "client-2"))
        fresh = [_appointment(appointment_row, "apt-1", "client-1")]

        changed = cache.reconcile(EntityKind.APPOINTMENT, Filter.where(owner_id="client-1"), fresh)

        assert set(changed) == {"apt-gone", "apt-1"}
        assert cache.ids(EntityKind.APPOINTMENT) == {"apt-1", "apt-other"}

    def test_reconcile_leaves_skipped_ids_alone(self, cache, appointment_row):
        optimistic = _appointment(appointment_row, "apt-1", "client-1", status="cancelled_by_client")
        cache.put(EntityKind.APPOINTMENT, optimistic)

        cache.reconcile(
            EntityKind.APPOINTMENT, None,
            [_appointment(appointment_row, "apt-1", "client-1")],
            skip_ids={"apt-1"},
        )

        assert cache.get(EntityKind.APPOINTMENT, "apt-1") is optimistic

    def test_reconcile_marks_filter_loaded(self, cache):
        f = Filter.where(owner_id="client-1")
        assert not cache.is_loaded(EntityKind.APPOINTMENT, f)

        cache.reconcile(EntityKind.APPOINTMENT, f, [])

        assert cache.is_loaded(EntityKind.APPOINTMENT, f)
        assert not cache.is_loaded(EntityKind.APPOINTMENT)


class TestWriteVersions:
    """Test what a fetch that started earlier is allowed to overwrite"""

    def test_ids_written_after_version(self, cache, appointment_row):
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))
        started = cache.version

        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-2", "client-2"))
        cache.remove(EntityKind.APPOINTMENT, "apt-3")

        assert cache.written_since(EntityKind.APPOINTMENT, started) == {"apt-2", "apt-3"}
        assert cache.written_since(EntityKind.TASK, started) == set()

    def test_invalidation_is_per_kind(self, cache):
        started = cache.version

        cache.invalidate(EntityKind.MESSAGE)

        assert cache.invalidated_since(EntityKind.MESSAGE, started)
        assert not cache.invalidated_since(EntityKind.APPOINTMENT, started)
        assert not cache.invalidated_since(EntityKind.MESSAGE, cache.version)


class TestCacheInvalidation:
    """Test stale marking, invalidation and observers"""

    def test_mark_stale_forgets_loaded_filters(self, cache):
        cache.reconcile(EntityKind.TASK, None, [])
        cache.mark_stale(EntityKind.TASK)

        assert cache.is_stale(EntityKind.TASK)
        assert not cache.is_loaded(EntityKind.TASK)

        cache.reconcile(EntityKind.TASK, None, [])
        assert not cache.is_stale(EntityKind.TASK)

    def test_invalidate_all_kinds(self, cache, appointment_row):
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))
        cache.reconcile(EntityKind.REEL, None, [])

        cache.invalidate()

        assert cache.count(EntityKind.APPOINTMENT) == 0
        assert not cache.is_loaded(EntityKind.REEL)

    def test_observers_see_changes_after_they_apply(self, cache, appointment_row):
        seen = []
        cache.subscribe(lambda change: seen.append(
            (change.action, change.ids, cache.get(EntityKind.APPOINTMENT, "apt-1") is not None)
        ))

        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))
        cache.remove(EntityKind.APPOINTMENT, "apt-1")

        assert seen == [("put", ("apt-1",), True), ("remove", ("apt-1",), False)]

    def test_failing_observer_does_not_break_others(self, cache, appointment_row):
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        cache.subscribe(broken)
        cache.subscribe(seen.append)
        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))

        assert len(seen) == 1

    def test_unsubscribe(self, cache, appointment_row):
        seen = []
        unsubscribe = cache.subscribe(seen.append)
        unsubscribe()

        cache.put(EntityKind.APPOINTMENT, _appointment(appointment_row, "apt-1", "client-1"))

        assert seen == []

# =============================================================================
# tests/unit/test_models.py
# Unit Tests for entity records, filters and status rules
# =============================================================================

import pytest
from datetime import datetime, timedelta, timezone

from sync_core.errors import (
    IntegrityError,
    InvalidTransitionError,
    MalformedRowError,
    ValidationError,
)
from sync_core.models import (
    ALL,
    AssignableTask,
    Condition,
    Conversation,
    EntityKind,
    EventStatus,
    Filter,
    Identity,
    Message,
    Role,
    SchedulableEvent,
    TaskStatus,
    cancellation_status_for,
    check_event_transition,
    check_message_integrity,
    check_task_transition,
    effective_status,
    encode_payload,
    entity_from_row,
    is_overdue,
    is_temp_id,
    merge_relations,
    new_temp_id,
    parse_timestamp,
)

NOW = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRowCodec:
    """Test decoding wire rows into records and back"""

    def test_appointment_columns_are_renamed(self, appointment_row):
        """Wire column names map onto record attributes"""
        record = entity_from_row(EntityKind.APPOINTMENT, appointment_row("apt-1", "client-1"))

        assert isinstance(record, SchedulableEvent)
        assert record.owner_id == "client-1"
        assert record.type_id == "type-1"
        assert record.status is EventStatus.BOOKED
        assert record.start_time.tzinfo is not None

    def test_embedded_relation_is_decoded(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        row["client"] = {"id": "client-1", "role": "client", "full_name": "Casey Client"}

        record = entity_from_row(EntityKind.APPOINTMENT, row)

        assert isinstance(record.owner, Identity)
        assert record.owner.display_name == "Casey Client"

    def test_missing_required_column_is_malformed(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        del row["start_time"]

        with pytest.raises(MalformedRowError) as exc_info:
            entity_from_row(EntityKind.APPOINTMENT, row)
        assert exc_info.value.details["column"] == "start_time"

    def test_null_in_required_column_is_malformed(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        row["start_time"] = None

        with pytest.raises(MalformedRowError) as exc_info:
            entity_from_row(EntityKind.APPOINTMENT, row)
        assert exc_info.value.details["column"] == "start_time"

    def test_null_in_optional_column_is_accepted(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        row["created_at"] = None

        assert entity_from_row(EntityKind.APPOINTMENT, row).created_at is None

    def test_wrongly_typed_value_is_malformed(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        row["end_time"] = row["start_time"] = 1893484800

        with pytest.raises(MalformedRowError):
            entity_from_row(EntityKind.APPOINTMENT, row)

    def test_unknown_status_is_malformed(self, appointment_row):
        row = appointment_row("apt-1", "client-1", status="rescheduled")

        with pytest.raises(MalformedRowError):
            entity_from_row(EntityKind.APPOINTMENT, row)

    def test_end_before_start_violates_invariant(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        row["end_time"], row["start_time"] = row["start_time"], row["end_time"]

        with pytest.raises(ValidationError):
            entity_from_row(EntityKind.APPOINTMENT, row)

    def test_to_row_round_trips_column_names(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        record = entity_from_row(EntityKind.APPOINTMENT, row)

        encoded = record.to_row()

        assert encoded["client_id"] == "client-1"
        assert encoded["status"] == "booked"
        assert "client" not in encoded

    def test_encode_payload_rejects_unknown_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            encode_payload(EntityKind.APPOINTMENT, {"owner_id": "c", "colour": "red"})
        assert exc_info.value.field == "colour"

    def test_profile_without_full_name_uses_username(self):
        record = entity_from_row(EntityKind.PROFILE, {"id": "u-1", "role": "client", "username": "casey"})
        assert record.display_name == "casey"
        assert record.role is Role.COUNTERPARTY

    def test_message_only_allows_read_flag_changes(self):
        message = Message("m-1", "conv-1", "a", "b", "hi", NOW)

        assert message.apply({"is_read": True}).is_read is True
        with pytest.raises(ValidationError):
            message.apply({"content": "edited"})

    def test_conversation_needs_two_participants(self):
        with pytest.raises(ValidationError):
            Conversation("conv-1", "a", "a")

    def test_submission_requires_submitted_status(self):
        with pytest.raises(ValidationError):
            AssignableTask(
                "task-1", "client-1", "Journal", "text_entry", NOW,
                status=TaskStatus.PENDING, submission_content="done",
            )


class TestHelpers:
    """Test id and timestamp helpers"""

    def test_temp_ids(self):
        assert is_temp_id(new_temp_id())
        assert not is_temp_id("srv-1")
        assert not is_temp_id(None)

    def test_parse_timestamp_accepts_zulu_suffix(self):
        parsed = parse_timestamp("2030-01-01T10:00:00Z")
        assert parsed == datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_naive_timestamp_as_utc(self):
        assert parse_timestamp("2030-01-01T10:00:00").tzinfo == timezone.utc

    def test_merge_relations_keeps_previous_join(self, appointment_row):
        row = appointment_row("apt-1", "client-1")
        with_owner = entity_from_row(EntityKind.APPOINTMENT, {**row, "client": {"id": "client-1"}})
        fresh = entity_from_row(EntityKind.APPOINTMENT, {**row, "status": "completed"})

        merged = merge_relations(with_owner, fresh)

        assert merged.status is EventStatus.COMPLETED
        assert merged.owner is not None


class TestFilter:
    """Test the hashable filter used as cache key and query"""

    def test_where_is_order_independent(self):
        assert Filter.where(a=1, b=2) == Filter.where(b=2, a=1)
        assert hash(Filter.where(a=1, b=2)) == hash(Filter.where(b=2, a=1))

    def test_matches_conditions_and_any_of(self):
        message = Message("m-1", "conv-1", "a", "b", "hi", NOW)
        mine = ALL.either(Condition("sender_id", "eq", "b"), Condition("receiver_id", "eq", "b"))
        theirs = ALL.either(Condition("sender_id", "eq", "c"), Condition("receiver_id", "eq", "c"))

        assert mine.matches(message)
        assert not theirs.matches(message)
        assert Filter.where(conversation_id="conv-1").matches(message)

    def test_value_of(self):
        f = Filter.where(owner_id="client-1").gte("due_date", NOW)
        assert f.value_of("owner_id") == "client-1"
        assert f.value_of("missing") is None

    def test_unsupported_operator(self):
        with pytest.raises(ValueError):
            Condition("title", "like", "x")


class TestEventTransitions:
    """Test appointment status rules"""

    def test_booked_can_be_cancelled_or_completed(self):
        assert check_event_transition(EventStatus.BOOKED, EventStatus.COMPLETED)
        assert check_event_transition(EventStatus.BOOKED, EventStatus.CANCELLED_BY_OPERATOR)

    def test_same_status_is_noop(self):
        assert check_event_transition(EventStatus.BOOKED, EventStatus.BOOKED) is False

    @pytest.mark.parametrize("terminal", [
        EventStatus.COMPLETED,
        EventStatus.CANCELLED_BY_COUNTERPARTY,
        EventStatus.CANCELLED_BY_OPERATOR,
    ])
    def test_terminal_statuses_are_final(self, terminal):
        with pytest.raises(InvalidTransitionError):
            check_event_transition(terminal, EventStatus.BOOKED)

    def test_cancellation_status_depends_on_role(self):
        assert cancellation_status_for(Role.COUNTERPARTY) is EventStatus.CANCELLED_BY_COUNTERPARTY
        assert cancellation_status_for(Role.OPERATOR) is EventStatus.CANCELLED_BY_OPERATOR


class TestTaskRules:
    """Test task transitions and the overdue derivation"""

    def _task(self, status, due):
        return AssignableTask("task-1", "client-1", "Journal", "text_entry", due, status=TaskStatus(status))

    def test_pending_past_due_is_overdue(self):
        """A stored pending task past its due date is classified overdue"""
        task = self._task("pending", NOW - timedelta(days=1))

        assert is_overdue(task, NOW)
        assert effective_status(task, NOW) is TaskStatus.OVERDUE

    def test_stored_overdue_agrees_with_derivation(self):
        """Stored pending and stored overdue get the same answer"""
        pending = self._task("pending", NOW - timedelta(days=1))
        stored_overdue = self._task("overdue", NOW - timedelta(days=1))

        assert is_overdue(pending, NOW) == is_overdue(stored_overdue, NOW) is True
        assert effective_status(pending, NOW) is effective_status(stored_overdue, NOW)

    def test_stored_overdue_before_due_date_is_pending(self):
        task = self._task("overdue", NOW + timedelta(days=1))
        assert not is_overdue(task, NOW)
        assert effective_status(task, NOW) is TaskStatus.PENDING

    def test_submitted_task_is_never_overdue(self):
        task = AssignableTask(
            "task-1", "client-1", "Journal", "text_entry", NOW - timedelta(days=3),
            status=TaskStatus.SUBMITTED, submission_content="done",
        )
        assert not is_overdue(task, NOW)
        assert effective_status(task, NOW) is TaskStatus.SUBMITTED

    def test_overdue_is_never_written(self):
        with pytest.raises(InvalidTransitionError):
            check_task_transition(TaskStatus.PENDING, TaskStatus.OVERDUE)

    def test_task_transitions(self):
        assert check_task_transition(TaskStatus.PENDING, TaskStatus.SUBMITTED)
        assert check_task_transition(TaskStatus.OVERDUE, TaskStatus.SUBMITTED)
        assert check_task_transition(TaskStatus.SUBMITTED, TaskStatus.REVIEWED)
        with pytest.raises(InvalidTransitionError):
            check_task_transition(TaskStatus.REVIEWED, TaskStatus.SUBMITTED)


class TestMessageIntegrity:
    """Test message vs conversation consistency"""

    def test_matching_participants_pass(self):
        conversation = Conversation("conv-1", "a", "b")
        check_message_integrity(Message("m-1", "conv-1", "b", "a", "hi", NOW), conversation)

    def test_foreign_sender_is_rejected(self):
        conversation = Conversation("conv-1", "a", "b")
        with pytest.raises(IntegrityError):
            check_message_integrity(Message("m-1", "conv-1", "c", "a", "hi", NOW), conversation)

    def test_wrong_conversation_is_rejected(self):
        conversation = Conversation("conv-1", "a", "b")
        with pytest.raises(IntegrityError):
            check_message_integrity(Message("m-1", "conv-2", "a", "b", "hi", NOW), conversation)

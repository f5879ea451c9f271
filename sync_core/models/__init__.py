# =============================================================================
# sync_core/models/__init__.py
# Entity records, filters and rules
# =============================================================================

from .entities import (
    EntityKind,
    Role,
    EventStatus,
    TaskStatus,
    TaskKind,
    ResultType,
    Entity,
    Identity,
    AppointmentType,
    SchedulableEvent,
    TaskTemplate,
    AssignableTask,
    Conversation,
    Message,
    Reel,
    Comment,
    Like,
    ENTITY_TYPES,
    entity_type,
    entity_from_row,
    encode_payload,
    encode_value,
    merge_relations,
    new_temp_id,
    is_temp_id,
    parse_timestamp,
    utcnow,
)

from .query import Condition, Filter, ALL

from .rules import (
    check_event_transition,
    check_task_transition,
    cancellation_status_for,
    check_message_integrity,
    effective_status,
    is_open,
    is_overdue,
)

__all__ = [
    # Kinds and enums
    "EntityKind",
    "Role",
    "EventStatus",
    "TaskStatus",
    "TaskKind",
    "ResultType",
    # Records
    "Entity",
    "Identity",
    "AppointmentType",
    "SchedulableEvent",
    "TaskTemplate",
    "AssignableTask",
    "Conversation",
    "Message",
    "Reel",
    "Comment",
    "Like",
    # Codec
    "ENTITY_TYPES",
    "entity_type",
    "entity_from_row",
    "encode_payload",
    "encode_value",
    "merge_relations",
    "new_temp_id",
    "is_temp_id",
    "parse_timestamp",
    "utcnow",
    # Filters
    "Condition",
    "Filter",
    "ALL",
    # Rules
    "check_event_transition",
    "check_task_transition",
    "cancellation_status_for",
    "check_message_integrity",
    "effective_status",
    "is_open",
    "is_overdue",
]

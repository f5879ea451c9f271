# =============================================================================
# sync_core/models/entities.py
# Typed entity records and their row codecs
# =============================================================================
"""
Entity records for every kind the client caches.

Records are frozen dataclasses: a mutation always builds a new record, so a
snapshot taken before an optimistic write can be restored exactly. Rows coming
from the backend are decoded with `from_row` (the only place wire shapes are
trusted), and `to_row` encodes a record back to column names.
"""

from __future__ import annotations
import copy
import uuid
from dataclasses import MISSING, dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Iterable, Mapping, Optional, Tuple, Type

from sync_core.errors import MalformedRowError, ValidationError


# =============================================================================
# KINDS AND ENUMS
# =============================================================================

class EntityKind(str, Enum):
    """Entity kinds; the value is the backend table name."""
    PROFILE = "profiles"
    APPOINTMENT_TYPE = "appointment_types"
    APPOINTMENT = "appointments"
    TASK_TEMPLATE = "task_templates"
    TASK = "assigned_tasks"
    CONVERSATION = "conversations"
    MESSAGE = "messages"
    REEL = "reels"
    COMMENT = "comments"
    LIKE = "likes"

    @property
    def table(self) -> str:
        return self.value


class Role(str, Enum):
    OPERATOR = "doctor"
    COUNTERPARTY = "client"


class EventStatus(str, Enum):
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED_BY_COUNTERPARTY = "cancelled_by_client"
    CANCELLED_BY_OPERATOR = "cancelled_by_doctor"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.BOOKED

    @property
    def is_cancelled(self) -> bool:
        return self in (
            EventStatus.CANCELLED_BY_COUNTERPARTY,
            EventStatus.CANCELLED_BY_OPERATOR,
        )


class TaskStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    REVIEWED = "reviewed"
    OVERDUE = "overdue"  # legacy stored value; see rules.effective_status


class TaskKind(str, Enum):
    TEXT = "text_entry"
    FILE = "file_upload"
    CHECKLIST = "checkbox_list"
    LINK = "external_link"


class ResultType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    HTML_EMBED = "html_embed"
    VIDEO_URL = "video_url"


# =============================================================================
# VALUE HELPERS
# =============================================================================

TEMP_ID_PREFIX = "tmp-"


def new_temp_id() -> str:
    """Id for an optimistic record that the server has not confirmed yet."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(entity_id: Optional[str]) -> bool:
    return bool(entity_id) and entity_id.startswith(TEMP_ID_PREFIX)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a wire timestamp into an aware datetime.

    Accepts ISO-8601 strings (with or without a trailing "Z"), dates and
    datetimes. Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Cannot parse timestamp from {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def encode_value(value: Any) -> Any:
    """Encode a record attribute for the wire."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    if isinstance(value, tuple):
        return [encode_value(v) for v in value]
    return value


def _copy_json(value: Any) -> Any:
    return copy.deepcopy(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "t", "1")
    return bool(value)


def _is_required(f) -> bool:
    """No default and not declared Optional, so null is not a valid value."""
    if f.default is not MISSING or f.default_factory is not MISSING:
        return False
    return "Optional" not in str(f.type)


# =============================================================================
# BASE RECORD
# =============================================================================

class Entity:
    """
    Mixin for entity records.

    Subclasses declare:
        KIND        - the EntityKind they belong to
        COLUMNS     - attribute -> column, where the names differ
        CONVERTERS  - attribute -> callable used when decoding a row
        RELATIONS   - attribute -> (embedded key, record class) for joins
        ORDER_BY    - (attribute, descending) for cache listings
    """

    KIND: ClassVar[EntityKind]
    COLUMNS: ClassVar[Dict[str, str]] = {}
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {}
    RELATIONS: ClassVar[Dict[str, Tuple[str, type]]] = {}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("id", False)
    OWNER_FIELD: ClassVar[Optional[str]] = None

    @classmethod
    def column_for(cls, attr: str) -> str:
        return cls.COLUMNS.get(attr, attr)

    @classmethod
    def attributes(cls) -> Tuple[str, ...]:
        """Stored attribute names (relations excluded)."""
        return tuple(f.name for f in fields(cls) if f.name not in cls.RELATIONS)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        """Decode a backend row, raising MalformedRowError on bad shapes."""
        if not isinstance(row, Mapping):
            raise MalformedRowError(
                f"Expected a mapping row, got {type(row).__name__}",
                kind=cls.KIND.value,
            )

        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name in cls.RELATIONS:
                key, related = cls.RELATIONS[f.name]
                nested = row.get(key)
                if isinstance(nested, Mapping):
                    values[f.name] = related.from_row(nested)
                continue

            column = cls.column_for(f.name)
            if column not in row:
                if f.default is MISSING and f.default_factory is MISSING:
                    raise MalformedRowError(
                        f"Missing column '{column}'",
                        kind=cls.KIND.value,
                        column=column,
                    )
                continue

            raw = row[column]
            converter = cls.CONVERTERS.get(f.name)
            if raw is None and _is_required(f):
                raise MalformedRowError(
                    f"Column '{column}' is null",
                    kind=cls.KIND.value,
                    column=column,
                )
            if raw is not None and converter is not None:
                try:
                    raw = converter(raw)
                except (TypeError, ValueError) as e:
                    raise MalformedRowError(
                        f"Bad value for '{column}': {e}",
                        kind=cls.KIND.value,
                        column=column,
                    )
            values[f.name] = raw

        if not values.get("id"):
            raise MalformedRowError("Row has no id", kind=cls.KIND.value, column="id")

        try:
            return cls(**values)
        except (TypeError, ValueError) as e:
            raise MalformedRowError(f"Cannot build record: {e}", kind=cls.KIND.value)

    def to_row(self, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        """Encode to column names (relations are never sent)."""
        skipped = set(exclude)
        return {
            self.column_for(name): encode_value(getattr(self, name))
            for name in self.attributes()
            if name not in skipped
        }

    def to_payload(self, exclude: Iterable[str] = ("id",)) -> Dict[str, Any]:
        """Attribute payload for a create call; unset optional values are omitted."""
        skipped = set(exclude)
        return {
            name: getattr(self, name)
            for name in self.attributes()
            if name not in skipped and getattr(self, name) is not None
        }

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.attributes()}

    def apply(self, patch: Mapping[str, Any]):
        """New record with `patch` applied; invariants are re-checked."""
        unknown = set(patch) - set(self.attributes())
        if unknown:
            raise ValidationError(
                f"Unknown fields for {self.KIND.value}: {sorted(unknown)}",
                field=sorted(unknown)[0],
            )
        return replace(self, **patch)


# =============================================================================
# PRACTICE-MANAGEMENT RECORDS
# =============================================================================

@dataclass(frozen=True)
class Identity(Entity):
    """A signed-up user (profile row)."""
    id: str
    role: Role = Role.COUNTERPARTY
    display_name: str = ""
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.PROFILE
    COLUMNS: ClassVar[Dict[str, str]] = {"display_name": "full_name"}
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "role": Role,
        "created_at": parse_timestamp,
        "updated_at": parse_timestamp,
    }
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("display_name", False)

    def __post_init__(self):
        # Profiles from the reels app carry a username but no full name
        if not self.display_name:
            object.__setattr__(self, "display_name", self.username or "")

    @property
    def is_operator(self) -> bool:
        return self.role is Role.OPERATOR


@dataclass(frozen=True)
class AppointmentType(Entity):
    id: str
    name: str
    duration_minutes: int

    KIND: ClassVar[EntityKind] = EntityKind.APPOINTMENT_TYPE
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {"duration_minutes": int}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("name", False)

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise ValidationError(
                "Appointment duration must be positive",
                field="duration_minutes",
                actual=str(self.duration_minutes),
            )


@dataclass(frozen=True)
class SchedulableEvent(Entity):
    """An appointment booked by (or for) a counterparty."""
    id: str
    owner_id: str
    type_id: str
    start_time: datetime
    end_time: datetime
    status: EventStatus = EventStatus.BOOKED
    notes: Optional[str] = None
    operator_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    owner: Optional[Identity] = field(default=None, compare=False, repr=False)

    KIND: ClassVar[EntityKind] = EntityKind.APPOINTMENT
    COLUMNS: ClassVar[Dict[str, str]] = {
        "owner_id": "client_id",
        "type_id": "appointment_type_id",
        "notes": "client_notes",
        "operator_notes": "doctor_notes_secure",
    }
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "start_time": parse_timestamp,
        "end_time": parse_timestamp,
        "status": EventStatus,
        "created_at": parse_timestamp,
    }
    RELATIONS: ClassVar[Dict[str, Tuple[str, type]]] = {"owner": ("client", Identity)}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("start_time", False)
    OWNER_FIELD: ClassVar[Optional[str]] = "owner_id"

    def __post_init__(self):
        if self.start_time >= self.end_time:
            raise ValidationError(
                "Appointment must end after it starts",
                field="end_time",
                expected=f"> {self.start_time.isoformat()}",
                actual=self.end_time.isoformat(),
            )


@dataclass(frozen=True)
class TaskTemplate(Entity):
    id: str
    title: str
    kind: TaskKind
    description: str = ""
    content: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.TASK_TEMPLATE
    COLUMNS: ClassVar[Dict[str, str]] = {"kind": "task_type", "content": "template_content"}
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "kind": TaskKind,
        "content": _copy_json,
        "created_at": parse_timestamp,
    }
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("created_at", True)

    def __post_init__(self):
        if self.content is None:
            object.__setattr__(self, "content", {})


SUBMITTED_STATES = (TaskStatus.SUBMITTED, TaskStatus.REVIEWED)


@dataclass(frozen=True)
class AssignableTask(Entity):
    """
    A task assigned to a counterparty.

    Title, description, kind and content are copied from the template at
    assignment time; the template may change or disappear afterwards.
    """
    id: str
    owner_id: str
    title: str
    kind: TaskKind
    due_date: datetime
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    template_id: Optional[str] = None
    content: Optional[Dict[str, Any]] = None
    assigned_at: Optional[datetime] = None
    submission_content: Any = None
    submission_file_path: Optional[str] = None
    template: Optional[TaskTemplate] = field(default=None, compare=False, repr=False)

    KIND: ClassVar[EntityKind] = EntityKind.TASK
    COLUMNS: ClassVar[Dict[str, str]] = {
        "owner_id": "client_id",
        "kind": "task_type",
        "template_id": "task_template_id",
        "content": "task_content",
    }
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "kind": TaskKind,
        "due_date": parse_timestamp,
        "status": TaskStatus,
        "content": _copy_json,
        "assigned_at": parse_timestamp,
        "submission_content": _copy_json,
    }
    RELATIONS: ClassVar[Dict[str, Tuple[str, type]]] = {"template": ("task_template", TaskTemplate)}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("due_date", False)
    OWNER_FIELD: ClassVar[Optional[str]] = "owner_id"

    def __post_init__(self):
        has_submission = (
            self.submission_content is not None or self.submission_file_path is not None
        )
        if has_submission and self.status not in SUBMITTED_STATES:
            raise ValidationError(
                "Submission is only allowed on submitted or reviewed tasks",
                field="submission_content",
                actual=self.status.value,
            )


@dataclass(frozen=True)
class Conversation(Entity):
    """A symmetric two-party conversation."""
    id: str
    participant_a: str
    participant_b: str
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.CONVERSATION
    COLUMNS: ClassVar[Dict[str, str]] = {
        "participant_a": "participant1_id",
        "participant_b": "participant2_id",
    }
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "last_message_at": parse_timestamp,
        "created_at": parse_timestamp,
    }
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("last_message_at", True)

    def __post_init__(self):
        if self.participant_a == self.participant_b:
            raise ValidationError(
                "A conversation needs two different participants",
                field="participant_b",
            )

    @property
    def participants(self) -> frozenset:
        return frozenset((self.participant_a, self.participant_b))

    def involves(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_a:
            return self.participant_b
        if user_id == self.participant_b:
            return self.participant_a
        raise ValidationError(
            f"User {user_id} is not part of conversation {self.id}",
            field="participant",
        )


@dataclass(frozen=True)
class Message(Entity):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    is_read: bool = False
    sender: Optional[Identity] = field(default=None, compare=False, repr=False)

    KIND: ClassVar[EntityKind] = EntityKind.MESSAGE
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "created_at": parse_timestamp,
        "is_read": _as_bool,
    }
    RELATIONS: ClassVar[Dict[str, Tuple[str, type]]] = {"sender": ("sender", Identity)}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("created_at", False)

    def __post_init__(self):
        if self.sender_id == self.receiver_id:
            raise ValidationError("Cannot send a message to yourself", field="receiver_id")

    def apply(self, patch: Mapping[str, Any]):
        # Messages are immutable apart from the read flag
        if set(patch) - {"is_read"}:
            raise ValidationError(
                "Only the read flag of a message can change",
                field=sorted(set(patch) - {"is_read"})[0],
            )
        return super().apply(patch)


# =============================================================================
# CODE-SNIPPET NETWORK RECORDS
# =============================================================================

@dataclass(frozen=True)
class Reel(Entity):
    """A posted code snippet with its rendered result."""
    id: str
    author_id: str
    title: str
    code_snippet: str
    code_language: str
    result_type: ResultType
    result_content: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.REEL
    COLUMNS: ClassVar[Dict[str, str]] = {"author_id": "user_id"}
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "result_type": ResultType,
        "created_at": parse_timestamp,
        "updated_at": parse_timestamp,
    }
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("created_at", True)
    OWNER_FIELD: ClassVar[Optional[str]] = "author_id"


@dataclass(frozen=True)
class Comment(Entity):
    id: str
    reel_id: str
    author_id: str
    content: str
    created_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.COMMENT
    COLUMNS: ClassVar[Dict[str, str]] = {"author_id": "user_id"}
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {"created_at": parse_timestamp}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("created_at", False)
    OWNER_FIELD: ClassVar[Optional[str]] = "author_id"

    def __post_init__(self):
        if not self.content.strip():
            raise ValidationError("Comment cannot be empty", field="content")


@dataclass(frozen=True)
class Like(Entity):
    id: str
    reel_id: str
    user_id: str
    created_at: Optional[datetime] = None

    KIND: ClassVar[EntityKind] = EntityKind.LIKE
    CONVERTERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {"created_at": parse_timestamp}
    ORDER_BY: ClassVar[Tuple[str, bool]] = ("created_at", False)
    OWNER_FIELD: ClassVar[Optional[str]] = "user_id"


# =============================================================================
# REGISTRY
# =============================================================================

ENTITY_TYPES: Dict[EntityKind, Type[Entity]] = {
    EntityKind.PROFILE: Identity,
    EntityKind.APPOINTMENT_TYPE: AppointmentType,
    EntityKind.APPOINTMENT: SchedulableEvent,
    EntityKind.TASK_TEMPLATE: TaskTemplate,
    EntityKind.TASK: AssignableTask,
    EntityKind.CONVERSATION: Conversation,
    EntityKind.MESSAGE: Message,
    EntityKind.REEL: Reel,
    EntityKind.COMMENT: Comment,
    EntityKind.LIKE: Like,
}


def entity_type(kind: EntityKind) -> Type[Entity]:
    return ENTITY_TYPES[EntityKind(kind)]


def entity_from_row(kind: EntityKind, row: Mapping[str, Any]) -> Entity:
    """Decode a row of `kind` into its record."""
    return entity_type(kind).from_row(row)


def encode_payload(kind: EntityKind, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate an attribute payload into a column payload."""
    record_cls = entity_type(kind)
    known = set(record_cls.attributes())
    unknown = set(payload) - known
    if unknown:
        raise ValidationError(
            f"Unknown fields for {kind.value}: {sorted(unknown)}",
            field=sorted(unknown)[0],
        )
    return {record_cls.column_for(k): encode_value(v) for k, v in payload.items()}


def merge_relations(previous: Optional[Entity], fresh: Entity) -> Entity:
    """
    Keep joined relations of `previous` on `fresh` when the fresh record
    came without them (write responses and realtime rows carry no joins).
    """
    if previous is None or not fresh.RELATIONS:
        return fresh
    carried = {
        name: getattr(previous, name)
        for name in fresh.RELATIONS
        if getattr(fresh, name) is None and getattr(previous, name) is not None
    }
    return replace(fresh, **carried) if carried else fresh

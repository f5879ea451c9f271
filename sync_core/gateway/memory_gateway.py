# =============================================================================
# sync_core/gateway/memory_gateway.py
# In-process backend for tests, demos and offline development
# =============================================================================
"""
InMemoryGateway - a backend that lives in the current process.

Behaves like the hosted backend where it matters to the client: the server
assigns ids and timestamps, rows are validated on write, uniqueness rules
are enforced, and every write is broadcast to realtime subscribers.

Test helpers:
    gateway.fail_next("update", ConflictError("dup"))   # inject a failure
    gate = gateway.hold("create")                        # park calls ...
    gate.set()                                           # ... then release
    gateway.disconnect(); gateway.reconnect()            # channel drops
    gateway.emit(EntityKind.MESSAGE, RealtimeEventType.INSERT, row)
    gateway.call_count("fetch", EntityKind.TASK)
"""

from __future__ import annotations
import asyncio
import copy
import itertools
import uuid
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, Union

from sync_core.config import SyncSettings
from sync_core.errors import (
    AuthorizationError,
    ConflictError,
    MalformedRowError,
    NetworkError,
    NotFoundError,
    SyncCoreError,
    ValidationError,
)
from sync_core.logging import get_logger
from sync_core.models import EntityKind, Filter, Role, entity_from_row, entity_type, utcnow
from .base import (
    AuthSession,
    ChannelStatus,
    EventCallback,
    ProgressReporter,
    RealtimeEvent,
    RealtimeEventType,
    RemoteGateway,
    StatusCallback,
    StoredObject,
    Subscription,
)

logger = get_logger(__name__)


# Embedded relations returned by fetch: kind -> (key, related kind, foreign key column)
JOINS: Dict[EntityKind, Tuple[str, EntityKind, str]] = {
    EntityKind.APPOINTMENT: ("client", EntityKind.PROFILE, "client_id"),
    EntityKind.TASK: ("task_template", EntityKind.TASK_TEMPLATE, "task_template_id"),
    EntityKind.MESSAGE: ("sender", EntityKind.PROFILE, "sender_id"),
}

TIMESTAMP_COLUMNS = ("created_at", "assigned_at", "updated_at")

ErrorSpec = Union[SyncCoreError, Type[SyncCoreError]]


@dataclass
class _Failure:
    operation: str
    error: ErrorSpec
    remaining: int
    kind: Optional[EntityKind] = None


@dataclass
class _Subscriber:
    kind: EntityKind
    filter: Filter
    on_event: EventCallback
    on_status: Optional[StatusCallback]
    active: bool = True


class InMemoryGateway(RemoteGateway):
    """Backend held in dictionaries of wire rows."""

    name = "memory"

    def __init__(self, settings: Optional[SyncSettings] = None):
        super().__init__(settings or SyncSettings(provider="memory"))
        self._tables: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {k: {} for k in EntityKind}
        self._subscribers: List[_Subscriber] = []
        self._failures: List[_Failure] = []
        self._holds: Dict[str, asyncio.Event] = {}
        self._users: Dict[str, Dict[str, str]] = {}
        self._session: Optional[AuthSession] = None
        self._ids = itertools.count(1)
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.connected = True

    # =========================================================================
    # TEST CONTROLS
    # =========================================================================

    def seed(self, kind: EntityKind, rows: Iterable[Dict[str, Any]]) -> List[str]:
        """Store rows as-is (no validation, no broadcast)."""
        kind = EntityKind(kind)
        ids = []
        for row in rows:
            stored = copy.deepcopy(dict(row))
            stored.setdefault("id", self._next_id())
            self._tables[kind][stored["id"]] = stored
            ids.append(stored["id"])
        return ids

    def rows(self, kind: EntityKind) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._tables[EntityKind(kind)].values()]

    def row(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        found = self._tables[EntityKind(kind)].get(entity_id)
        return copy.deepcopy(found) if found is not None else None

    def add_user(
        self,
        email: str,
        password: str,
        role: Role = Role.COUNTERPARTY,
        display_name: str = "",
        user_id: Optional[str] = None,
    ) -> str:
        """Register an account with its profile row."""
        user_id = user_id or str(uuid.uuid4())
        self._users[email.lower()] = {"id": user_id, "password": password}
        self._tables[EntityKind.PROFILE][user_id] = {
            "id": user_id,
            "role": Role(role).value,
            "full_name": display_name,
            "created_at": utcnow().isoformat(),
        }
        return user_id

    def fail_next(
        self,
        operation: str,
        error: Optional[ErrorSpec] = None,
        times: int = 1,
        kind: Optional[EntityKind] = None,
    ) -> None:
        """
        Make the next `times` calls of `operation` raise `error`.

        Args:
            operation: fetch, create, update, remove, subscribe, sign_in,
                sign_up, sign_out, get_session or upload
            error: Exception instance or class (default NetworkError)
            times: Number of calls to fail
            kind: Only fail calls for this entity kind
        """
        self._failures.append(
            _Failure(operation, error or NetworkError, times, EntityKind(kind) if kind else None)
        )

    def hold(self, operation: str) -> asyncio.Event:
        """Park calls of `operation` until the returned event is set."""
        gate = asyncio.Event()
        self._holds[operation] = gate
        return gate

    def release(self, operation: Optional[str] = None) -> None:
        names = [operation] if operation else list(self._holds)
        for name in names:
            gate = self._holds.pop(name, None)
            if gate is not None:
                gate.set()

    def call_count(self, operation: str, kind: Optional[EntityKind] = None) -> int:
        return sum(
            1 for op, k in self.calls
            if op == operation and (kind is None or k == EntityKind(kind).value)
        )

    def disconnect(self) -> None:
        """Drop realtime delivery; writes made meanwhile are not pushed."""
        self.connected = False
        self._broadcast_status(ChannelStatus.DISCONNECTED)
        logger.info("Memory gateway realtime disconnected")

    def reconnect(self) -> None:
        self.connected = True
        self._broadcast_status(ChannelStatus.CONNECTED)
        logger.info("Memory gateway realtime reconnected")

    def emit(
        self,
        kind: EntityKind,
        event_type: RealtimeEventType,
        row: Optional[Dict[str, Any]] = None,
        old_row: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Push a raw event to subscribers without touching the tables."""
        event = RealtimeEvent(EntityKind(kind), RealtimeEventType(event_type), row or {}, old_row or {})
        for subscriber in list(self._subscribers):
            if subscriber.active and subscriber.kind == event.kind:
                self._deliver(subscriber, event)

    @property
    def subscriber_count(self) -> int:
        return sum(1 for s in self._subscribers if s.active)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _next_id(self) -> str:
        return f"srv-{next(self._ids)}"

    async def _enter(self, operation: str, kind: Optional[EntityKind] = None) -> None:
        self.calls.append((operation, kind.value if kind else None))

        gate = self._holds.get(operation)
        if gate is not None:
            await gate.wait()

        for failure in list(self._failures):
            if failure.operation != operation:
                continue
            if failure.kind is not None and failure.kind != kind:
                continue
            failure.remaining -= 1
            if failure.remaining <= 0:
                self._failures.remove(failure)
            error = failure.error
            if isinstance(error, type):
                error = error(f"Injected failure for {operation}")
            raise error

    def _columns(self, kind: EntityKind) -> set:
        record_cls = entity_type(kind)
        return {record_cls.column_for(a) for a in record_cls.attributes()}

    def _check_columns(self, kind: EntityKind, row: Dict[str, Any]) -> None:
        unknown = set(row) - self._columns(kind)
        if unknown:
            raise ValidationError(
                f"Unknown columns for {kind.value}: {sorted(unknown)}",
                field=sorted(unknown)[0],
            )

    def _validate(self, kind: EntityKind, row: Dict[str, Any]) -> None:
        """Run the record invariants, as the database constraints would."""
        try:
            entity_from_row(kind, row)
        except MalformedRowError as e:
            raise ValidationError(
                f"Invalid {kind.value} row: {e.message}",
                field=e.details.get("column"),
            )

    def _check_unique(self, kind: EntityKind, row: Dict[str, Any]) -> None:
        existing = [r for r in self._tables[kind].values() if r.get("id") != row.get("id")]
        if kind == EntityKind.LIKE:
            key = (row.get("reel_id"), row.get("user_id"))
            if any((r.get("reel_id"), r.get("user_id")) == key for r in existing):
                raise ConflictError("Reel already liked", kind=kind.value, constraint="likes_reel_user")
        elif kind == EntityKind.CONVERSATION:
            pair = frozenset((row.get("participant1_id"), row.get("participant2_id")))
            if any(frozenset((r.get("participant1_id"), r.get("participant2_id"))) == pair for r in existing):
                raise ConflictError(
                    "Conversation already exists",
                    kind=kind.value,
                    constraint="conversations_participants",
                )

    def _matches(self, kind: EntityKind, row: Dict[str, Any], filter: Filter) -> bool:
        if filter.is_empty:
            return True
        try:
            record = entity_from_row(kind, row)
        except SyncCoreError:
            # Undecodable rows are compared on their raw values
            record_cls = entity_type(kind)
            record = SimpleNamespace(
                **{a: row.get(record_cls.column_for(a)) for a in record_cls.attributes()}
            )
        return filter.matches(record)

    def _with_join(self, kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
        result = copy.deepcopy(row)
        join = JOINS.get(kind)
        if join is not None:
            key, related_kind, column = join
            related = self._tables[related_kind].get(row.get(column))
            result[key] = copy.deepcopy(related) if related is not None else None
        return result

    def _broadcast(self, kind: EntityKind, event_type: RealtimeEventType, row, old_row=None) -> None:
        if not self.connected:
            return
        event = RealtimeEvent(kind, event_type, copy.deepcopy(row or {}), copy.deepcopy(old_row or {}))
        for subscriber in list(self._subscribers):
            if not subscriber.active or subscriber.kind != kind:
                continue
            if event_type != RealtimeEventType.DELETE and not self._matches(kind, event.row, subscriber.filter):
                continue
            self._deliver(subscriber, event)

    def _deliver(self, subscriber: _Subscriber, event: RealtimeEvent) -> None:
        # Events arrive on a later loop iteration, like a websocket frame
        asyncio.get_running_loop().call_soon(self._invoke, subscriber, event)

    def _invoke(self, subscriber: _Subscriber, event: RealtimeEvent) -> None:
        if not subscriber.active:
            return
        try:
            subscriber.on_event(event)
        except Exception as e:
            logger.error(f"Error in realtime callback for {event.kind.value}: {e}", exc_info=True)

    def _broadcast_status(self, status: ChannelStatus) -> None:
        for subscriber in list(self._subscribers):
            if subscriber.active and subscriber.on_status is not None:
                try:
                    subscriber.on_status(subscriber.kind, status)
                except Exception as e:
                    logger.error(f"Error in channel status callback: {e}", exc_info=True)

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _fetch_rows(self, kind: EntityKind, filter: Filter) -> List[Dict[str, Any]]:
        await self._enter("fetch", kind)
        return [
            self._with_join(kind, row)
            for row in self._tables[kind].values()
            if self._matches(kind, row, filter)
        ]

    async def _insert_row(self, kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create", kind)
        self._check_columns(kind, row)

        stored = copy.deepcopy(row)
        if kind != EntityKind.PROFILE or not stored.get("id"):
            stored["id"] = self._next_id()
        now = utcnow().isoformat()
        columns = self._columns(kind)
        for column in TIMESTAMP_COLUMNS:
            if column in columns and stored.get(column) is None:
                stored[column] = now

        self._validate(kind, stored)
        if stored["id"] in self._tables[kind]:
            raise ConflictError(f"{kind.value} {stored['id']} already exists", kind=kind.value, constraint="pkey")
        self._check_unique(kind, stored)
        self._tables[kind][stored["id"]] = stored
        logger.debug(f"Inserted {kind.value} {stored['id']}")

        self._broadcast(kind, RealtimeEventType.INSERT, stored)
        return copy.deepcopy(stored)

    async def _update_row(self, kind: EntityKind, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("update", kind)
        current = self._tables[kind].get(entity_id)
        if current is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found", kind=kind.value, entity_id=entity_id)
        self._check_columns(kind, patch)

        updated = {**copy.deepcopy(current), **copy.deepcopy(patch), "id": entity_id}
        if "updated_at" in self._columns(kind):
            updated["updated_at"] = utcnow().isoformat()

        self._validate(kind, updated)
        self._check_unique(kind, updated)
        self._tables[kind][entity_id] = updated

        self._broadcast(kind, RealtimeEventType.UPDATE, updated, {"id": entity_id})
        return copy.deepcopy(updated)

    async def _delete_row(self, kind: EntityKind, entity_id: str) -> None:
        await self._enter("remove", kind)
        if self._tables[kind].pop(entity_id, None) is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found", kind=kind.value, entity_id=entity_id)
        # Deletes carry only the primary key, as with the hosted backend
        self._broadcast(kind, RealtimeEventType.DELETE, None, {"id": entity_id})

    async def _subscribe(
        self,
        kind: EntityKind,
        filter: Filter,
        on_event: EventCallback,
        on_status: Optional[StatusCallback],
    ) -> Subscription:
        await self._enter("subscribe", kind)
        subscriber = _Subscriber(kind, filter, on_event, on_status)
        self._subscribers.append(subscriber)

        async def close() -> None:
            subscriber.active = False
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        if self.connected and on_status is not None:
            asyncio.get_running_loop().call_soon(on_status, kind, ChannelStatus.CONNECTED)
        return Subscription(kind, filter, close)

    async def _sign_in(self, email: str, password: str) -> AuthSession:
        await self._enter("sign_in")
        user = self._users.get(email.lower())
        if user is None or user["password"] != password:
            raise AuthorizationError("Invalid login credentials")
        self._session = AuthSession(user["id"], uuid.uuid4().hex, email)
        return self._session

    async def _sign_up(self, email: str, password: str, display_name: str) -> AuthSession:
        await self._enter("sign_up")
        if email.lower() in self._users:
            raise ConflictError("User already registered", kind="users", constraint="users_email_key")
        if len(password) < 6:
            raise ValidationError("Password should be at least 6 characters", field="password")

        user_id = self.add_user(email, password, Role.COUNTERPARTY, display_name)
        self._broadcast(EntityKind.PROFILE, RealtimeEventType.INSERT, self._tables[EntityKind.PROFILE][user_id])
        self._session = AuthSession(user_id, uuid.uuid4().hex, email)
        return self._session

    async def _sign_out(self) -> None:
        await self._enter("sign_out")
        self._session = None

    async def _get_session(self) -> Optional[AuthSession]:
        await self._enter("get_session")
        return self._session

    async def _upload(
        self,
        data: bytes,
        bucket: str,
        path: str,
        content_type: str,
        report: ProgressReporter,
    ) -> StoredObject:
        await self._enter("upload")
        total = len(data)
        chunk_size = max(1, self.settings.upload_chunk_size)
        loaded = 0
        report(0, total)
        for offset in range(0, total, chunk_size):
            # Yield between chunks so the upload can be cancelled
            await asyncio.sleep(0)
            loaded = min(total, offset + chunk_size)
            report(loaded, total)

        self.objects[(bucket, path)] = data
        return StoredObject(bucket, path, f"memory://{bucket}/{path}")

# =============================================================================
# sync_core/gateway/base.py
# Remote Gateway: abstract interface to the backend
# =============================================================================
"""
Base gateway class for backend access.

Subclasses implement the underscored transport hooks; the public methods in
this module add what every backend shares: request timeouts, retry with
exponential backoff for idempotent reads, row decoding and upload handles.

Mutating calls (create/update/remove) are never retried: a timed-out write
may or may not have been applied server-side.
"""

from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from sync_core.config import SyncSettings
from sync_core.errors import (
    MalformedRowError,
    NetworkError,
    RequestTimeoutError,
    UploadCancelledError,
    ValidationError,
)
from sync_core.logging import get_logger
from sync_core.models import ALL, Entity, EntityKind, Filter, encode_payload, entity_from_row

logger = get_logger(__name__)


# =============================================================================
# REALTIME TYPES
# =============================================================================

class RealtimeEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChannelStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class RealtimeEvent:
    """A row change pushed by the backend (rows use column names)."""
    kind: EntityKind
    event_type: RealtimeEventType
    row: Dict[str, Any] = field(default_factory=dict)
    old_row: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_id(self) -> Optional[str]:
        return (self.row or {}).get("id") or (self.old_row or {}).get("id")


EventCallback = Callable[[RealtimeEvent], None]
StatusCallback = Callable[[EntityKind, ChannelStatus], None]


class Subscription:
    """Handle for one realtime subscription."""

    def __init__(
        self,
        kind: EntityKind,
        filter: Filter,
        on_close: Callable[[], Awaitable[None]],
    ):
        self.kind = kind
        self.filter = filter
        self._on_close = on_close
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._on_close()
        logger.debug(f"Unsubscribed from {self.kind.value} changes")


# =============================================================================
# AUTH AND STORAGE TYPES
# =============================================================================

@dataclass(frozen=True)
class AuthSession:
    user_id: str
    access_token: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class UploadProgress:
    loaded: int
    total: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(self.loaded * 100.0 / self.total, 1)


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    path: str
    public_url: str


ProgressCallback = Callable[[UploadProgress], None]
ProgressReporter = Callable[[int, int], None]


class UploadHandle:
    """
    A running upload.

    Usage:
        handle = gateway.upload(data, "user-1/report.pdf", on_progress=show)
        ...
        handle.cancel()                  # optional
        stored = await handle.result()   # UploadCancelledError if cancelled
    """

    def __init__(self, bucket: str, path: str, on_progress: Optional[ProgressCallback] = None):
        self.bucket = bucket
        self.path = path
        self.progress = UploadProgress(0, 0)
        self._on_progress = on_progress
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    def start(self, upload: Awaitable[StoredObject]) -> UploadHandle:
        self._task = asyncio.ensure_future(upload)
        return self

    def report(self, loaded: int, total: int) -> None:
        """Progress hook handed to the transport."""
        self.progress = UploadProgress(loaded, total)
        if self._on_progress is None:
            return
        try:
            self._on_progress(self.progress)
        except Exception as e:
            logger.error(f"Error in upload progress callback: {e}", exc_info=True)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._cancelled = True
            self._task.cancel()
            logger.info(f"Upload cancelled: {self.bucket}/{self.path}")

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def result(self) -> StoredObject:
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            raise UploadCancelledError(
                f"Upload of {self.path} was cancelled",
                path=self.path,
                loaded=self.progress.loaded,
            )


# =============================================================================
# GATEWAY
# =============================================================================

class RemoteGateway(ABC):
    """Abstract base class for backend gateways"""

    name = "base"

    def __init__(self, settings: SyncSettings):
        self.settings = settings

    # -------------------------------------------------------------------------
    # Transport hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _fetch_rows(self, kind: EntityKind, filter: Filter) -> List[Dict[str, Any]]:
        """Return raw rows (column names, embedded relations) matching `filter`."""

    @abstractmethod
    async def _insert_row(self, kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _update_row(self, kind: EntityKind, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply `patch`; raise NotFoundError when the row is gone."""

    @abstractmethod
    async def _delete_row(self, kind: EntityKind, entity_id: str) -> None:
        """Delete the row; raise NotFoundError when the row is gone."""

    @abstractmethod
    async def _subscribe(
        self,
        kind: EntityKind,
        filter: Filter,
        on_event: EventCallback,
        on_status: Optional[StatusCallback],
    ) -> Subscription:
        pass

    @abstractmethod
    async def _sign_in(self, email: str, password: str) -> AuthSession:
        pass

    @abstractmethod
    async def _sign_up(self, email: str, password: str, display_name: str) -> AuthSession:
        """Create the account and its counterparty profile row."""

    @abstractmethod
    async def _sign_out(self) -> None:
        pass

    @abstractmethod
    async def _get_session(self) -> Optional[AuthSession]:
        pass

    @abstractmethod
    async def _upload(
        self,
        data: bytes,
        bucket: str,
        path: str,
        content_type: str,
        report: ProgressReporter,
    ) -> StoredObject:
        pass

    async def close(self) -> None:
        """Release transport resources."""

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a backend call, bounded by the request timeout."""
        timeout = self.settings.request_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{operation} timed out after {timeout}s")
            raise RequestTimeoutError(
                f"{operation} did not complete within {timeout}s",
                timeout=timeout,
                operation=operation,
            )

    def _decode_rows(self, kind: EntityKind, rows: List[Mapping[str, Any]]) -> List[Entity]:
        records = []
        for row in rows:
            try:
                records.append(entity_from_row(kind, row))
            except (MalformedRowError, ValidationError) as e:
                logger.warning(f"Dropping malformed {kind.value} row: {e}")
        return records

    def _decode_one(self, kind: EntityKind, row: Mapping[str, Any]) -> Entity:
        try:
            return entity_from_row(kind, row)
        except ValidationError as e:
            raise MalformedRowError(
                f"Server returned an invalid {kind.value} row: {e.message}",
                kind=kind.value,
                column=e.field,
            )

    # -------------------------------------------------------------------------
    # Data operations
    # -------------------------------------------------------------------------

    async def fetch(self, kind: EntityKind, filter: Optional[Filter] = None) -> List[Entity]:
        """
        Fetch records of `kind` matching `filter`.

        Retried on NetworkError (timeouts included) with exponential backoff.
        Rows that fail to decode are logged and dropped.

        Raises:
            NetworkError: when every attempt failed
            AuthorizationError: when the backend refuses the query
        """
        kind = EntityKind(kind)
        filter = filter or ALL
        max_retries = self.settings.fetch_max_retries
        attempt = 0

        while True:
            try:
                rows = await self._call(f"fetch {kind.value}", self._fetch_rows(kind, filter))
                break
            except NetworkError as e:
                attempt += 1
                if attempt > max_retries:
                    logger.error(f"Fetch {kind.value} failed after {attempt} attempts: {e.message}")
                    raise
                delay = self.settings.backoff_delay(attempt)
                logger.warning(
                    f"Fetch {kind.value} failed ({e.message}); "
                    f"retry {attempt}/{max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        records = self._decode_rows(kind, rows)
        logger.debug(f"Fetched {len(records)} {kind.value} ({filter})")
        return records

    async def create(self, kind: EntityKind, payload: Mapping[str, Any]) -> Entity:
        """
        Insert a record from an attribute payload.

        Returns:
            The server record (server id and timestamps)
        """
        kind = EntityKind(kind)
        row = encode_payload(kind, payload)
        created = await self._call(f"create {kind.value}", self._insert_row(kind, row))
        return self._decode_one(kind, created)

    async def update(self, kind: EntityKind, entity_id: str, patch: Mapping[str, Any]) -> Entity:
        kind = EntityKind(kind)
        row = encode_payload(kind, patch)
        updated = await self._call(
            f"update {kind.value}", self._update_row(kind, entity_id, row)
        )
        return self._decode_one(kind, updated)

    async def remove(self, kind: EntityKind, entity_id: str) -> None:
        kind = EntityKind(kind)
        await self._call(f"remove {kind.value}", self._delete_row(kind, entity_id))

    async def subscribe(
        self,
        kind: EntityKind,
        filter: Optional[Filter],
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        """
        Subscribe to row changes of `kind`.

        `on_event` receives RealtimeEvent objects and `on_status` receives
        (kind, ChannelStatus) on connect and disconnect.
        """
        kind = EntityKind(kind)
        return await self._call(
            f"subscribe {kind.value}",
            self._subscribe(kind, filter or ALL, on_event, on_status),
        )

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> AuthSession:
        return await self._call("sign in", self._sign_in(email, password))

    async def sign_up(self, email: str, password: str, display_name: str) -> AuthSession:
        return await self._call("sign up", self._sign_up(email, password, display_name))

    async def sign_out(self) -> None:
        await self._call("sign out", self._sign_out())

    async def get_session(self) -> Optional[AuthSession]:
        return await self._call("get session", self._get_session())

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def upload(
        self,
        data: bytes,
        path: str,
        bucket: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        content_type: str = "application/octet-stream",
    ) -> UploadHandle:
        """
        Start uploading `data` to object storage.

        Must be called from a running event loop. The transport's request
        timeout applies to each chunk, not to the whole upload.
        """
        bucket = bucket or self.settings.task_bucket
        handle = UploadHandle(bucket, path, on_progress)
        logger.info(f"Uploading {len(data)} bytes to {bucket}/{path}")
        return handle.start(self._upload(bytes(data), bucket, path, content_type, handle.report))

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        """
        Test backend connectivity.

        Returns:
            Dict with status, message, and metadata
        """
        try:
            records = await self.fetch(EntityKind.APPOINTMENT_TYPE)
            return {
                "status": "success",
                "message": f"Successfully connected to {self.name}",
                "rows_fetched": len(records),
            }
        except Exception as e:
            return {
                "status": "error",
                "message": f"Connection failed: {e}",
            }

# =============================================================================
# sync_core/gateway/supabase_gateway.py
# Supabase backend: PostgREST queries, realtime channels, auth, storage
# =============================================================================
"""
SupabaseGateway - RemoteGateway on top of the async supabase-py client.

Expects secrets in .streamlit/secrets.toml:
    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

Backend errors are mapped onto the sync_core error taxonomy here, so nothing
above the gateway sees PostgREST codes or httpx exceptions.
"""

from __future__ import annotations
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from supabase import AsyncClient, AuthError, PostgrestAPIError, acreate_client

from sync_core.config import SyncSettings
from sync_core.errors import (
    AuthorizationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    SyncCoreError,
    ValidationError,
)
from sync_core.logging import get_logger
from sync_core.models import EntityKind, Filter, Role, encode_value, entity_type
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


# Select strings with the embedded relation each kind decodes
SELECTS: Dict[EntityKind, str] = {
    EntityKind.APPOINTMENT: "*, client:profiles!appointments_client_id_fkey(*)",
    EntityKind.TASK: "*, task_template:task_templates(*)",
    EntityKind.MESSAGE: "*, sender:profiles!messages_sender_id_fkey(*)",
}

# PostgreSQL / PostgREST error codes
CONFLICT_CODES = {"23505"}
VALIDATION_CODES = {"23502", "23503", "23514", "22P02", "22007", "22001"}
AUTHORIZATION_CODES = {"42501", "PGRST301", "PGRST302"}
NOT_FOUND_CODES = {"PGRST116"}


# =============================================================================
# ERROR MAPPING
# =============================================================================

def map_postgrest_error(error: Exception, kind: Optional[EntityKind], operation: str) -> SyncCoreError:
    """Translate a PostgREST error into the sync_core taxonomy."""
    code = str(getattr(error, "code", None) or "")
    message = getattr(error, "message", None) or str(error)
    kind_name = kind.value if kind else None

    if code in CONFLICT_CODES:
        return ConflictError(message, kind=kind_name, constraint=getattr(error, "details", None))
    if code in VALIDATION_CODES:
        return ValidationError(message, details={"postgres_code": code, "hint": getattr(error, "hint", None)})
    if code in AUTHORIZATION_CODES:
        return AuthorizationError(message, kind=kind_name)
    if code in NOT_FOUND_CODES:
        return NotFoundError(message, kind=kind_name)
    return SyncCoreError(
        f"{operation} failed: {message}",
        details={"postgres_code": code},
        recoverable=False,
    )


def map_auth_error(error: Exception) -> SyncCoreError:
    """Translate a gotrue error into the sync_core taxonomy."""
    message = getattr(error, "message", None) or str(error)
    status = getattr(error, "status", None)
    lowered = message.lower()

    if "already registered" in lowered or "already exists" in lowered:
        return ConflictError(message, kind="users")
    if "password" in lowered and ("least" in lowered or "weak" in lowered):
        return ValidationError(message, field="password")
    if "email" in lowered and "invalid" in lowered and "credentials" not in lowered:
        return ValidationError(message, field="email")
    if status is not None and int(status) >= 500:
        return NetworkError(message, operation="auth")
    return AuthorizationError(message)


def map_transport_error(error: Exception, operation: str, timeout: float) -> SyncCoreError:
    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError(f"{operation} timed out", timeout=timeout, operation=operation)
    return NetworkError(f"{operation} failed: {error}", operation=operation)


def map_storage_status(response: httpx.Response, path: str) -> SyncCoreError:
    status = response.status_code
    message = f"Upload of {path} failed with HTTP {status}: {response.text[:200]}"
    if status in (401, 403):
        return AuthorizationError(message, kind="storage")
    if status == 409:
        return ConflictError(message, kind="storage")
    if status in (400, 413, 415):
        return ValidationError(message, field="file")
    return NetworkError(message, operation="upload")


# =============================================================================
# GATEWAY
# =============================================================================

class SupabaseGateway(RemoteGateway):
    """Hosted backend reached through supabase-py."""

    name = "supabase"

    def __init__(self, settings: SyncSettings, client: Optional[AsyncClient] = None):
        settings.require_supabase()
        super().__init__(settings)
        self._client = client
        self._client_lock = asyncio.Lock()
        self._channels: List[Any] = []

    async def _get_client(self) -> AsyncClient:
        """Create the async client on first use."""
        async with self._client_lock:
            if self._client is None:
                try:
                    self._client = await acreate_client(
                        self.settings.supabase_url,
                        self.settings.supabase_key,
                    )
                except (httpx.HTTPError, OSError) as e:
                    raise map_transport_error(e, "connect", self.settings.request_timeout)
                logger.info("Supabase client initialized")
        return self._client

    async def _execute(self, query, kind: Optional[EntityKind], operation: str):
        try:
            return await query.execute()
        except PostgrestAPIError as e:
            raise map_postgrest_error(e, kind, operation) from e
        except (httpx.HTTPError, OSError) as e:
            raise map_transport_error(e, operation, self.settings.request_timeout) from e

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply_filter(query, kind: EntityKind, filter: Filter):
        record_cls = entity_type(kind)
        for condition in filter.conditions:
            column = record_cls.column_for(condition.field)
            value = encode_value(condition.value)
            if condition.op == "eq":
                query = query.eq(column, value)
            elif condition.op == "neq":
                query = query.neq(column, value)
            elif condition.op == "in":
                query = query.in_(column, list(value))
            elif condition.op == "gte":
                query = query.gte(column, value)
            else:
                query = query.lte(column, value)

        if filter.any_of:
            parts = []
            for condition in filter.any_of:
                column = record_cls.column_for(condition.field)
                value = encode_value(condition.value)
                if condition.op == "in":
                    parts.append(f"{column}.in.({','.join(str(v) for v in value)})")
                else:
                    parts.append(f"{column}.{condition.op}.{value}")
            query = query.or_(",".join(parts))
        return query

    async def _fetch_rows(self, kind: EntityKind, filter: Filter) -> List[Dict[str, Any]]:
        """Fetch ALL matching rows (handles the PostgREST row limit)."""
        client = await self._get_client()
        order_attr, descending = entity_type(kind).ORDER_BY
        order_column = entity_type(kind).column_for(order_attr)
        batch_size = self.settings.page_size

        all_rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = client.table(kind.table).select(SELECTS.get(kind, "*"))
            query = self._apply_filter(query, kind, filter)
            query = query.order(order_column, desc=descending).order("id")

            # Fetch batch with range
            query = query.range(offset, offset + batch_size - 1)
            response = await self._execute(query, kind, f"fetch {kind.value}")

            batch = response.data or []
            all_rows.extend(batch)
            # If we got fewer than batch_size, we've reached the end
            if len(batch) < batch_size:
                break
            offset += batch_size

        return all_rows

    async def _insert_row(self, kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await self._execute(
            client.table(kind.table).insert(row), kind, f"create {kind.value}"
        )
        if not response.data:
            raise AuthorizationError(
                f"Insert into {kind.value} returned no row",
                kind=kind.value,
            )
        return response.data[0]

    async def _update_row(self, kind: EntityKind, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await self._execute(
            client.table(kind.table).update(patch).eq("id", entity_id),
            kind,
            f"update {kind.value}",
        )
        if not response.data:
            # Either deleted or hidden by row-level security
            raise NotFoundError(f"{kind.value} {entity_id} not found", kind=kind.value, entity_id=entity_id)
        return response.data[0]

    async def _delete_row(self, kind: EntityKind, entity_id: str) -> None:
        client = await self._get_client()
        response = await self._execute(
            client.table(kind.table).delete().eq("id", entity_id),
            kind,
            f"remove {kind.value}",
        )
        if not response.data:
            raise NotFoundError(f"{kind.value} {entity_id} not found", kind=kind.value, entity_id=entity_id)

    # -------------------------------------------------------------------------
    # Realtime
    # -------------------------------------------------------------------------

    @staticmethod
    def _realtime_filter(kind: EntityKind, filter: Filter) -> Optional[str]:
        """Server-side channel filter; only a single equality is supported."""
        record_cls = entity_type(kind)
        for condition in filter.conditions:
            if condition.op == "eq":
                return f"{record_cls.column_for(condition.field)}=eq.{encode_value(condition.value)}"
        return None

    async def _subscribe(
        self,
        kind: EntityKind,
        filter: Filter,
        on_event: EventCallback,
        on_status: Optional[StatusCallback],
    ) -> Subscription:
        client = await self._get_client()
        channel = client.channel(f"sync-{kind.value}-{uuid.uuid4().hex[:8]}")

        def handle_change(payload: Dict[str, Any]) -> None:
            data = payload.get("data", payload)
            try:
                event_type = RealtimeEventType(str(data.get("type", "")).lower())
            except ValueError:
                logger.warning(f"Ignoring realtime payload with type {data.get('type')!r}")
                return
            on_event(RealtimeEvent(
                kind,
                event_type,
                dict(data.get("record") or {}),
                dict(data.get("old_record") or {}),
            ))

        def handle_status(state, error=None) -> None:
            value = str(getattr(state, "value", state))
            if error:
                logger.warning(f"Realtime channel for {kind.value} reported {value}: {error}")
            if on_status is None:
                return
            if value == "SUBSCRIBED":
                on_status(kind, ChannelStatus.CONNECTED)
            elif value in ("CHANNEL_ERROR", "TIMED_OUT", "CLOSED"):
                on_status(kind, ChannelStatus.DISCONNECTED)

        options: Dict[str, Any] = {
            "event": "*",
            "schema": "public",
            "table": kind.table,
            "callback": handle_change,
        }
        server_filter = self._realtime_filter(kind, filter)
        if server_filter:
            options["filter"] = server_filter
        channel.on_postgres_changes(**options)
        await channel.subscribe(handle_status)
        self._channels.append(channel)
        logger.info(f"Subscribed to {kind.value} changes ({server_filter or 'all rows'})")

        async def close() -> None:
            if channel in self._channels:
                self._channels.remove(channel)
            await client.remove_channel(channel)

        return Subscription(kind, filter, close)

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    @staticmethod
    def _auth_session(session, email: Optional[str] = None) -> AuthSession:
        expires_at = None
        if getattr(session, "expires_at", None):
            expires_at = datetime.fromtimestamp(session.expires_at, tz=timezone.utc)
        user = session.user
        return AuthSession(
            user_id=user.id,
            access_token=session.access_token,
            email=getattr(user, "email", None) or email,
            expires_at=expires_at,
        )

    async def _sign_in(self, email: str, password: str) -> AuthSession:
        client = await self._get_client()
        try:
            response = await client.auth.sign_in_with_password({"email": email, "password": password})
        except AuthError as e:
            raise map_auth_error(e) from e
        except (httpx.HTTPError, OSError) as e:
            raise map_transport_error(e, "sign in", self.settings.request_timeout) from e

        if response.session is None:
            raise AuthorizationError("Sign-in returned no session")
        return self._auth_session(response.session, email)

    async def _sign_up(self, email: str, password: str, display_name: str) -> AuthSession:
        client = await self._get_client()
        try:
            response = await client.auth.sign_up({"email": email, "password": password})
        except AuthError as e:
            raise map_auth_error(e) from e
        except (httpx.HTTPError, OSError) as e:
            raise map_transport_error(e, "sign up", self.settings.request_timeout) from e

        if response.user is None or response.session is None:
            raise AuthorizationError("Confirm your email address, then sign in.")

        user_id = response.user.id
        # Create profile for the new user (always a counterparty)
        await self._execute(
            client.table(EntityKind.PROFILE.table).insert({
                "id": user_id,
                "full_name": display_name,
                "role": Role.COUNTERPARTY.value,
            }),
            EntityKind.PROFILE,
            "create profile",
        )
        await self._execute(
            client.table("client_details").insert({"user_id": user_id}),
            None,
            "create client details",
        )
        return self._auth_session(response.session, email)

    async def _sign_out(self) -> None:
        client = await self._get_client()
        try:
            await client.auth.sign_out()
        except AuthError as e:
            raise map_auth_error(e) from e

    async def _get_session(self) -> Optional[AuthSession]:
        client = await self._get_client()
        try:
            session = await client.auth.get_session()
        except AuthError as e:
            raise map_auth_error(e) from e
        if session is None or session.user is None:
            return None
        return self._auth_session(session)

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.settings.supabase_url.rstrip('/')}/storage/v1/object/public/{bucket}/{path}"

    async def _upload(
        self,
        data: bytes,
        bucket: str,
        path: str,
        content_type: str,
        report: ProgressReporter,
    ) -> StoredObject:
        session = await self._get_session()
        token = session.access_token if session else self.settings.supabase_key
        url = f"{self.settings.supabase_url.rstrip('/')}/storage/v1/object/{bucket}/{path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "apikey": self.settings.supabase_key,
            "Content-Type": content_type,
            "Content-Length": str(len(data)),
            "x-upsert": "true",
        }
        total = len(data)
        chunk_size = max(1, self.settings.upload_chunk_size)

        async def body():
            report(0, total)
            for offset in range(0, total, chunk_size):
                chunk = data[offset:offset + chunk_size]
                yield chunk
                report(offset + len(chunk), total)

        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as http:
                response = await http.post(url, content=body(), headers=headers)
        except (httpx.HTTPError, OSError) as e:
            raise map_transport_error(e, "upload", self.settings.request_timeout) from e

        if response.is_error:
            raise map_storage_status(response, path)

        logger.info(f"Uploaded {total} bytes to {bucket}/{path}")
        return StoredObject(bucket, path, self.public_url(bucket, path))

    async def close(self) -> None:
        if self._client is None:
            return
        for channel in list(self._channels):
            try:
                await self._client.remove_channel(channel)
            except Exception as e:
                logger.warning(f"Error removing realtime channel: {e}")
        self._channels.clear()

# =============================================================================
# sync_core/context.py
# Application context: one cache and session, per-identity stores
# =============================================================================
"""
AppContext is built once at startup. It owns the Entity Cache and the
SessionContext; everything that acts on behalf of a signed-in user
(coordinator, reconciler, stores) lives in a UserScope that is torn down
and rebuilt whenever the identity changes.

Usage:
    context = build_app_context()
    await context.session.sign_in("client@example.com", "secret")
    appointments = await context.appointments.fetch_appointments()
    ...
    await context.close()
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from sync_core.cache import EntityCache
from sync_core.config import SyncSettings, load_settings
from sync_core.errors import AuthorizationError, SyncCoreError
from sync_core.gateway import RemoteGateway, create_gateway
from sync_core.logging import get_logger
from sync_core.models import Identity
from sync_core.session import SessionContext
from sync_core.stores import AppointmentStore, MessageStore, ReelStore, TaskStore
from sync_core.sync import MutationCoordinator, RealtimeReconciler

logger = get_logger(__name__)


class UserScope:
    """Coordinator, reconciler and stores for one signed-in identity."""

    def __init__(self, cache: EntityCache, gateway: RemoteGateway, session: SessionContext):
        self.identity: Identity = session.require_identity()
        self.coordinator = MutationCoordinator(cache, gateway)
        self.reconciler = RealtimeReconciler(cache, gateway, self.coordinator)
        self.appointments = AppointmentStore(self.coordinator, session, self.reconciler)
        self.tasks = TaskStore(self.coordinator, session, self.reconciler)
        self.messages = MessageStore(self.coordinator, session, self.reconciler)
        self.reels = ReelStore(self.coordinator, session, self.reconciler)

    async def start_realtime(self) -> None:
        """Watch inbound messages, appointments and tasks."""
        await self.messages.watch()
        await self.appointments.watch()
        await self.tasks.watch()

    async def close(self) -> None:
        # Detached before any await; in-flight mutations still finish
        # server-side, without touching the cache
        self.coordinator.detach()
        await self.reconciler.close()


class AppContext:
    """
    Long-lived owner of the cache, the session and the current UserScope.
    """

    def __init__(self, settings: SyncSettings, gateway: RemoteGateway):
        self.settings = settings
        self.gateway = gateway
        self.cache = EntityCache()
        self.session = SessionContext(gateway, self.cache)
        self.scope: Optional[UserScope] = None
        self.session.add_listener(self._on_identity_changed)

    # =========================================================================
    # SCOPE LIFECYCLE
    # =========================================================================

    async def _on_identity_changed(self, identity: Optional[Identity]) -> None:
        await self._close_scope()
        if identity is None:
            return
        self.scope = UserScope(self.cache, self.gateway, self.session)
        logger.info(f"User scope ready for {identity.id}")
        if self.settings.realtime_enabled:
            await self.start_realtime()

    async def _close_scope(self) -> None:
        scope, self.scope = self.scope, None
        if scope is not None:
            await scope.close()
            logger.info(f"User scope for {scope.identity.id} closed")

    async def start_realtime(self) -> None:
        """
        Subscribe to the identity's realtime changes. A failure is logged and
        leaves the screens working on explicit reloads.
        """
        scope = self._require_scope()
        try:
            await scope.start_realtime()
        except SyncCoreError as e:
            logger.error(f"Realtime subscriptions failed: {e}")

    def _require_scope(self) -> UserScope:
        if self.scope is None:
            raise AuthorizationError("Please sign in to continue")
        return self.scope

    async def close(self) -> None:
        await self._close_scope()
        await self.gateway.close()

    # =========================================================================
    # STORES
    # =========================================================================

    @property
    def appointments(self) -> AppointmentStore:
        return self._require_scope().appointments

    @property
    def tasks(self) -> TaskStore:
        return self._require_scope().tasks

    @property
    def messages(self) -> MessageStore:
        return self._require_scope().messages

    @property
    def reels(self) -> ReelStore:
        return self._require_scope().reels

    def get_status_display(self) -> Dict[str, Any]:
        """Combined status for a diagnostics panel."""
        status: Dict[str, Any] = {
            "provider": self.gateway.name,
            "auth_state": self.session.state.value,
            "user_id": self.session.user_id,
            "cache": self.cache.get_status_display(),
        }
        if self.scope is not None:
            status["mutations"] = self.scope.coordinator.get_status_display()
            status["realtime"] = self.scope.reconciler.get_status_display()
        return status


def build_app_context(
    settings: Optional[SyncSettings] = None,
    gateway: Optional[RemoteGateway] = None,
) -> AppContext:
    """
    Build the application context.

    Args:
        settings: Sync settings (loaded from secrets/environment if omitted)
        gateway: Gateway to use (built from settings if omitted)
    """
    settings = settings or load_settings()
    gateway = gateway or create_gateway(settings)
    logger.info(f"Building app context with {gateway.name} gateway")
    return AppContext(settings, gateway)

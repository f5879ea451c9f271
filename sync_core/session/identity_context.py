# =============================================================================
# sync_core/session/identity_context.py
# Signed-in identity and role-based query scoping
# =============================================================================
"""
SessionContext - who is signed in, and what they may read.

State machine:
    Anonymous -> Authenticating -> Authenticated | Anonymous
    Authenticated -> SigningOut -> Anonymous

Leaving an authenticated identity (sign-out, switching accounts) empties the
Entity Cache for every kind before any listener runs, so no screen can read
the previous user's rows.
"""

from __future__ import annotations
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from sync_core.cache import EntityCache
from sync_core.errors import AuthorizationError, SyncCoreError, ValidationError
from sync_core.gateway import AuthSession, RemoteGateway
from sync_core.logging import get_logger
from sync_core.models import ALL, Condition, EntityKind, Filter, Identity, Role
from sync_core.validation import validate_credentials, validate_display_name

logger = get_logger(__name__)


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SIGNING_OUT = "signing_out"


IdentityListener = Callable[[Optional[Identity]], Union[None, Awaitable[None]]]

# Kinds a counterparty only sees for themselves
OWNER_SCOPED_KINDS = (EntityKind.APPOINTMENT, EntityKind.TASK)

# Kinds any signed-in user may list
PUBLIC_KINDS = (
    EntityKind.APPOINTMENT_TYPE,
    EntityKind.REEL,
    EntityKind.COMMENT,
    EntityKind.LIKE,
)

EDITABLE_PROFILE_FIELDS = ("display_name", "username", "avatar_url", "bio")


class SessionContext:
    """
    Current identity and its transitions.

    Usage:
        session = SessionContext(gateway, cache)
        session.add_listener(on_identity_changed)
        await session.sign_in("client@example.com", "secret")
        filter = session.authorize_query(EntityKind.TASK, None)
    """

    def __init__(self, gateway: RemoteGateway, cache: EntityCache):
        self.gateway = gateway
        self.cache = cache
        self.state = AuthState.ANONYMOUS
        self.identity: Optional[Identity] = None
        self.auth_session: Optional[AuthSession] = None
        self._listeners: List[IdentityListener] = []

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED and self.identity is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.id if self.identity else None

    @property
    def role(self) -> Optional[Role]:
        return self.identity.role if self.identity else None

    def add_listener(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a listener for identity changes; returns its remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(identity)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in identity listener: {e}", exc_info=True)

    def _begin(self, target: AuthState) -> None:
        if self.state in (AuthState.AUTHENTICATING, AuthState.SIGNING_OUT):
            raise AuthorizationError(
                f"Cannot start {target.value} while {self.state.value}",
                details={"state": self.state.value},
                recoverable=True,
            )
        self.state = target

    async def _load_identity(self, user_id: str) -> Identity:
        profiles = await self.gateway.fetch(EntityKind.PROFILE, Filter.where(id=user_id))
        if not profiles:
            raise AuthorizationError("No profile found for this account", kind=EntityKind.PROFILE.value)
        return profiles[0]

    async def _enter_identity(self, identity: Identity, auth_session: AuthSession) -> None:
        previous = self.identity
        self.identity = identity
        self.auth_session = auth_session
        self.state = AuthState.AUTHENTICATED
        if previous is None or previous.id != identity.id:
            self.cache.invalidate()
        self.cache.put(EntityKind.PROFILE, identity)
        logger.info(f"Signed in as {identity.id} ({identity.role.value})")
        if previous is None or previous.id != identity.id:
            await self._notify(identity)

    async def _leave_identity(self) -> None:
        had_identity = self.identity is not None
        self.identity = None
        self.auth_session = None
        self.state = AuthState.ANONYMOUS
        self.cache.invalidate()
        if had_identity:
            logger.info("Signed out; cache cleared")
            await self._notify(None)
            # Listener teardown may have awaited while late writes landed
            self.cache.invalidate()

    async def _authenticate(self, attempt: Callable[[], Awaitable[AuthSession]]) -> Identity:
        """Run a sign-in style call through the Authenticating state."""
        previous_state = self.state
        self._begin(AuthState.AUTHENTICATING)
        try:
            auth_session = await attempt()
            identity = await self._load_identity(auth_session.user_id)
        except BaseException:
            if previous_state is AuthState.AUTHENTICATED and self.identity is not None:
                self.state = AuthState.AUTHENTICATED
            else:
                await self._leave_identity()
            raise
        await self._enter_identity(identity, auth_session)
        return identity

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def restore(self) -> Optional[Identity]:
        """Resume a persisted session, if the backend still has one."""
        self._begin(AuthState.AUTHENTICATING)
        try:
            auth_session = await self.gateway.get_session()
            if auth_session is None:
                await self._leave_identity()
                return None
            identity = await self._load_identity(auth_session.user_id)
        except BaseException:
            await self._leave_identity()
            raise
        await self._enter_identity(identity, auth_session)
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        validate_credentials(email, password)
        return await self._authenticate(lambda: self.gateway.sign_in(email.strip(), password))

    async def sign_up(
        self,
        email: str,
        password: str,
        display_name: str,
        confirm_password: Optional[str] = None,
    ) -> Identity:
        """New accounts are always counterparties."""
        validate_credentials(email, password, confirm_password)
        name = validate_display_name(display_name)
        return await self._authenticate(lambda: self.gateway.sign_up(email.strip(), password, name))

    async def sign_out(self) -> None:
        """
        Sign out locally even when the backend call fails; the failure is
        logged.
        """
        if self.state is AuthState.ANONYMOUS:
            return
        self._begin(AuthState.SIGNING_OUT)
        try:
            await self.gateway.sign_out()
        except SyncCoreError as e:
            logger.warning(f"Backend sign-out failed, signing out locally: {e}")
        finally:
            await self._leave_identity()

    async def update_profile(self, **changes: Any) -> Identity:
        """Edit the signed-in user's own profile (role cannot change)."""
        identity = self.require_identity()
        forbidden = sorted(set(changes) - set(EDITABLE_PROFILE_FIELDS))
        if forbidden:
            raise ValidationError(
                f"Profile fields cannot be edited: {forbidden}",
                field=forbidden[0],
            )
        if "display_name" in changes:
            changes["display_name"] = validate_display_name(changes["display_name"])
        if not changes:
            return identity

        updated = await self.gateway.update(EntityKind.PROFILE, identity.id, changes)
        if self.identity is None or self.identity.id != identity.id:
            # Signed out while the update was in flight
            return updated
        self.identity = updated
        self.cache.put(EntityKind.PROFILE, updated)
        return updated

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def require_identity(self) -> Identity:
        if not self.is_authenticated:
            raise AuthorizationError("Please sign in to continue")
        return self.identity

    def require_role(self, role: Role) -> Identity:
        identity = self.require_identity()
        role = Role(role)
        if identity.role is not role:
            raise AuthorizationError(
                f"This action requires the {role.value} role",
                role=identity.role.value,
            )
        return identity

    def authorize_query(self, kind: EntityKind, filter: Optional[Filter] = None) -> Filter:
        """
        Scope a listing to what the signed-in identity may read.

        Returns:
            The filter to query with (possibly narrowed)

        Raises:
            AuthorizationError: when the query asks for someone else's rows
        """
        identity = self.require_identity()
        kind = EntityKind(kind)
        filter = filter or ALL
        me = identity.id

        if kind in PUBLIC_KINDS:
            return filter

        if kind in OWNER_SCOPED_KINDS:
            if identity.is_operator:
                return filter
            owner = filter.value_of("owner_id")
            if owner is None:
                return filter.eq("owner_id", me)
            if owner != me:
                raise AuthorizationError(
                    f"Cannot list another client's {kind.value}",
                    kind=kind.value,
                    role=identity.role.value,
                )
            return filter

        if kind == EntityKind.TASK_TEMPLATE:
            self.require_role(Role.OPERATOR)
            return filter

        if kind == EntityKind.CONVERSATION:
            return filter.either(
                Condition("participant_a", "eq", me),
                Condition("participant_b", "eq", me),
            )

        if kind == EntityKind.MESSAGE:
            conversation_id = filter.value_of("conversation_id")
            if conversation_id is not None:
                conversation = self.cache.get(EntityKind.CONVERSATION, conversation_id)
                if conversation is not None and not conversation.involves(me):
                    raise AuthorizationError(
                        "Cannot read messages of another conversation",
                        kind=kind.value,
                    )
                return filter
            return filter.either(
                Condition("sender_id", "eq", me),
                Condition("receiver_id", "eq", me),
            )

        if kind == EntityKind.PROFILE:
            if identity.is_operator:
                return filter
            if filter.value_of("id") is not None or filter.value_of("role") == Role.OPERATOR:
                return filter
            raise AuthorizationError(
                "Clients can only look up specific profiles",
                kind=kind.value,
                role=identity.role.value,
            )

        raise AuthorizationError(f"No read rule for {kind.value}", kind=kind.value)

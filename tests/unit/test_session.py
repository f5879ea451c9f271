# =============================================================================
# tests/unit/test_session.py
# Unit Tests for SessionContext
# =============================================================================

import pytest

from sync_core.errors import AuthorizationError, ConflictError, NetworkError, ValidationError
from sync_core.models import ALL, EntityKind, Filter, Role, entity_from_row
from sync_core.session import AuthState, SessionContext


@pytest.fixture
def session(seeded_gateway, cache):
    return SessionContext(seeded_gateway, cache)


class TestSignIn:
    """Test sign-in, sign-up and restore"""

    @pytest.mark.asyncio
    async def test_sign_in_loads_profile(self, session, cache, users):
        identity = await session.sign_in(users.client_email, users.password)

        assert identity.id == users.client_id
        assert identity.role is Role.COUNTERPARTY
        assert identity.display_name == "Casey Client"
        assert session.state is AuthState.AUTHENTICATED
        assert cache.get(EntityKind.PROFILE, users.client_id) == identity

    @pytest.mark.asyncio
    async def test_wrong_password_stays_anonymous(self, session, users):
        with pytest.raises(AuthorizationError):
            await session.sign_in(users.client_email, "wrong-password")

        assert session.state is AuthState.ANONYMOUS
        assert session.identity is None

    @pytest.mark.asyncio
    async def test_invalid_email_is_rejected_before_backend(self, session, seeded_gateway):
        with pytest.raises(ValidationError) as exc_info:
            await session.sign_in("not-an-email", "secret123")

        assert exc_info.value.field == "email"
        assert seeded_gateway.call_count("sign_in") == 0

    @pytest.mark.asyncio
    async def test_sign_up_creates_counterparty(self, session, seeded_gateway):
        identity = await session.sign_up("new@example.com", "secret123", "  Nia New  ", confirm_password="secret123")

        assert identity.role is Role.COUNTERPARTY
        assert identity.display_name == "Nia New"
        assert seeded_gateway.row(EntityKind.PROFILE, identity.id)["role"] == "client"

    @pytest.mark.asyncio
    async def test_sign_up_with_existing_email_conflicts(self, session, users):
        with pytest.raises(ConflictError):
            await session.sign_up(users.client_email, "secret123", "Again")
        assert session.state is AuthState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_sign_up_passwords_must_match(self, session):
        with pytest.raises(ValidationError) as exc_info:
            await session.sign_up("new@example.com", "secret123", "Nia", confirm_password="secret124")
        assert exc_info.value.field == "confirm_password"

    @pytest.mark.asyncio
    async def test_restore_without_session(self, session):
        assert await session.restore() is None
        assert session.state is AuthState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_restore_resumes_backend_session(self, session, seeded_gateway, cache, users):
        await session.sign_in(users.doctor_email, users.password)

        resumed = SessionContext(seeded_gateway, cache)
        identity = await resumed.restore()

        assert identity.id == users.doctor_id
        assert resumed.is_authenticated


class TestSignOut:
    """Test leaving an identity"""

    @pytest.mark.asyncio
    async def test_sign_out_clears_cache_and_notifies(self, session, cache, appointment_row, users):
        seen = []
        session.add_listener(seen.append)
        await session.sign_in(users.client_email, users.password)
        cache.put(EntityKind.APPOINTMENT, entity_from_row(EntityKind.APPOINTMENT, appointment_row("apt-1", users.client_id)))

        await session.sign_out()

        assert session.state is AuthState.ANONYMOUS
        assert cache.count(EntityKind.APPOINTMENT) == 0
        assert cache.count(EntityKind.PROFILE) == 0
        assert [i.id if i else None for i in seen] == [users.client_id, None]

    @pytest.mark.asyncio
    async def test_backend_failure_still_signs_out_locally(self, session, seeded_gateway, users):
        await session.sign_in(users.client_email, users.password)
        seeded_gateway.fail_next("sign_out", NetworkError)

        await session.sign_out()

        assert session.identity is None
        assert session.state is AuthState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_switching_identity_empties_cache(self, session, cache, appointment_row, users):
        await session.sign_in(users.client_email, users.password)
        cache.put(EntityKind.APPOINTMENT, entity_from_row(EntityKind.APPOINTMENT, appointment_row("apt-1", users.client_id)))

        await session.sign_in(users.doctor_email, users.password)

        assert cache.count(EntityKind.APPOINTMENT) == 0
        assert session.user_id == users.doctor_id

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self, session, users):
        seen = []

        async def listener(identity):
            seen.append(identity.id if identity else None)

        remove = session.add_listener(listener)
        await session.sign_in(users.client_email, users.password)
        remove()
        await session.sign_out()

        assert seen == [users.client_id]


class TestAuthorizeQuery:
    """Test role-based scoping of listings"""

    @pytest.mark.asyncio
    async def test_anonymous_cannot_query(self, session):
        with pytest.raises(AuthorizationError):
            session.authorize_query(EntityKind.TASK)

    @pytest.mark.asyncio
    async def test_client_listing_is_narrowed_to_self(self, session, users):
        await session.sign_in(users.client_email, users.password)

        scoped = session.authorize_query(EntityKind.TASK)

        assert scoped.value_of("owner_id") == users.client_id

    @pytest.mark.asyncio
    async def test_client_cannot_list_other_client(self, session, users):
        await session.sign_in(users.client_email, users.password)

        with pytest.raises(AuthorizationError):
            session.authorize_query(EntityKind.APPOINTMENT, Filter.where(owner_id=users.other_id))

    @pytest.mark.asyncio
    async def test_operator_sees_everything(self, session, users):
        await session.sign_in(users.doctor_email, users.password)

        assert session.authorize_query(EntityKind.APPOINTMENT) == ALL
        assert session.authorize_query(EntityKind.TASK_TEMPLATE) == ALL

    @pytest.mark.asyncio
    async def test_templates_are_operator_only(self, session, users):
        await session.sign_in(users.client_email, users.password)

        with pytest.raises(AuthorizationError):
            session.authorize_query(EntityKind.TASK_TEMPLATE)

    @pytest.mark.asyncio
    async def test_conversations_are_limited_to_participants(self, session, users):
        await session.sign_in(users.client_email, users.password)

        scoped = session.authorize_query(EntityKind.CONVERSATION)

        assert {c.field for c in scoped.any_of} == {"participant_a", "participant_b"}
        assert all(c.value == users.client_id for c in scoped.any_of)

    @pytest.mark.asyncio
    async def test_client_profile_lookups(self, session, users):
        await session.sign_in(users.client_email, users.password)

        assert session.authorize_query(EntityKind.PROFILE, Filter.where(role=Role.OPERATOR))
        assert session.authorize_query(EntityKind.PROFILE, Filter.where(id=users.doctor_id))
        with pytest.raises(AuthorizationError):
            session.authorize_query(EntityKind.PROFILE)

    @pytest.mark.asyncio
    async def test_public_kinds_pass_through(self, session, users):
        await session.sign_in(users.client_email, users.password)
        assert session.authorize_query(EntityKind.REEL) == ALL


class TestProfile:
    """Test role checks and profile edits"""

    @pytest.mark.asyncio
    async def test_require_role(self, session, users):
        await session.sign_in(users.client_email, users.password)

        assert session.require_role(Role.COUNTERPARTY).id == users.client_id
        with pytest.raises(AuthorizationError):
            session.require_role(Role.OPERATOR)

    @pytest.mark.asyncio
    async def test_update_profile(self, session, cache, seeded_gateway, users):
        await session.sign_in(users.client_email, users.password)

        updated = await session.update_profile(display_name=" Casey C. ", bio="Hi")

        assert updated.display_name == "Casey C."
        assert session.identity is updated
        assert cache.get(EntityKind.PROFILE, users.client_id) is updated
        assert seeded_gateway.row(EntityKind.PROFILE, users.client_id)["full_name"] == "Casey C."

    @pytest.mark.asyncio
    async def test_role_cannot_be_edited(self, session, users):
        await session.sign_in(users.client_email, users.password)

        with pytest.raises(ValidationError):
            await session.update_profile(role=Role.OPERATOR)

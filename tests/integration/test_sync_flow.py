# =============================================================================
# tests/integration/test_sync_flow.py
# Integration Tests for two devices sharing one backend
# =============================================================================

import pytest
from datetime import datetime, timedelta, timezone

from sync_core.context import AppContext
from sync_core.models import EntityKind, EventStatus, TaskKind, TaskStatus


class TestTwoDeviceSync:
    """
    A client and a doctor, each with their own AppContext, on one backend.

    Tests that:
    1. Writes on one side reach the other through realtime
    2. Changes missed while disconnected arrive with the resync
    3. Signing out stops delivery into the signed-out cache
    """

    @pytest.fixture
    def client_app(self, fast_settings, seeded_gateway):
        return AppContext(fast_settings, seeded_gateway)

    @pytest.fixture
    def doctor_app(self, fast_settings, seeded_gateway):
        return AppContext(fast_settings, seeded_gateway)

    @pytest.mark.asyncio
    async def test_message_reaches_doctor(self, client_app, doctor_app, users, settle):
        await client_app.session.sign_in(users.client_email, users.password)
        await doctor_app.session.sign_in(users.doctor_email, users.password)

        conversation = await client_app.messages.open_conversation(users.doctor_id)
        sent = await client_app.messages.send_message(conversation.id, "Running late, 10 minutes")
        await settle()

        received = doctor_app.cache.get(EntityKind.MESSAGE, sent.id)
        assert received is not None
        assert received.content == "Running late, 10 minutes"
        assert doctor_app.messages.unread_count() == 1

        await doctor_app.messages.mark_as_read(sent.id)
        assert doctor_app.messages.unread_count() == 0

    @pytest.mark.asyncio
    async def test_assigned_task_reaches_client(self, client_app, doctor_app, users, settle):
        await client_app.session.sign_in(users.client_email, users.password)
        await doctor_app.session.sign_in(users.doctor_email, users.password)
        await client_app.tasks.fetch_tasks()

        due = datetime(2030, 1, 10, 18, 0, tzinfo=timezone.utc)
        assigned = await doctor_app.tasks.assign_task(
            users.client_id, due, title="Breathing exercise", kind=TaskKind.TEXT
        )
        await settle()

        tasks = await client_app.tasks.fetch_tasks()
        assert [t.id for t in tasks] == [assigned.id]
        assert tasks[0].status is TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_missed_change_arrives_after_reconnect(self, client_app, doctor_app, seeded_gateway, users, settle):
        await client_app.session.sign_in(users.client_email, users.password)
        await doctor_app.session.sign_in(users.doctor_email, users.password)
        await client_app.appointments.fetch_appointments()

        seeded_gateway.disconnect()
        await doctor_app.appointments.cancel_appointment("apt-1")
        await settle()
        assert client_app.cache.get(EntityKind.APPOINTMENT, "apt-1").status is EventStatus.BOOKED

        seeded_gateway.reconnect()
        await client_app.scope.reconciler.wait_idle()

        cached = client_app.cache.get(EntityKind.APPOINTMENT, "apt-1")
        assert cached.status is EventStatus.CANCELLED_BY_OPERATOR
        assert client_app.scope.reconciler.get_status_display()["disconnected"] == []

    @pytest.mark.asyncio
    async def test_booking_shows_up_in_doctor_schedule(self, client_app, doctor_app, users, settle):
        await client_app.session.sign_in(users.client_email, users.password)
        await doctor_app.session.sign_in(users.doctor_email, users.password)
        await doctor_app.appointments.fetch_appointments()

        start = datetime(2030, 1, 20, 9, 0, tzinfo=timezone.utc)
        booked = await client_app.appointments.book_appointment("type-1", start, start + timedelta(minutes=50))
        await settle()

        assert doctor_app.cache.get(EntityKind.APPOINTMENT, booked.id) is not None
        upcoming = doctor_app.appointments.upcoming(now=start - timedelta(days=1))
        assert booked.id in [a.id for a in upcoming]

    @pytest.mark.asyncio
    async def test_signed_out_cache_stays_empty(self, client_app, doctor_app, users, settle):
        await client_app.session.sign_in(users.client_email, users.password)
        await doctor_app.session.sign_in(users.doctor_email, users.password)
        conversation = await doctor_app.messages.open_conversation(users.client_id)

        await client_app.session.sign_out()
        await doctor_app.messages.send_message(conversation.id, "Reminder: bring your diary")
        await settle()

        assert client_app.cache.list(EntityKind.MESSAGE) == []
        assert client_app.scope is None

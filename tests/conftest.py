# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

from sync_core.cache import EntityCache
from sync_core.config import SyncSettings
from sync_core.context import AppContext
from sync_core.gateway import InMemoryGateway
from sync_core.models import EntityKind, Role
from sync_core.sync import MutationCoordinator, RealtimeReconciler

BASE_TIME = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def make_appointment_row(entity_id: str, client_id: str, day: int = 1, status: str = "booked") -> Dict[str, Any]:
    """Wire row for an appointment `day` days after BASE_TIME"""
    start = BASE_TIME + timedelta(days=day)
    return {
        "id": entity_id,
        "client_id": client_id,
        "appointment_type_id": "type-1",
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=50)).isoformat(),
        "status": status,
        "client_notes": None,
        "doctor_notes_secure": None,
        "created_at": BASE_TIME.isoformat(),
    }


def make_task_row(entity_id: str, client_id: str, due: datetime, status: str = "pending") -> Dict[str, Any]:
    """Wire row for an assigned task"""
    return {
        "id": entity_id,
        "client_id": client_id,
        "title": "Thought record",
        "task_type": "text_entry",
        "due_date": due.isoformat(),
        "description": "Write down three situations",
        "status": status,
        "task_template_id": None,
        "task_content": None,
        "assigned_at": BASE_TIME.isoformat(),
        "submission_content": None,
        "submission_file_path": None,
    }


@pytest.fixture
def users():
    """Accounts created in the seeded gateway"""
    return SimpleNamespace(
        password="secret123",
        doctor_id="doctor-1",
        doctor_email="doctor@example.com",
        client_id="client-1",
        client_email="client@example.com",
        other_id="client-2",
        other_email="other@example.com",
    )


@pytest.fixture
def appointment_row():
    return make_appointment_row


@pytest.fixture
def task_row():
    return make_task_row


@pytest.fixture
def fast_settings():
    """Settings with no backoff delay and short timeouts"""
    return SyncSettings(
        provider="memory",
        request_timeout=2.0,
        fetch_max_retries=2,
        backoff_initial=0.0,
        upload_chunk_size=4,
    )


@pytest.fixture
def gateway(fast_settings):
    """Empty in-memory backend"""
    return InMemoryGateway(fast_settings)


@pytest.fixture
def seeded_gateway(gateway, users):
    """Backend with a doctor, two clients, one appointment type and two appointments"""
    gateway.add_user(users.doctor_email, users.password, Role.OPERATOR, "Dr. Ada Grey", user_id=users.doctor_id)
    gateway.add_user(users.client_email, users.password, Role.COUNTERPARTY, "Casey Client", user_id=users.client_id)
    gateway.add_user(users.other_email, users.password, Role.COUNTERPARTY, "Olive Other", user_id=users.other_id)
    gateway.seed(EntityKind.APPOINTMENT_TYPE, [
        {"id": "type-1", "name": "Consultation", "duration_minutes": 50},
    ])
    gateway.seed(EntityKind.APPOINTMENT, [
        make_appointment_row("apt-1", users.client_id, day=1),
        make_appointment_row("apt-2", users.other_id, day=2),
    ])
    return gateway


@pytest.fixture
def cache():
    return EntityCache()


@pytest.fixture
def coordinator(cache, seeded_gateway):
    return MutationCoordinator(cache, seeded_gateway)


@pytest.fixture
def reconciler(cache, seeded_gateway, coordinator):
    return RealtimeReconciler(cache, seeded_gateway, coordinator)


@pytest.fixture
def app_context(fast_settings, seeded_gateway):
    """AppContext over the seeded backend (nobody signed in yet)"""
    return AppContext(fast_settings, seeded_gateway)


@pytest.fixture
def settle():
    """Let scheduled callbacks (realtime delivery, tasks) run"""
    async def _settle(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock Streamlit in the modules that render to or store in it"""
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}

    monkeypatch.setattr("sync_core.errors.handlers.st", mock_st)
    monkeypatch.setattr("sync_core.state.streamlit_session.st", mock_st)
    return mock_st


@pytest.fixture
def mock_supabase():
    """Mock async Supabase client; every query builder call returns the same builder"""
    query = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "neq", "in_",
                   "gte", "lte", "or_", "order", "range", "limit"):
        getattr(query, method).return_value = query
    query.execute = AsyncMock(return_value=SimpleNamespace(data=[]))

    mock_client = MagicMock()
    mock_client.table.return_value = query
    mock_client.query = query
    mock_client.remove_channel = AsyncMock()
    mock_client.auth.sign_in_with_password = AsyncMock()
    mock_client.auth.sign_up = AsyncMock()
    mock_client.auth.sign_out = AsyncMock()
    mock_client.auth.get_session = AsyncMock(return_value=None)
    return mock_client


@pytest.fixture
def supabase_settings():
    return SyncSettings(
        provider="supabase",
        supabase_url="https://example.supabase.co",
        supabase_key="anon-key",
        request_timeout=2.0,
        fetch_max_retries=0,
        page_size=2,
    )



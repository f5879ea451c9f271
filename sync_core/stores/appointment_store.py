# =============================================================================
# sync_core/stores/appointment_store.py
# Appointments and appointment types
# =============================================================================

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from sync_core.errors import AuthorizationError, InvalidTransitionError
from sync_core.models import (
    AppointmentType,
    EntityKind,
    EventStatus,
    Filter,
    Identity,
    Role,
    SchedulableEvent,
    cancellation_status_for,
    check_event_transition,
    new_temp_id,
    parse_timestamp,
    utcnow,
)
from sync_core.sync import ScreenScope
from sync_core.validation import validate_time_range
from .base_store import BaseStore

CLIENT_EDITABLE = ("start_time", "end_time", "type_id", "notes")
OPERATOR_EDITABLE = CLIENT_EDITABLE + ("operator_notes",)


class AppointmentStore(BaseStore):
    """
    Booking, cancelling and completing appointments.

    Usage:
        store = AppointmentStore(coordinator, session, reconciler)
        appointments = await store.fetch_appointments()
        await store.cancel_appointment(appointments[0].id)
    """

    @staticmethod
    def _check_access(identity: Identity, appointment: SchedulableEvent) -> None:
        if not identity.is_operator and appointment.owner_id != identity.id:
            raise AuthorizationError(
                "You can only change your own appointments",
                kind=EntityKind.APPOINTMENT.value,
                role=identity.role.value,
            )

    # =========================================================================
    # READS
    # =========================================================================

    async def fetch_appointments(
        self,
        owner_id: Optional[str] = None,
        force: bool = False,
    ) -> List[SchedulableEvent]:
        """All visible appointments, or one client's (operator)."""
        filter = Filter.where(owner_id=owner_id) if owner_id else None
        return await self._load(EntityKind.APPOINTMENT, filter, force=force)

    async def fetch_appointment_types(self, force: bool = False) -> List[AppointmentType]:
        return await self._load(EntityKind.APPOINTMENT_TYPE, force=force)

    def upcoming(self, now: Optional[datetime] = None) -> List[SchedulableEvent]:
        """Cached booked appointments that have not started yet."""
        now = now or utcnow()
        identity = self.session.require_identity()
        return [
            a for a in self.cache.list(EntityKind.APPOINTMENT)
            if a.status is EventStatus.BOOKED
            and a.start_time >= now
            and (identity.is_operator or a.owner_id == identity.id)
        ]

    async def watch(self) -> None:
        await self._watch(EntityKind.APPOINTMENT)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def book_appointment(
        self,
        type_id: str,
        start_time: Any,
        end_time: Any,
        notes: Optional[str] = None,
        owner_id: Optional[str] = None,
        scope: Optional[ScreenScope] = None,
    ) -> SchedulableEvent:
        """
        Book an appointment. Clients book for themselves; the operator may
        book for any client.
        """
        identity = self.session.require_identity()
        owner = owner_id or identity.id
        if owner != identity.id and not identity.is_operator:
            raise AuthorizationError(
                "Clients can only book for themselves",
                kind=EntityKind.APPOINTMENT.value,
                role=identity.role.value,
            )

        start, end = parse_timestamp(start_time), parse_timestamp(end_time)
        validate_time_range(start, end)
        notes = (notes or "").strip() or None

        payload: Dict[str, Any] = {
            "owner_id": owner,
            "type_id": type_id,
            "start_time": start,
            "end_time": end,
            "status": EventStatus.BOOKED,
        }
        if notes:
            payload["notes"] = notes

        optimistic = SchedulableEvent(
            id=new_temp_id(),
            owner_id=owner,
            type_id=type_id,
            start_time=start,
            end_time=end,
            notes=notes,
            created_at=utcnow(),
            owner=self.cache.get(EntityKind.PROFILE, owner),
        )
        with self.log_operation(f"Booking appointment for {owner}"):
            return await self.coordinator.create(EntityKind.APPOINTMENT, optimistic, payload, scope)

    async def cancel_appointment(
        self,
        appointment_id: str,
        scope: Optional[ScreenScope] = None,
    ) -> SchedulableEvent:
        """
        Cancel as the signed-in role. Cancelling an appointment that is
        already cancelled changes nothing.
        """
        identity = self.session.require_identity()
        target = cancellation_status_for(identity.role)

        def compute(current: SchedulableEvent) -> Optional[Dict[str, Any]]:
            self._check_access(identity, current)
            if current.status.is_cancelled:
                return None
            check_event_transition(current.status, target)
            return {"status": target}

        return await self.coordinator.update(EntityKind.APPOINTMENT, appointment_id, compute, scope)

    async def complete_appointment(
        self,
        appointment_id: str,
        scope: Optional[ScreenScope] = None,
    ) -> SchedulableEvent:
        self.session.require_role(Role.OPERATOR)

        def compute(current: SchedulableEvent) -> Optional[Dict[str, Any]]:
            if not check_event_transition(current.status, EventStatus.COMPLETED):
                return None
            return {"status": EventStatus.COMPLETED}

        return await self.coordinator.update(EntityKind.APPOINTMENT, appointment_id, compute, scope)

    async def update_appointment(
        self,
        appointment_id: str,
        scope: Optional[ScreenScope] = None,
        **changes: Any,
    ) -> SchedulableEvent:
        """Reschedule or edit notes of a booked appointment."""
        identity = self.session.require_identity()
        allowed = OPERATOR_EDITABLE if identity.is_operator else CLIENT_EDITABLE
        forbidden = sorted(set(changes) - set(allowed))
        if forbidden:
            raise AuthorizationError(
                f"Cannot edit appointment fields: {forbidden}",
                kind=EntityKind.APPOINTMENT.value,
                role=identity.role.value,
            )
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = parse_timestamp(changes[key])

        def compute(current: SchedulableEvent) -> Optional[Dict[str, Any]]:
            self._check_access(identity, current)
            if current.status is not EventStatus.BOOKED:
                raise InvalidTransitionError(
                    "Only booked appointments can be changed",
                    current=current.status.value,
                )
            patch = {k: v for k, v in changes.items() if getattr(current, k) != v}
            if not patch:
                return None
            validate_time_range(
                patch.get("start_time", current.start_time),
                patch.get("end_time", current.end_time),
            )
            return patch

        return await self.coordinator.update(EntityKind.APPOINTMENT, appointment_id, compute, scope)

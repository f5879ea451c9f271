# =============================================================================
# sync_core/models/rules.py
# Status transitions and derived values
# =============================================================================
"""
Pure rules over entity records.

Nothing here touches the cache or the backend, so screens, stores and tests
all classify records the same way.
"""

from __future__ import annotations
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sync_core.errors import IntegrityError, InvalidTransitionError
from .entities import (
    AssignableTask,
    Conversation,
    EventStatus,
    Message,
    Role,
    TaskStatus,
    utcnow,
)


# =============================================================================
# APPOINTMENTS
# =============================================================================

EVENT_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.BOOKED: frozenset({
        EventStatus.COMPLETED,
        EventStatus.CANCELLED_BY_COUNTERPARTY,
        EventStatus.CANCELLED_BY_OPERATOR,
    }),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.CANCELLED_BY_COUNTERPARTY: frozenset(),
    EventStatus.CANCELLED_BY_OPERATOR: frozenset(),
}


def check_event_transition(current: EventStatus, target: EventStatus) -> bool:
    """
    Validate an appointment status change.

    Returns:
        False when `target` is already the current status (nothing to do),
        True when the change is allowed

    Raises:
        InvalidTransitionError: when leaving a terminal status
    """
    current, target = EventStatus(current), EventStatus(target)
    if current is target:
        return False
    if target not in EVENT_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Appointment cannot go from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
    return True


def cancellation_status_for(role: Role) -> EventStatus:
    """The cancelled status recorded when `role` cancels."""
    if Role(role) is Role.OPERATOR:
        return EventStatus.CANCELLED_BY_OPERATOR
    return EventStatus.CANCELLED_BY_COUNTERPARTY


# =============================================================================
# TASKS
# =============================================================================

TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.SUBMITTED}),
    # A stored "overdue" is still an open task
    TaskStatus.OVERDUE: frozenset({TaskStatus.SUBMITTED}),
    TaskStatus.SUBMITTED: frozenset({TaskStatus.REVIEWED}),
    TaskStatus.REVIEWED: frozenset(),
}


def check_task_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Same contract as check_event_transition, for task statuses."""
    current, target = TaskStatus(current), TaskStatus(target)
    if target is TaskStatus.OVERDUE:
        raise InvalidTransitionError(
            "Overdue is derived from the due date and is never written",
            current=current.value,
            target=target.value,
        )
    if current is target:
        return False
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Task cannot go from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
    return True


def is_open(task: AssignableTask) -> bool:
    """Not yet submitted (stored pending or legacy overdue)."""
    return task.status in (TaskStatus.PENDING, TaskStatus.OVERDUE)


def is_overdue(task: AssignableTask, now: Optional[datetime] = None) -> bool:
    """
    The single overdue rule: an open task whose due date has passed.

    A stored "overdue" status does not make a task overdue on its own and a
    stored "pending" does not hide it; only the due date decides.
    """
    now = now or utcnow()
    return is_open(task) and task.due_date < now


def effective_status(task: AssignableTask, now: Optional[datetime] = None) -> TaskStatus:
    """Status to display and filter on."""
    if not is_open(task):
        return task.status
    return TaskStatus.OVERDUE if is_overdue(task, now) else TaskStatus.PENDING


# =============================================================================
# MESSAGES
# =============================================================================

def check_message_integrity(message: Message, conversation: Conversation) -> None:
    """
    Raise IntegrityError unless the message belongs to `conversation` and its
    sender/receiver pair is exactly the conversation's two participants.
    """
    if message.conversation_id != conversation.id:
        raise IntegrityError(
            f"Message {message.id} belongs to conversation {message.conversation_id}",
            entity_id=message.id,
            related_id=conversation.id,
        )
    if frozenset((message.sender_id, message.receiver_id)) != conversation.participants:
        raise IntegrityError(
            f"Message {message.id} participants do not match conversation {conversation.id}",
            entity_id=message.id,
            related_id=conversation.id,
        )

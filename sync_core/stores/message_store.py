# =============================================================================
# sync_core/stores/message_store.py
# Conversations and direct messages
# =============================================================================

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sync_core.errors import (
    AuthorizationError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    SyncCoreError,
    ValidationError,
)
from sync_core.models import (
    Conversation,
    EntityKind,
    Filter,
    Message,
    check_message_integrity,
    new_temp_id,
    utcnow,
)
from sync_core.sync import ScreenScope
from sync_core.validation import validate_message_content
from .base_store import BaseStore


class MessageStore(BaseStore):
    """
    Two-party conversations between the operator and clients.

    A conversation is identified by its unordered participant pair, so
    opening one with the same person twice returns the same record.
    """

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    async def fetch_conversations(self, force: bool = False) -> List[Conversation]:
        return await self._load(EntityKind.CONVERSATION, force=force)

    def _find_pair(self, me: str, other: str) -> Optional[Conversation]:
        pair = frozenset((me, other))
        for conversation in self.cache.list(EntityKind.CONVERSATION):
            if conversation.participants == pair:
                return conversation
        return None

    async def _get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.cache.get(EntityKind.CONVERSATION, conversation_id)
        if conversation is None:
            await self.fetch_conversations()
            conversation = self.cache.get(EntityKind.CONVERSATION, conversation_id)
        if conversation is None:
            raise NotFoundError(
                f"Conversation {conversation_id} not found",
                kind=EntityKind.CONVERSATION.value,
                entity_id=conversation_id,
            )
        return conversation

    async def open_conversation(
        self,
        other_user_id: str,
        scope: Optional[ScreenScope] = None,
    ) -> Conversation:
        """
        Return the conversation with `other_user_id`, creating it if needed.

        If another device creates the same pair first, the backend's unique
        constraint rejects ours and the existing conversation is returned.
        """
        me = self.session.require_identity().id
        if other_user_id == me:
            raise ValidationError("Cannot start a conversation with yourself", field="participant_b")

        await self.fetch_conversations()
        existing = self._find_pair(me, other_user_id)
        if existing is not None:
            return existing

        optimistic = Conversation(
            id=new_temp_id(),
            participant_a=me,
            participant_b=other_user_id,
            created_at=utcnow(),
        )
        try:
            return await self.coordinator.create(EntityKind.CONVERSATION, optimistic, scope=scope)
        except ConflictError:
            self.logger.info(f"Conversation with {other_user_id} already exists; reloading")
            await self.fetch_conversations(force=True)
            existing = self._find_pair(me, other_user_id)
            if existing is None:
                raise
            return existing

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def fetch_messages(self, conversation_id: str, force: bool = False) -> List[Message]:
        """
        Messages of one conversation, oldest first.

        Messages whose sender/receiver do not match the conversation are
        logged and left out.
        """
        conversation = await self._get_conversation(conversation_id)
        messages = await self._load(
            EntityKind.MESSAGE, Filter.where(conversation_id=conversation_id), force=force
        )
        valid = []
        for message in messages:
            try:
                check_message_integrity(message, conversation)
            except IntegrityError as e:
                self.logger.warning(f"Discarding message: {e.message}")
                self.cache.remove(EntityKind.MESSAGE, message.id)
                continue
            valid.append(message)
        return valid

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        scope: Optional[ScreenScope] = None,
    ) -> Message:
        """
        Send a message; the receiver is the other participant. The
        conversation's last_message_at is bumped afterwards.
        """
        identity = self.session.require_identity()
        text = validate_message_content(content)
        conversation = await self._get_conversation(conversation_id)
        if not conversation.involves(identity.id):
            raise AuthorizationError(
                "You are not part of this conversation",
                kind=EntityKind.CONVERSATION.value,
                role=identity.role.value,
            )

        optimistic = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            sender_id=identity.id,
            receiver_id=conversation.other_participant(identity.id),
            content=text,
            created_at=utcnow(),
            sender=identity,
        )
        payload = optimistic.to_payload(exclude=("id", "created_at"))
        sent = await self.coordinator.create(EntityKind.MESSAGE, optimistic, payload, scope)

        def bump(current: Conversation) -> Optional[Dict[str, Any]]:
            if current.last_message_at is not None and current.last_message_at >= sent.created_at:
                return None
            return {"last_message_at": sent.created_at}

        try:
            await self.coordinator.update(EntityKind.CONVERSATION, conversation_id, bump)
        except SyncCoreError as e:
            # The message itself is committed
            self.logger.warning(f"Could not bump conversation {conversation_id}: {e}")
        return sent

    async def mark_as_read(self, message_id: str, scope: Optional[ScreenScope] = None) -> Message:
        identity = self.session.require_identity()

        def compute(current: Message) -> Optional[Dict[str, Any]]:
            if current.receiver_id != identity.id:
                raise AuthorizationError(
                    "Only the receiver can mark a message as read",
                    kind=EntityKind.MESSAGE.value,
                    role=identity.role.value,
                )
            if current.is_read:
                return None
            return {"is_read": True}

        return await self.coordinator.update(EntityKind.MESSAGE, message_id, compute, scope)

    def unread_count(self, conversation_id: Optional[str] = None) -> int:
        """Cached unread messages addressed to the signed-in user."""
        filter = Filter.where(receiver_id=self.session.require_identity().id, is_read=False)
        if conversation_id:
            filter = filter.eq("conversation_id", conversation_id)
        return len(self.cache.list(EntityKind.MESSAGE, filter))

    async def watch(self) -> None:
        """Apply inbound messages and conversation changes as they happen."""
        me = self.session.require_identity().id
        await self._watch(EntityKind.MESSAGE, Filter.where(receiver_id=me))
        await self._watch(EntityKind.CONVERSATION)

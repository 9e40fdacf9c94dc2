"""
Request-path messaging logic.

Every write runs authorize -> mutate -> hydrate -> emit -> return. Event
delivery is best effort: a failing broadcast is logged and the request still
succeeds, since clients re-fetch from the database on reconnect.
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from typing import Any

import structlog

from leornian.config import get_settings
from leornian.db.models import Message
from leornian.errors import (
    ConversationExists,
    ConversationNotFound,
    InsufficientPermissions,
    InvalidConversation,
    MessageDeleted,
    MessageEmpty,
    MessageNotFound,
    MessageTooLong,
    NotMessageSender,
    NotParticipant,
    UserNotFound,
)
from leornian.messaging.realtime import RealtimeService
from leornian.messaging.store import (
    ConversationDetails,
    ConversationOverview,
    MessageDetails,
    MessageStore,
)

logger = structlog.get_logger()


class MessageService:
    def __init__(self, store: MessageStore, realtime: RealtimeService, max_length: int | None = None) -> None:
        self._store = store
        self._realtime = realtime
        self._max_length = max_length if max_length is not None else get_settings().message_max_length

    async def _emit(self, event: str, delivery: Awaitable[int]) -> None:
        try:
            await delivery
        except Exception:
            logger.exception("realtime_delivery_failed", event=event)

    async def _auto_subscribe(self, user_id: str, conversation_id: int) -> None:
        try:
            await self._realtime.subscribe_to_conversation(user_id, conversation_id)
        except Exception:
            logger.exception("realtime_subscribe_failed", user_id=user_id, conversation_id=conversation_id)

    async def _require_participant(self, conversation_id: int, user_id: str) -> None:
        if not await self._store.is_participant(conversation_id, user_id):
            raise NotParticipant

    async def _require_own_live_message(self, message_id: int, user_id: str) -> Message:
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFound
        await self._require_participant(message.conversation_id, user_id)
        if message.sender_id != user_id:
            raise NotMessageSender
        if message.is_deleted:
            raise MessageDeleted
        return message

    def _clean_text(self, text: str) -> str:
        cleaned = text.strip()
        if not cleaned:
            raise MessageEmpty
        if len(cleaned) > self._max_length:
            msg = f"Message text cannot exceed {self._max_length} characters"
            raise MessageTooLong(msg)
        return cleaned

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    async def create_conversation(
        self, caller_id: str, coach_id: str, client_id: str
    ) -> tuple[ConversationDetails, bool]:
        """
        Get or create the conversation between a coach and a client.

        Returns:
            (conversation details for the caller, created)

        Raises:
            InsufficientPermissions: The caller is neither the coach nor the client.
            InvalidConversation: Coach and client are the same user.
            UserNotFound: Either participant does not exist.
        """
        if caller_id not in (coach_id, client_id):
            raise InsufficientPermissions
        if coach_id == client_id:
            raise InvalidConversation
        users = await self._store.get_users({coach_id, client_id})
        if coach_id not in users or client_id not in users:
            raise UserNotFound

        existing = await self._store.get_conversation_by_participants(coach_id, client_id)
        if existing is not None:
            return await self._store.get_conversation_details(existing, caller_id), False
        try:
            conversation = await self._store.create_conversation(coach_id, client_id)
        except ConversationExists:
            existing = await self._store.get_conversation_by_participants(coach_id, client_id)
            if existing is None:
                raise
            return await self._store.get_conversation_details(existing, caller_id), False

        logger.info("conversation_created", conversation_id=conversation.id, coach_id=coach_id, client_id=client_id)
        for user_id in conversation.participants():
            await self._auto_subscribe(user_id, conversation.id)
        return await self._store.get_conversation_details(conversation, caller_id), True

    async def get_conversation(self, caller_id: str, conversation_id: int) -> ConversationDetails:
        await self._require_participant(conversation_id, caller_id)
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound
        await self._auto_subscribe(caller_id, conversation_id)
        return await self._store.get_conversation_details(conversation, caller_id)

    async def list_conversations(
        self,
        caller_id: str,
        *,
        include_archived: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ConversationOverview], int]:
        rows, total = await self._store.list_conversations_by_user(
            caller_id, include_archived=include_archived, limit=limit, offset=offset
        )
        for row in rows:
            if not row.is_archived:
                await self._auto_subscribe(caller_id, row.conversation_id)
        return rows, total

    async def set_archived(self, caller_id: str, conversation_id: int, archived: bool) -> ConversationDetails:
        await self._require_participant(conversation_id, caller_id)
        await self._store.set_archived(conversation_id, archived)
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound
        return await self._store.get_conversation_details(conversation, caller_id)

    async def count_unread(self, caller_id: str, conversation_id: int) -> int:
        await self._require_participant(conversation_id, caller_id)
        return await self._store.count_unread_messages(conversation_id, caller_id)

    async def subscribe(self, caller_id: str, conversation_id: int) -> bool:
        """Subscribe the caller's live socket. Returns False when the caller has none."""
        await self._require_participant(conversation_id, caller_id)
        return await self._realtime.subscribe_to_conversation(caller_id, conversation_id)

    async def unsubscribe(self, caller_id: str, conversation_id: int) -> None:
        await self._require_participant(conversation_id, caller_id)
        await self._realtime.unsubscribe_from_conversation(caller_id, conversation_id)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def send_message(
        self,
        caller_id: str,
        conversation_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        attachments: Sequence[dict[str, Any]] = (),
    ) -> MessageDetails:
        await self._require_participant(conversation_id, caller_id)
        text = self._clean_text(text)
        if reply_to_message_id is not None:
            parent = await self._store.get_message(reply_to_message_id)
            if parent is None or parent.conversation_id != conversation_id:
                msg = "Reply target not found in this conversation"
                raise MessageNotFound(msg)

        message = await self._store.create_message(
            conversation_id, caller_id, text, reply_to_message_id, attachments
        )
        details = await self._store.hydrate_message(message, caller_id)
        logger.info("message_sent", conversation_id=conversation_id, message_id=message.id, sender_id=caller_id)
        await self._emit("new_message", self._realtime.broadcast_new_message(conversation_id, details))
        return details

    async def list_messages(
        self,
        caller_id: str,
        conversation_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MessageDetails], int]:
        await self._require_participant(conversation_id, caller_id)
        await self._auto_subscribe(caller_id, conversation_id)
        return await self._store.list_messages(conversation_id, caller_id, limit=limit, offset=offset)

    async def edit_message(self, caller_id: str, message_id: int, text: str) -> MessageDetails:
        """
        Replace the text of the caller's own message.

        Raises:
            MessageNotFound, NotParticipant, NotMessageSender, MessageDeleted,
            MessageEmpty, MessageTooLong
        """
        message = await self._require_own_live_message(message_id, caller_id)
        text = self._clean_text(text)
        updated = await self._store.update_message(message_id, text)
        if updated is None:
            raise MessageDeleted
        details = await self._store.hydrate_message(updated, caller_id)
        await self._emit("message_edited", self._realtime.broadcast_message_edited(message.conversation_id, details))
        return details

    async def delete_message(self, caller_id: str, message_id: int) -> None:
        message = await self._require_own_live_message(message_id, caller_id)
        if await self._store.delete_message(message_id) is None:
            raise MessageDeleted
        logger.info("message_deleted", conversation_id=message.conversation_id, message_id=message_id)
        await self._emit(
            "message_deleted", self._realtime.broadcast_message_deleted(message.conversation_id, message_id)
        )

    async def mark_as_read(self, caller_id: str, message_id: int) -> bool:
        """
        Record a read receipt. Returns False when the caller sent the message (nothing recorded).

        ``message_read`` is pushed only the first time the caller reads the message.
        """
        message = await self._store.get_message(message_id)
        if message is None:
            raise MessageNotFound
        await self._require_participant(message.conversation_id, caller_id)
        if message.is_deleted:
            raise MessageDeleted
        if message.sender_id == caller_id:
            return False
        if await self._store.mark_message_as_read(message_id, caller_id):
            await self._emit(
                "message_read",
                self._realtime.broadcast_message_read(message.conversation_id, message_id, caller_id),
            )
        return True

    async def mark_all_as_read(self, caller_id: str, conversation_id: int) -> int:
        """Receipt everything the other participant sent. No events are emitted."""
        await self._require_participant(conversation_id, caller_id)
        return await self._store.mark_all_as_read(conversation_id, caller_id)

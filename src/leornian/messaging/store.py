"""
Conversation and message persistence.

``MessageStore`` owns every query of the messaging core. It does not authorize:
callers check ``is_participant`` (and sender identity for edits) first. Deleted
messages stay in place as tombstones but are never listed or counted.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import String, exists, func, literal, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from leornian.db.base import UTCDateTime, utcnow
from leornian.db.models import (
    DELETED_MESSAGE_TEXT,
    Conversation,
    Message,
    MessageAttachment,
    MessageReadStatus,
    User,
)
from leornian.errors import ConversationExists

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@dataclass
class AttachmentDetails:
    attachment_id: int
    message_id: int
    attachment_type: str
    file_name: str
    file_url: str
    file_size: int | None
    mime_type: str | None
    metadata: dict[str, Any] | None
    uploaded_at: datetime

    @classmethod
    def from_row(cls, row: MessageAttachment) -> AttachmentDetails:
        return cls(
            attachment_id=row.id,
            message_id=row.message_id,
            attachment_type=row.attachment_type,
            file_name=row.file_name,
            file_url=row.file_url,
            file_size=row.file_size,
            mime_type=row.mime_type,
            metadata=row.extra_data,
            uploaded_at=row.uploaded_at,
        )


@dataclass
class MessageDetails:
    """A message hydrated with sender display fields and the viewer's read state."""

    message_id: int
    conversation_id: int
    sender_id: str
    message_text: str
    sent_at: datetime
    edited_at: datetime | None
    is_deleted: bool
    deleted_at: datetime | None
    reply_to_message_id: int | None
    sender_name: str = ""
    sender_image: str | None = None
    is_read: bool = False
    attachments: list[AttachmentDetails] = field(default_factory=list)
    reply_to_message: MessageDetails | None = None


@dataclass
class ConversationOverview:
    """One row of a user's inbox."""

    conversation_id: int
    coach_id: str
    client_id: str
    coach_name: str
    coach_image: str | None
    client_name: str
    client_image: str | None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None
    is_archived: bool
    last_message_text: str | None = None
    last_message_sender_id: str | None = None
    last_message_sent_at: datetime | None = None
    total_messages: int = 0
    unread_count: int = 0


@dataclass
class ConversationDetails:
    conversation_id: int
    coach_id: str
    client_id: str
    coach_name: str
    coach_image: str | None
    client_name: str
    client_image: str | None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None
    is_archived: bool
    last_message: MessageDetails | None
    unread_count: int
    total_messages: int


def _live(conversation_id: int) -> tuple[Any, ...]:
    return (Message.conversation_id == conversation_id, Message.is_deleted.is_(False))


def _unread_by(user_id: str) -> tuple[Any, ...]:
    """Non-deleted messages from the other participant without a receipt for ``user_id``."""
    receipt = exists().where(MessageReadStatus.message_id == Message.id, MessageReadStatus.user_id == user_id)
    return (Message.sender_id != user_id, Message.is_deleted.is_(False), ~receipt)


class MessageStore:
    """Database-backed conversation and message repository."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    async def create_conversation(self, coach_id: str, client_id: str) -> Conversation:
        """
        Insert a conversation for the pair.

        Raises:
            ConversationExists: The pair already has a conversation.
        """
        now = utcnow()
        conversation = Conversation(coach_id=coach_id, client_id=client_id, created_at=now, updated_at=now)
        self._db.add(conversation)
        try:
            await self._db.commit()
        except IntegrityError as e:
            await self._db.rollback()
            raise ConversationExists from e
        return conversation

    async def get_conversation(self, conversation_id: int) -> Conversation | None:
        result = await self._db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_conversation_by_participants(self, coach_id: str, client_id: str) -> Conversation | None:
        result = await self._db.execute(
            select(Conversation).where(Conversation.coach_id == coach_id, Conversation.client_id == client_id)
        )
        return result.scalar_one_or_none()

    async def is_participant(self, conversation_id: int, user_id: str) -> bool:
        result = await self._db.execute(
            select(Conversation.id).where(
                Conversation.id == conversation_id,
                or_(Conversation.coach_id == user_id, Conversation.client_id == user_id),
            )
        )
        return result.first() is not None

    async def set_archived(self, conversation_id: int, archived: bool) -> None:
        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(is_archived=archived, updated_at=utcnow())
        )
        await self._db.commit()

    async def list_conversations_by_user(
        self,
        user_id: str,
        *,
        include_archived: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ConversationOverview], int]:
        """
        Inbox page for ``user_id``, most recently active first.

        Returns:
            (overview rows for the page, total number of conversations)
        """
        base = select(Conversation).where(or_(Conversation.coach_id == user_id, Conversation.client_id == user_id))
        if not include_archived:
            base = base.where(Conversation.is_archived.is_(False))

        total = await self._db.scalar(select(func.count()).select_from(base.subquery()))
        result = await self._db.execute(
            base.order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        conversations = list(result.scalars().all())
        if not conversations:
            return [], int(total or 0)

        ids = [c.id for c in conversations]
        latest = await self._latest_messages(ids)
        counts = await self._message_counts(ids)
        unread = await self._unread_counts(ids, user_id)
        users = await self.get_users({uid for c in conversations for uid in c.participants()})

        rows = []
        for c in conversations:
            coach, client = users.get(c.coach_id), users.get(c.client_id)
            last = latest.get(c.id)
            rows.append(
                ConversationOverview(
                    conversation_id=c.id,
                    coach_id=c.coach_id,
                    client_id=c.client_id,
                    coach_name=coach.name if coach else "",
                    coach_image=coach.image if coach else None,
                    client_name=client.name if client else "",
                    client_image=client.image if client else None,
                    created_at=c.created_at,
                    updated_at=c.updated_at,
                    last_message_at=c.last_message_at,
                    is_archived=c.is_archived,
                    last_message_text=last.message_text if last else None,
                    last_message_sender_id=last.sender_id if last else None,
                    last_message_sent_at=last.sent_at if last else None,
                    total_messages=counts.get(c.id, 0),
                    unread_count=unread.get(c.id, 0),
                )
            )
        return rows, int(total or 0)

    async def get_conversation_details(self, conversation: Conversation, viewer_id: str) -> ConversationDetails:
        users = await self.get_users(set(conversation.participants()))
        coach, client = users.get(conversation.coach_id), users.get(conversation.client_id)
        last = (await self._latest_messages([conversation.id])).get(conversation.id)
        return ConversationDetails(
            conversation_id=conversation.id,
            coach_id=conversation.coach_id,
            client_id=conversation.client_id,
            coach_name=coach.name if coach else "",
            coach_image=coach.image if coach else None,
            client_name=client.name if client else "",
            client_image=client.image if client else None,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            last_message_at=conversation.last_message_at,
            is_archived=conversation.is_archived,
            last_message=await self.hydrate_message(last, viewer_id) if last else None,
            unread_count=await self.count_unread_messages(conversation.id, viewer_id),
            total_messages=(await self._message_counts([conversation.id])).get(conversation.id, 0),
        )

    async def _latest_messages(self, conversation_ids: Sequence[int]) -> dict[int, Message]:
        newest = (
            select(func.max(Message.id))
            .where(Message.conversation_id.in_(conversation_ids), Message.is_deleted.is_(False))
            .group_by(Message.conversation_id)
        )
        result = await self._db.execute(select(Message).where(Message.id.in_(newest)))
        return {m.conversation_id: m for m in result.scalars().all()}

    async def _message_counts(self, conversation_ids: Sequence[int]) -> dict[int, int]:
        result = await self._db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.conversation_id.in_(conversation_ids), Message.is_deleted.is_(False))
            .group_by(Message.conversation_id)
        )
        return {cid: int(n) for cid, n in result.all()}

    async def _unread_counts(self, conversation_ids: Sequence[int], user_id: str) -> dict[int, int]:
        result = await self._db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.conversation_id.in_(conversation_ids), *_unread_by(user_id))
            .group_by(Message.conversation_id)
        )
        return {cid: int(n) for cid, n in result.all()}

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def create_message(
        self,
        conversation_id: int,
        sender_id: str,
        text: str,
        reply_to_message_id: int | None = None,
        attachments: Sequence[dict[str, Any]] = (),
    ) -> Message:
        """Insert a message with its attachment descriptors and bump the conversation's activity timestamps."""
        now = utcnow()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            message_text=text,
            sent_at=now,
            reply_to_message_id=reply_to_message_id,
        )
        self._db.add(message)
        if attachments:
            await self._db.flush()
            for attachment in attachments:
                await self.create_attachment(message.id, commit=False, **attachment)
        await self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_at=now, updated_at=now)
        )
        await self._db.commit()
        return message

    async def get_message(self, message_id: int) -> Message | None:
        result = await self._db.execute(
            select(Message).where(Message.id == message_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_message(self, message_id: int, text: str) -> Message | None:
        """Replace the text of a live message. Returns None when it is missing or tombstoned."""
        result = await self._db.execute(
            update(Message)
            .where(Message.id == message_id, Message.is_deleted.is_(False))
            .values(message_text=text, edited_at=utcnow())
        )
        await self._db.commit()
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None
        return await self.get_message(message_id)

    async def delete_message(self, message_id: int) -> Message | None:
        """Tombstone a live message. Returns None when it is missing or already deleted."""
        result = await self._db.execute(
            update(Message)
            .where(Message.id == message_id, Message.is_deleted.is_(False))
            .values(is_deleted=True, deleted_at=utcnow(), message_text=DELETED_MESSAGE_TEXT)
        )
        await self._db.commit()
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None
        return await self.get_message(message_id)

    async def list_messages(
        self,
        conversation_id: int,
        viewer_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MessageDetails], int]:
        """
        Page of live messages, newest first, hydrated for ``viewer_id``.

        Returns:
            (messages, total live messages in the conversation)
        """
        total = await self._db.scalar(select(func.count(Message.id)).where(*_live(conversation_id)))
        result = await self._db.execute(
            select(Message)
            .where(*_live(conversation_id))
            .order_by(Message.sent_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._hydrate(list(result.scalars().all()), viewer_id), int(total or 0)

    async def hydrate_message(self, message: Message, viewer_id: str) -> MessageDetails:
        return (await self._hydrate([message], viewer_id))[0]

    async def _hydrate(self, messages: list[Message], viewer_id: str) -> list[MessageDetails]:
        if not messages:
            return []
        ids = [m.id for m in messages]
        reply_ids = {m.reply_to_message_id for m in messages if m.reply_to_message_id is not None}

        replies: dict[int, Message] = {}
        if reply_ids:
            result = await self._db.execute(select(Message).where(Message.id.in_(reply_ids)))
            replies = {m.id: m for m in result.scalars().all()}

        users = await self.get_users({m.sender_id for m in messages} | {r.sender_id for r in replies.values()})
        read = await self._db.execute(
            select(MessageReadStatus.message_id).where(
                MessageReadStatus.user_id == viewer_id, MessageReadStatus.message_id.in_(ids)
            )
        )
        read_ids = set(read.scalars().all())
        attachments = await self.list_attachments(ids)

        def build(m: Message, *, with_reply: bool) -> MessageDetails:
            sender = users.get(m.sender_id)
            reply = replies.get(m.reply_to_message_id) if with_reply and m.reply_to_message_id else None
            return MessageDetails(
                message_id=m.id,
                conversation_id=m.conversation_id,
                sender_id=m.sender_id,
                message_text=m.message_text,
                sent_at=m.sent_at,
                edited_at=m.edited_at,
                is_deleted=m.is_deleted,
                deleted_at=m.deleted_at,
                reply_to_message_id=m.reply_to_message_id,
                sender_name=sender.name if sender else "",
                sender_image=sender.image if sender else None,
                is_read=m.id in read_ids,
                attachments=attachments.get(m.id, []),
                reply_to_message=build(reply, with_reply=False) if reply else None,
            )

        return [build(m, with_reply=True) for m in messages]

    # -----------------------------------------------------------------------
    # Read receipts
    # -----------------------------------------------------------------------

    def _upsert(self) -> Any:  # noqa: ANN401
        dialect = self._db.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is None:
            msg = f"Read receipts need ON CONFLICT support; unsupported dialect: {dialect}"
            raise RuntimeError(msg)
        return insert(MessageReadStatus.__table__)

    async def mark_message_as_read(self, message_id: int, user_id: str) -> bool:
        """Record a receipt. Repeated calls leave exactly one row; returns True only for the first."""
        stmt = (
            self._upsert()
            .values(message_id=message_id, user_id=user_id, read_at=utcnow())
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        result = await self._db.execute(stmt)
        await self._db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_all_as_read(self, conversation_id: int, user_id: str) -> int:
        """Receipt every live message of the other participant. Returns the number of new receipts."""
        unread = select(
            Message.id,
            literal(user_id, String()),
            literal(utcnow(), UTCDateTime()),
        ).where(Message.conversation_id == conversation_id, *_unread_by(user_id))
        stmt = (
            self._upsert()
            .from_select(["message_id", "user_id", "read_at"], unread)
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        result = await self._db.execute(stmt)
        await self._db.commit()
        return max(int(result.rowcount or 0), 0)  # type: ignore[attr-defined]

    async def count_unread_messages(self, conversation_id: int, user_id: str) -> int:
        count = await self._db.scalar(
            select(func.count(Message.id)).where(Message.conversation_id == conversation_id, *_unread_by(user_id))
        )
        return int(count or 0)

    # -----------------------------------------------------------------------
    # Attachments
    # -----------------------------------------------------------------------

    async def create_attachment(
        self,
        message_id: int,
        *,
        attachment_type: str,
        file_name: str,
        file_url: str,
        file_size: int | None = None,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> MessageAttachment:
        attachment = MessageAttachment(
            message_id=message_id,
            attachment_type=attachment_type,
            file_name=file_name,
            file_url=file_url,
            file_size=file_size,
            mime_type=mime_type,
            extra_data=metadata,
        )
        self._db.add(attachment)
        if commit:
            await self._db.commit()
        return attachment

    async def list_attachments(self, message_ids: Sequence[int]) -> dict[int, list[AttachmentDetails]]:
        if not message_ids:
            return {}
        result = await self._db.execute(
            select(MessageAttachment)
            .where(MessageAttachment.message_id.in_(message_ids))
            .order_by(MessageAttachment.uploaded_at, MessageAttachment.id)
        )
        grouped: defaultdict[int, list[AttachmentDetails]] = defaultdict(list)
        for row in result.scalars().all():
            grouped[row.message_id].append(AttachmentDetails.from_row(row))
        return dict(grouped)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    async def get_users(self, user_ids: set[str]) -> dict[str, User]:
        if not user_ids:
            return {}
        result = await self._db.execute(select(User).where(User.id.in_(user_ids)))
        return {u.id: u for u in result.scalars().all()}

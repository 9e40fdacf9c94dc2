"""Bridge between the message store and the hub: subscriptions, events, connection loop."""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from leornian.database import session_scope
from leornian.db.base import utcnow
from leornian.messaging.hub import Hub, conversation_channel
from leornian.messaging.schemas import MessageOut, RealtimeEvent
from leornian.messaging.store import MessageDetails, MessageStore

logger = structlog.get_logger()

NEW_MESSAGE = "new_message"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
MESSAGE_READ = "message_read"
ERROR = "error"


def build_event(
    event_type: str,
    conversation_id: int | None = None,
    *,
    message: MessageDetails | None = None,
    message_id: int | None = None,
    read_by: str | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """JSON-ready server frame. Unset optional fields are left out."""
    event = RealtimeEvent(
        type=event_type,
        conversation_id=conversation_id,
        message=MessageOut.model_validate(message) if message is not None else None,
        message_id=message_id,
        read_by=read_by,
        error=error,
        timestamp=utcnow(),
    )
    return event.model_dump(mode="json", exclude_none=True)


class RealtimeService:
    """
    Domain layer over the hub.

    ``store`` serves request-path calls. Without one (the long-lived socket
    loop), each participant check opens its own short session.
    """

    def __init__(self, hub: Hub, store: MessageStore | None = None) -> None:
        self._hub = hub
        self._store = store

    @property
    def hub(self) -> Hub:
        return self._hub

    # -----------------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------------

    async def subscribe_to_conversation(self, user_id: str, conversation_id: int) -> bool:
        """
        Subscribe a connected participant to the conversation channel.

        Returns False for non-participants (whether or not the conversation
        exists) and for users without a live connection.
        """
        if self._store is None:
            async with session_scope() as db:
                scoped = RealtimeService(self._hub, MessageStore(db))
                return await scoped.subscribe_to_conversation(user_id, conversation_id)
        if not await self._store.is_participant(conversation_id, user_id):
            logger.info("ws_subscribe_refused", user_id=user_id, conversation_id=conversation_id)
            return False
        return await self._hub.subscribe(user_id, conversation_channel(conversation_id))

    async def unsubscribe_from_conversation(self, user_id: str, conversation_id: int) -> None:
        await self._hub.unsubscribe(user_id, conversation_channel(conversation_id))

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    async def broadcast_new_message(self, conversation_id: int, message: MessageDetails) -> int:
        return await self._broadcast(conversation_id, build_event(NEW_MESSAGE, conversation_id, message=message))

    async def broadcast_message_edited(self, conversation_id: int, message: MessageDetails) -> int:
        return await self._broadcast(conversation_id, build_event(MESSAGE_EDITED, conversation_id, message=message))

    async def broadcast_message_deleted(self, conversation_id: int, message_id: int) -> int:
        return await self._broadcast(
            conversation_id, build_event(MESSAGE_DELETED, conversation_id, message_id=message_id)
        )

    async def broadcast_message_read(self, conversation_id: int, message_id: int, read_by: str) -> int:
        return await self._broadcast(
            conversation_id,
            build_event(MESSAGE_READ, conversation_id, message_id=message_id, read_by=read_by),
        )

    async def _broadcast(self, conversation_id: int, event: dict[str, Any]) -> int:
        """Send to each participant that is connected and subscribed. Returns deliveries."""
        if self._store is None:
            msg = "Broadcasting needs a message store"
            raise RuntimeError(msg)
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            return 0
        channel = conversation_channel(conversation_id)
        sent = 0
        for user_id in conversation.participants():
            if await self._hub.is_subscribed(user_id, channel) and await self._hub.send_message(user_id, event):
                sent += 1
        logger.debug("ws_event_broadcast", event=event["type"], conversation_id=conversation_id, delivered=sent)
        return sent

    # -----------------------------------------------------------------------
    # Connection loop
    # -----------------------------------------------------------------------

    async def handle_connection(self, user_id: str, websocket: WebSocket) -> None:
        """Serve one authenticated socket until the peer goes away.

        Protocol:
            Client -> Server:
                {"action": "subscribe", "conversation_id": 12}
                {"action": "unsubscribe", "conversation_id": 12}
                {"action": "ping"}

            Server -> Client:
                {"type": "new_message" | "message_edited" | "message_deleted" | "message_read", ...}
                {"type": "subscribed", "conversation_id": 12}
                {"type": "unsubscribed", "conversation_id": 12}
                {"type": "pong"}
                {"type": "error", "error": "..."}
        """
        await websocket.accept()
        conn = await self._hub.register(user_id, websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self._hub.send(conn, await self._handle_frame(user_id, raw))
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("ws_error", user_id=user_id)
        finally:
            await self._hub.unregister(conn)

    async def _handle_frame(self, user_id: str, raw: str) -> dict[str, Any]:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            return build_event(ERROR, error="Invalid JSON")
        if not isinstance(frame, dict):
            return build_event(ERROR, error="Invalid frame")

        action = frame.get("action")
        if action == "ping":
            return build_event("pong")
        if action not in ("subscribe", "unsubscribe"):
            return build_event(ERROR, error=f"Unknown action: {action}")

        conversation_id = frame.get("conversation_id")
        if not isinstance(conversation_id, int) or isinstance(conversation_id, bool):
            return build_event(ERROR, error="conversation_id must be an integer")

        if action == "subscribe":
            if not await self.subscribe_to_conversation(user_id, conversation_id):
                return build_event(ERROR, conversation_id, error="Unable to subscribe to conversation")
            return build_event("subscribed", conversation_id)

        await self.unsubscribe_from_conversation(user_id, conversation_id)
        return build_event("unsubscribed", conversation_id)

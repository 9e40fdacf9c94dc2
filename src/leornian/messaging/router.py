"""Messaging router: conversations, messages, and the real-time socket."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from leornian.auth.dependencies import Identity, get_identity, require_admin, resolve_ws_token
from leornian.auth.tokens import get_token_minter
from leornian.database import get_session
from leornian.errors import AppError
from leornian.messaging.hub import Hub
from leornian.messaging.realtime import RealtimeService
from leornian.messaging.schemas import (
    ArchiveRequest,
    ConversationOut,
    ConversationResponse,
    ConversationsResponse,
    ConversationSummary,
    CreateConversationRequest,
    MarkAllReadResponse,
    MessageOut,
    MessageResponse,
    MessagesResponse,
    RealtimeStatsResponse,
    SendMessageRequest,
    StatusMessage,
    SubscriptionResponse,
    UnreadCountResponse,
    UpdateMessageRequest,
)
from leornian.messaging.service import MessageService
from leornian.messaging.store import MessageStore

router = APIRouter(tags=["Messaging"])

WS_POLICY_VIOLATION = 4001


def get_hub(request: Request) -> Hub:
    return request.app.state.hub  # type: ignore[no-any-return]


def get_message_service(
    db: AsyncSession = Depends(get_session),
    hub: Hub = Depends(get_hub),
) -> MessageService:
    store = MessageStore(db)
    return MessageService(store, RealtimeService(hub, store))


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.post("/conversations", response_model=ConversationResponse, status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    response: Response,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> ConversationResponse:
    """Open the coach/client conversation, or return the existing one with 200."""
    details, created = await service.create_conversation(identity.user_id, body.coach_id, body.client_id)
    conversation = ConversationOut.model_validate(details)
    if created:
        return ConversationResponse(conversation=conversation)
    response.status_code = 200
    return ConversationResponse(conversation=conversation, message="Conversation already exists")


@router.get("/conversations", response_model=ConversationsResponse)
async def list_conversations(
    include_archived: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> ConversationsResponse:
    rows, total = await service.list_conversations(
        identity.user_id, include_archived=include_archived, limit=limit, offset=offset
    )
    return ConversationsResponse(
        conversations=[ConversationSummary.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(rows) < total,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> ConversationResponse:
    details = await service.get_conversation(identity.user_id, conversation_id)
    return ConversationResponse(conversation=ConversationOut.model_validate(details))


@router.get("/conversations/{conversation_id}/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    conversation_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> UnreadCountResponse:
    count = await service.count_unread(identity.user_id, conversation_id)
    return UnreadCountResponse(conversation_id=conversation_id, unread_count=count)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagesResponse)
async def list_messages(
    conversation_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> MessagesResponse:
    """Live messages, newest first."""
    messages, total = await service.list_messages(identity.user_id, conversation_id, limit=limit, offset=offset)
    return MessagesResponse(
        messages=[MessageOut.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(messages) < total,
    )


@router.post("/conversations/{conversation_id}/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    conversation_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> MarkAllReadResponse:
    marked = await service.mark_all_as_read(identity.user_id, conversation_id)
    return MarkAllReadResponse(message="All messages marked as read", marked=marked)


@router.put("/conversations/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: int,
    body: ArchiveRequest,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> ConversationResponse:
    details = await service.set_archived(identity.user_id, conversation_id, body.is_archived)
    return ConversationResponse(conversation=ConversationOut.model_validate(details))


@router.post("/conversations/{conversation_id}/subscribe", response_model=SubscriptionResponse)
async def subscribe(
    conversation_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> SubscriptionResponse:
    """Subscribe the caller's open socket; ``connected`` is false when there is none."""
    connected = await service.subscribe(identity.user_id, conversation_id)
    return SubscriptionResponse(status="subscribed", conversation_id=conversation_id, connected=connected)


@router.post("/conversations/{conversation_id}/unsubscribe", response_model=SubscriptionResponse)
async def unsubscribe(
    conversation_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
    hub: Hub = Depends(get_hub),
) -> SubscriptionResponse:
    await service.unsubscribe(identity.user_id, conversation_id)
    connected = await hub.is_connected(identity.user_id)
    return SubscriptionResponse(status="unsubscribed", conversation_id=conversation_id, connected=connected)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.post("/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    body: SendMessageRequest,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> MessageResponse:
    """Persist a message and push ``new_message`` to subscribed participants."""
    details = await service.send_message(
        identity.user_id,
        body.conversation_id,
        body.message_text,
        body.reply_to_message_id,
        [a.model_dump() for a in body.attachments],
    )
    return MessageResponse(message=MessageOut.model_validate(details))


@router.put("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: int,
    body: UpdateMessageRequest,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> MessageResponse:
    details = await service.edit_message(identity.user_id, message_id, body.message_text)
    return MessageResponse(message=MessageOut.model_validate(details))


@router.delete("/messages/{message_id}", response_model=StatusMessage)
async def delete_message(
    message_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> StatusMessage:
    await service.delete_message(identity.user_id, message_id)
    return StatusMessage(message="Message deleted successfully")


@router.post("/messages/{message_id}/read", response_model=StatusMessage)
async def mark_read(
    message_id: int,
    identity: Identity = Depends(get_identity),
    service: MessageService = Depends(get_message_service),
) -> StatusMessage:
    await service.mark_as_read(identity.user_id, message_id)
    return StatusMessage(message="Message marked as read")


# ---------------------------------------------------------------------------
# Real-time
# ---------------------------------------------------------------------------


@router.get("/ws/stats", response_model=RealtimeStatsResponse, dependencies=[Depends(require_admin)])
async def realtime_stats(hub: Hub = Depends(get_hub)) -> RealtimeStatsResponse:
    return RealtimeStatsResponse(**await hub.get_stats())


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Authenticated real-time channel.

    The token comes from ``?token=``, the Authorization header, or the auth cookie.
    """
    token = resolve_ws_token(websocket)
    if token is None:
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Authentication required")
        return
    try:
        claims = get_token_minter().validate(token)
    except AppError as e:
        await websocket.close(code=WS_POLICY_VIOLATION, reason=e.message)
        return

    hub: Hub = websocket.app.state.hub
    await RealtimeService(hub).handle_connection(claims.user_id, websocket)

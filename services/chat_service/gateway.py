"""WebSocket transport: authenticates sockets and turns client events into pipeline calls.

Frames are JSON. Clients send ``{"event", "data", "ref"}``; every request is answered
with an ``ack`` or ``error`` frame carrying the same ``ref``.
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from database import SessionLocal
from auth import decode_user_id, extract_token
from errors import BadRequest, ChatError
from registry import Connection, chat_room
from dispatcher import (
    dispatcher, plan_new_message, plan_read, plan_typing, registry, room_router,
)
from schemas import (
    Ack, ChatSendRequest, ClientRequest, ConversationRef, ErrorData, ErrorReply,
    PresenceSnapshot, PresenceSnapshotData, SendMessageRequest, TypingRequest,
)
import conversations
import messages
import json
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chat", tags=["chat-realtime"])


def presence_snapshot() -> PresenceSnapshot:
    return PresenceSnapshot(data=PresenceSnapshotData(user_ids=registry.snapshot()))


async def on_presence_sync(connection: Connection, db: Session, data: dict) -> dict:
    await connection.send(presence_snapshot())
    return {"ok": True}


async def on_join(connection: Connection, db: Session, data: dict) -> dict:
    request = ConversationRef.model_validate(data)
    await run_in_threadpool(conversations.ensure_member, db, connection.user_id, request.conversation_id)
    room_router.join(connection, chat_room(request.conversation_id))
    return {"ok": True, "conversation_id": request.conversation_id}


async def on_leave(connection: Connection, db: Session, data: dict) -> dict:
    request = ConversationRef.model_validate(data)
    room_router.leave(connection, chat_room(request.conversation_id))
    return {"ok": True, "conversation_id": request.conversation_id}


async def on_typing(connection: Connection, db: Session, data: dict) -> dict:
    request = TypingRequest.model_validate(data)
    if chat_room(request.conversation_id) not in connection.rooms:
        await run_in_threadpool(conversations.ensure_member, db, connection.user_id, request.conversation_id)
    await dispatcher.deliver(plan_typing(request.conversation_id, connection.user_id, request.is_typing))
    return {"ok": True}


async def on_read(connection: Connection, db: Session, data: dict) -> dict:
    request = ConversationRef.model_validate(data)
    result = await run_in_threadpool(messages.mark_read, db, connection.user_id, request.conversation_id)
    await dispatcher.deliver(plan_read(result.conversation_id, connection.user_id, result.read_at, result.type))
    return {"ok": True, "read_at": result.read_at.isoformat(), "type": result.type.value}


async def on_send(connection: Connection, db: Session, data: dict) -> dict:
    request = ChatSendRequest.model_validate(data)
    payload = SendMessageRequest(
        text=request.text,
        type=request.type,
        attachments=request.attachments,
        client_message_id=request.client_message_id,
    )
    result = await run_in_threadpool(
        messages.send, db, connection.user_id, payload,
        conversation_id=request.conversation_id,
        other_user_id=request.other_user_id,
    )
    if result.created:
        await dispatcher.deliver(plan_new_message(result.conversation.id, result.message, result.receiver_ids))
    return {
        "ok": True,
        "conversation_id": result.conversation.id,
        "message": result.message.model_dump(mode="json"),
    }


HANDLERS = {
    "presence:sync": on_presence_sync,
    "chat:join": on_join,
    "chat:leave": on_leave,
    "chat:typing": on_typing,
    "chat:read": on_read,
    "chat:send": on_send,
}


async def handle_frame(connection: Connection, raw: str):
    """Run one client frame and build its reply."""
    ref = None
    try:
        try:
            request = ClientRequest.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            raise BadRequest("Malformed frame")
        ref = request.ref
        handler = HANDLERS.get(request.event)
        if handler is None:
            raise BadRequest(f"Unknown event: {request.event}")

        db = SessionLocal()
        try:
            result = await handler(connection, db, request.data)
        finally:
            db.close()
        return Ack(ref=ref, data=result)
    except ValidationError as exc:
        return ErrorReply(ref=ref, data=ErrorData(status=400, detail=str(exc.errors()[0].get("msg", "Invalid payload"))))
    except ChatError as exc:
        logger.info("Rejected %s from %s: %s", ref, connection.user_id, exc.detail)
        return ErrorReply(ref=ref, data=ErrorData(status=exc.status_code, detail=exc.detail))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    user_id = decode_user_id(extract_token(websocket.query_params, websocket.headers))
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = Connection(websocket)
    came_online = registry.register(connection, user_id)
    logger.info("Socket %s connected for user %s", connection.id, user_id)
    try:
        await connection.send(presence_snapshot())
        if came_online:
            await dispatcher.broadcast_presence(user_id, True)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            reply = await handle_frame(connection, raw)
            await connection.send(reply)
    except WebSocketDisconnect:
        pass
    finally:
        went_offline = registry.unregister(connection)
        logger.info("Socket %s disconnected for user %s", connection.id, user_id)
        if went_offline:
            await dispatcher.broadcast_presence(user_id, False)

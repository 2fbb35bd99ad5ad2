"""Message pipeline: send, edit, revoke, hide, react, list and read tracking."""
from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from models import (
    Conversation, ConversationType, Message, MessageHidden,
    MessageReaction, MessageType, utcnow,
)
from schemas import MessageResponse, ReactionResponse, SendMessageRequest
from errors import BadRequest, Forbidden, NotFound
from broker import publish_event
import conversations
import storage

DEFAULT_PAGE_SIZE = 40
MAX_PAGE_SIZE = 100
MAX_EMOJI_LENGTH = 32
MAX_CLIENT_ID_LENGTH = 64


@dataclass
class SendResult:
    conversation: Conversation
    receiver_ids: List[str]
    message: MessageResponse
    created: bool = True


@dataclass
class ReadResult:
    conversation_id: str
    read_at: datetime
    type: ConversationType
    updated: int = 0


@dataclass
class MessageChange:
    conversation_id: str
    message: Optional[MessageResponse] = None
    reactions: List[ReactionResponse] = field(default_factory=list)


def to_message_response(message: Message, names: dict) -> MessageResponse:
    response = MessageResponse.model_validate(message)
    fallback = message.sender.name if message.sender else "User"
    return response.model_copy(update={"sender_display_name": names.get(message.sender_id) or fallback})


def with_display_names(db: Session, conversation_id: str, messages: List[Message]) -> List[MessageResponse]:
    if not messages:
        return []
    names = conversations.display_names(db, conversation_id)
    return [to_message_response(m, names) for m in messages]


def get_message(db: Session, message_id: str) -> Message:
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        raise NotFound("Message not found")
    return message


# ----- send -----

def _validate_payload(payload: SendMessageRequest):
    text = conversations.norm_text(payload.text)
    attachments = [a.model_dump() for a in (payload.attachments or [])]
    if not text and not attachments:
        raise BadRequest("Message is empty")
    client_id = conversations.norm_text(payload.client_message_id) or None
    if client_id and len(client_id) > MAX_CLIENT_ID_LENGTH:
        raise BadRequest("client_message_id is too long")
    return text, attachments, client_id


def _resolve_receivers(db: Session, conversation: Conversation, sender_id: str):
    """Returns (receiver_id, receiver_ids); receiver_id is only set for DMs."""
    member_ids = conversations.get_member_ids(db, conversation.id)
    if conversation.type == ConversationType.DM:
        other_id = next((uid for uid in member_ids if uid != sender_id), None)
        if other_id is None and conversation.user_a_id:
            # the peer left; sending brings the pair back together
            other_id = conversation.user_b_id if conversation.user_a_id == sender_id else conversation.user_a_id
            conversations.ensure_pair_members(db, conversation, (sender_id, other_id))
        if other_id is None:
            raise BadRequest("Direct conversation has no recipient")
        return other_id, [other_id]
    return None, [uid for uid in member_ids if uid != sender_id]


def _existing_retry(db: Session, client_id: str, sender_id: str, conversation_id: str):
    existing = db.query(Message).filter(Message.id == client_id).first()
    if existing is None:
        return None
    if existing.sender_id != sender_id or existing.conversation_id != conversation_id:
        raise Forbidden("Message id already used")
    return existing


def _persist(db: Session, conversation: Conversation, sender_id: str, payload: SendMessageRequest) -> SendResult:
    text, attachments, client_id = _validate_payload(payload)
    receiver_id, receiver_ids = _resolve_receivers(db, conversation, sender_id)

    if client_id:
        existing = _existing_retry(db, client_id, sender_id, conversation.id)
        if existing is not None:
            [message] = with_display_names(db, conversation.id, [existing])
            return SendResult(conversation, receiver_ids, message, created=False)

    fields = dict(
        conversation_id=conversation.id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        text=text,
        type=MessageType(payload.type or MessageType.TEXT),
        attachments=attachments or None,
    )
    if client_id:
        fields["id"] = client_id
    message = Message(**fields)
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_retry(db, client_id, sender_id, conversation.id) if client_id else None
        if existing is None:
            raise
        [response] = with_display_names(db, conversation.id, [existing])
        return SendResult(conversation, receiver_ids, response, created=False)

    db.refresh(message)
    conversation.last_message_at = message.created_at
    db.commit()
    db.refresh(message)

    [response] = with_display_names(db, conversation.id, [message])
    publish_event("chat.message", {
        "conversation_id": conversation.id,
        "message_id": message.id,
        "sender_id": sender_id,
        "recipient_ids": receiver_ids,
        "preview": conversations.preview_text(message)[:140],
    })
    return SendResult(conversation, receiver_ids, response)


def send_direct(db: Session, sender_id: str, other_user_id: str, payload: SendMessageRequest) -> SendResult:
    # an empty send must not create the conversation
    _validate_payload(payload)
    conversation = conversations.find_or_create_direct(db, sender_id, other_user_id)
    return _persist(db, conversation, sender_id, payload)


def send_to_conversation(db: Session, sender_id: str, conversation_id: str, payload: SendMessageRequest) -> SendResult:
    member = conversations.ensure_member(db, sender_id, conversation_id)
    return _persist(db, member.conversation, sender_id, payload)


def send(db: Session, sender_id: str, payload: SendMessageRequest,
         conversation_id: Optional[str] = None, other_user_id: Optional[str] = None) -> SendResult:
    if conversation_id:
        return send_to_conversation(db, sender_id, conversation_id, payload)
    if other_user_id:
        return send_direct(db, sender_id, other_user_id, payload)
    raise BadRequest("conversation_id or other_user_id is required")


# ----- mutations -----

def edit_message(db: Session, user_id: str, message_id: str, text: str) -> MessageChange:
    clean = conversations.norm_text(text)
    if not clean:
        raise BadRequest("Message text is empty")
    message = get_message(db, message_id)
    if message.deleted_at:
        raise BadRequest("Message was revoked")
    if message.sender_id != user_id:
        raise Forbidden("Only the sender can edit this message")

    message.text = clean
    message.edited_at = utcnow()
    db.commit()
    db.refresh(message)
    [response] = with_display_names(db, message.conversation_id, [message])
    return MessageChange(message.conversation_id, message=response)


def revoke_message(db: Session, user_id: str, message_id: str) -> MessageChange:
    message = get_message(db, message_id)
    if message.sender_id != user_id:
        raise Forbidden("Only the sender can revoke this message")

    # free storage before the references are dropped
    storage.remove_attachment_files(message.attachments)

    message.text = ""
    message.attachments = None
    if not message.deleted_at:
        message.deleted_at = utcnow()
    db.commit()
    db.refresh(message)
    [response] = with_display_names(db, message.conversation_id, [message])
    return MessageChange(message.conversation_id, message=response)


def hide_message(db: Session, user_id: str, message_id: str) -> MessageChange:
    message = get_message(db, message_id)
    conversations.ensure_member(db, user_id, message.conversation_id)

    exists = db.query(MessageHidden).filter(
        MessageHidden.user_id == user_id,
        MessageHidden.message_id == message_id
    ).first()
    if not exists:
        db.add(MessageHidden(user_id=user_id, message_id=message_id))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
    return MessageChange(message.conversation_id)


def list_reactions(db: Session, message_id: str) -> List[ReactionResponse]:
    rows = db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id
    ).order_by(MessageReaction.created_at.asc(), MessageReaction.id.asc()).all()
    return [ReactionResponse.model_validate(r) for r in rows]


def toggle_reaction(db: Session, user_id: str, message_id: str, emoji: str) -> MessageChange:
    clean = conversations.norm_text(emoji)
    if not clean or len(clean) > MAX_EMOJI_LENGTH:
        raise BadRequest("Invalid emoji")
    message = get_message(db, message_id)
    conversations.ensure_member(db, user_id, message.conversation_id)
    if message.deleted_at:
        raise BadRequest("Message was revoked")

    existing = db.query(MessageReaction).filter(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id,
        MessageReaction.emoji == clean
    ).first()
    if existing:
        db.delete(existing)
        db.commit()
    else:
        db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=clean))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()

    return MessageChange(message.conversation_id, reactions=list_reactions(db, message_id))


# ----- reads -----

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def list_messages(db: Session, user_id: str, conversation_id: str, limit: Optional[int] = None,
                  before: Optional[datetime] = None, before_id: Optional[str] = None) -> List[MessageResponse]:
    """Newest page before the cursor, returned oldest first.

    The cursor is the (created_at, id) of the oldest message already shown; without
    ``before_id`` every message sharing the ``before`` timestamp is excluded.
    """
    conversations.ensure_member(db, user_id, conversation_id)
    limit = max(1, min(int(limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))

    hidden = select(MessageHidden.message_id).where(MessageHidden.user_id == user_id)
    query = db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.id.notin_(hidden)
    )
    if before is not None:
        cursor = _as_utc(before)
        if before_id:
            query = query.filter(or_(
                Message.created_at < cursor,
                and_(Message.created_at == cursor, Message.id < before_id)
            ))
        else:
            query = query.filter(Message.created_at < cursor)

    newest_first = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    return with_display_names(db, conversation_id, list(reversed(newest_first)))


def mark_read(db: Session, user_id: str, conversation_id: str) -> ReadResult:
    member = conversations.ensure_member(db, user_id, conversation_id)
    conversation = member.conversation
    now = utcnow()

    if conversation.type == ConversationType.DM:
        updated = db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.receiver_id == user_id,
            Message.read_at.is_(None)
        ).update({"read_at": now}, synchronize_session=False)
        db.commit()
        return ReadResult(read_at=now, type=conversation.type, conversation_id=conversation_id, updated=updated)

    member.last_read_at = now
    db.commit()
    return ReadResult(read_at=now, type=conversation.type, conversation_id=conversation_id)

"""Maps completed chat mutations to wire events and the rooms that receive them.

The ``plan_*`` functions are pure: they never touch the database or sockets.
Conversation and private-channel deliveries overlap on purpose, so a member
viewing the conversation may get the same event twice; clients dedupe by id.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from schemas import (
    ChatConversationAdded, ChatConversationDeleted, ChatConversationRemoved,
    ChatConversationUpdated, ChatMembersUpdated, ChatNew, ChatRead, ChatTyping, ChatUpdate,
    ConversationDeletedUpdate, ConversationIdData, ConversationItemData, ConversationMarker,
    ConversationMarkerData, ConversationRemovedUpdate, ConversationSummary, MembersUpdatedData,
    MessageDeleted, MessageEdited, MessageHiddenUpdate, MessageResponse, NewMessageData,
    PresenceUpdate, PresenceUpdateData, ReactionResponse, ReactionsChanged, ReadReceiptData,
    TypingData,
)
from models import ConversationType
from registry import RoomRouter, SessionRegistry, chat_room, user_room
from errors import ChatError
import conversations
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    room: str
    event: BaseModel


def plan_new_message(conversation_id: str, message: MessageResponse, receiver_ids: Iterable[str]) -> List[Delivery]:
    event = ChatNew(data=NewMessageData(conversation_id=conversation_id, message=message))
    deliveries = [Delivery(chat_room(conversation_id), event)]
    deliveries += [Delivery(user_room(uid), event) for uid in receiver_ids]
    return deliveries


def plan_message_edited(conversation_id: str, message: MessageResponse) -> List[Delivery]:
    event = ChatUpdate(data=MessageEdited(conversation_id=conversation_id, message=message))
    return [Delivery(chat_room(conversation_id), event)]


def plan_message_deleted(conversation_id: str, message: MessageResponse) -> List[Delivery]:
    event = ChatUpdate(data=MessageDeleted(conversation_id=conversation_id, message=message))
    return [Delivery(chat_room(conversation_id), event)]


def plan_reactions_changed(conversation_id: str, message_id: str, reactions: List[ReactionResponse]) -> List[Delivery]:
    event = ChatUpdate(data=ReactionsChanged(
        conversation_id=conversation_id, message_id=message_id, reactions=reactions
    ))
    return [Delivery(chat_room(conversation_id), event)]


def plan_message_hidden(user_id: str, conversation_id: str, message_id: str) -> List[Delivery]:
    event = ChatUpdate(data=MessageHiddenUpdate(conversation_id=conversation_id, message_id=message_id))
    return [Delivery(user_room(user_id), event)]


def plan_typing(conversation_id: str, user_id: str, is_typing: bool) -> List[Delivery]:
    event = ChatTyping(data=TypingData(conversation_id=conversation_id, user_id=user_id, is_typing=is_typing))
    return [Delivery(chat_room(conversation_id), event)]


def plan_read(conversation_id: str, user_id: str, read_at: datetime, conversation_type: ConversationType) -> List[Delivery]:
    event = ChatRead(data=ReadReceiptData(
        conversation_id=conversation_id,
        user_id=user_id,
        read_at=read_at,
        conversation_type=conversation_type,
    ))
    return [Delivery(chat_room(conversation_id), event)]


def plan_members_updated(conversation_id: str, member_ids: Iterable[str], reason: str,
                         actor_id: str, user_ids: Iterable[str] = ()) -> List[Delivery]:
    event = ChatMembersUpdated(data=MembersUpdatedData(
        conversation_id=conversation_id, reason=reason, actor_id=actor_id, user_ids=list(user_ids)
    ))
    deliveries = [Delivery(chat_room(conversation_id), event)]
    deliveries += [Delivery(user_room(uid), event) for uid in member_ids]
    return deliveries


def plan_conversation_updated(conversation_id: str, summaries: Dict[str, ConversationSummary]) -> List[Delivery]:
    # unread and previews differ per member
    deliveries = [
        Delivery(user_room(uid), ChatConversationUpdated(data=ConversationItemData(item=summary)))
        for uid, summary in summaries.items()
    ]
    marker = ChatConversationUpdated(data=ConversationMarkerData(item=ConversationMarker(id=conversation_id)))
    deliveries.append(Delivery(chat_room(conversation_id), marker))
    return deliveries


def plan_conversation_added(summaries: Dict[str, ConversationSummary]) -> List[Delivery]:
    return [
        Delivery(user_room(uid), ChatConversationAdded(data=ConversationItemData(item=summary)))
        for uid, summary in summaries.items()
    ]


def plan_conversation_removed(user_id: str, conversation_id: str) -> List[Delivery]:
    room = user_room(user_id)
    return [
        Delivery(room, ChatUpdate(data=ConversationRemovedUpdate(conversation_id=conversation_id))),
        Delivery(room, ChatConversationRemoved(data=ConversationIdData(conversation_id=conversation_id))),
    ]


def plan_conversation_deleted(conversation_id: str, member_ids: Iterable[str]) -> List[Delivery]:
    update = ChatUpdate(data=ConversationDeletedUpdate(conversation_id=conversation_id))
    deleted = ChatConversationDeleted(data=ConversationIdData(conversation_id=conversation_id))
    deliveries = []
    for room in [chat_room(conversation_id)] + [user_room(uid) for uid in member_ids]:
        deliveries.append(Delivery(room, update))
        deliveries.append(Delivery(room, deleted))
    return deliveries


class RealtimeDispatcher:
    def __init__(self, registry: SessionRegistry, router: RoomRouter):
        self.registry = registry
        self.router = router

    async def deliver(self, deliveries: List[Delivery]) -> int:
        sent = 0
        for delivery in deliveries:
            sent += await self.router.broadcast(delivery.room, delivery.event)
        return sent

    async def broadcast_presence(self, user_id: str, online: bool) -> int:
        event = PresenceUpdate(data=PresenceUpdateData(user_id=user_id, online=online))
        sent = 0
        for connection in self.registry.all_connections():
            if await connection.send(event):
                sent += 1
        return sent

    def evict(self, user_id: str, conversation_id: str):
        """Stop conversation-room delivery to every connection of ``user_id``."""
        room = chat_room(conversation_id)
        for connection in self.registry.connections_for(user_id):
            self.router.leave(connection, room)

    def summaries_for(self, db: Session, conversation_id: str, user_ids: Iterable[str]) -> Dict[str, ConversationSummary]:
        summaries = {}
        for uid in user_ids:
            try:
                summaries[uid] = conversations.summary_for_user(db, uid, conversation_id)
            except ChatError as exc:
                logger.warning("No summary of %s for %s: %s", conversation_id, uid, exc.detail)
        return summaries

    async def conversation_updated(self, db: Session, conversation_id: str) -> int:
        member_ids = await run_in_threadpool(conversations.get_member_ids, db, conversation_id)
        summaries = await run_in_threadpool(self.summaries_for, db, conversation_id, member_ids)
        return await self.deliver(plan_conversation_updated(conversation_id, summaries))

    async def conversation_added(self, db: Session, conversation_id: str, user_ids: Iterable[str]) -> int:
        summaries = await run_in_threadpool(self.summaries_for, db, conversation_id, list(user_ids))
        return await self.deliver(plan_conversation_added(summaries))

    async def members_updated(self, db: Session, conversation_id: str, reason: str,
                              actor_id: str, user_ids: Iterable[str] = ()) -> int:
        member_ids = await run_in_threadpool(conversations.get_member_ids, db, conversation_id)
        return await self.deliver(plan_members_updated(conversation_id, member_ids, reason, actor_id, user_ids))

    async def conversation_removed(self, user_id: str, conversation_id: str) -> int:
        sent = await self.deliver(plan_conversation_removed(user_id, conversation_id))
        self.evict(user_id, conversation_id)
        return sent

    async def conversation_deleted(self, conversation_id: str, member_ids: Iterable[str]) -> int:
        sent = await self.deliver(plan_conversation_deleted(conversation_id, member_ids))
        self.router.drop(chat_room(conversation_id))
        return sent


room_router = RoomRouter()
registry = SessionRegistry(room_router)
dispatcher = RealtimeDispatcher(registry, room_router)

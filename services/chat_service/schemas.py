from pydantic import BaseModel, Field
from typing import Annotated, Any, List, Literal, Optional, Union
from datetime import datetime
from models import ConversationType, MemberRole, MessageType


# ----- REST payloads -----

class Attachment(BaseModel):
    url: str
    name: Optional[str] = None
    mime: Optional[str] = None
    size: Optional[int] = None


class SendMessageRequest(BaseModel):
    text: Optional[str] = None
    type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = []
    client_message_id: Optional[str] = None


class CreateGroupRequest(BaseModel):
    title: str
    member_ids: List[str] = []


class UpdateConversationRequest(BaseModel):
    title: Optional[str] = None


class NicknameRequest(BaseModel):
    nickname: Optional[str] = None


class AddMembersRequest(BaseModel):
    user_ids: List[str] = []


class MemberRoleRequest(BaseModel):
    role: MemberRole


class EditMessageRequest(BaseModel):
    text: str = ""


class ReactionRequest(BaseModel):
    emoji: str = ""


# ----- REST responses -----

class UserBrief(BaseModel):
    id: str
    name: str
    email: Optional[str] = None

    class Config:
        from_attributes = True


class ReactionResponse(BaseModel):
    id: int
    user_id: str
    emoji: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    text: str
    type: MessageType
    attachments: Optional[List[Attachment]] = None
    created_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    sender: Optional[UserBrief] = None
    sender_display_name: str = "User"
    reactions: List[ReactionResponse] = []

    class Config:
        from_attributes = True


class LastMessagePreview(BaseModel):
    content: str
    created_at: Optional[datetime] = None
    sender_id: str


class ConversationSummary(BaseModel):
    id: str
    type: ConversationType
    title: Optional[str] = None
    other_user: Optional[UserBrief] = None
    members_count: int
    last_message: Optional[LastMessagePreview] = None
    unread: int = 0


class MemberResponse(BaseModel):
    user_id: str
    role: MemberRole
    nickname: Optional[str] = None
    joined_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    user: Optional[UserBrief] = None

    class Config:
        from_attributes = True


class GroupCreatedResponse(BaseModel):
    conversation_id: str


class AddMembersResponse(BaseModel):
    conversation_id: str
    added_user_ids: List[str]
    added_users: List[UserBrief]
    members_count: int


class NicknameResponse(BaseModel):
    ok: bool = True
    user_id: str
    nickname: Optional[str] = None


class ReadResponse(BaseModel):
    ok: bool = True
    read_at: datetime
    type: ConversationType


class LeaveResponse(BaseModel):
    ok: bool = True
    deleted: bool


class ReactionsResponse(BaseModel):
    ok: bool = True
    reactions: List[ReactionResponse]


class AttachmentUploadResponse(BaseModel):
    attachment: Optional[Attachment] = None


# ----- WebSocket: client requests -----

class ClientRequest(BaseModel):
    event: str
    data: dict = {}
    ref: Optional[Any] = None


class ConversationRef(BaseModel):
    conversation_id: str = Field(alias="conversationId")

    class Config:
        populate_by_name = True


class TypingRequest(ConversationRef):
    is_typing: bool = Field(False, alias="isTyping")


class ChatSendRequest(BaseModel):
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    other_user_id: Optional[str] = Field(None, alias="otherUserId")
    text: Optional[str] = None
    type: MessageType = MessageType.TEXT
    attachments: List[Attachment] = []
    client_message_id: Optional[str] = Field(None, alias="clientMessageId")

    class Config:
        populate_by_name = True


# ----- WebSocket: server events -----
# Every event is a distinct model keyed by its literal ``event`` name.

class PresenceUpdateData(BaseModel):
    user_id: str
    online: bool


class PresenceUpdate(BaseModel):
    event: Literal["presence:update"] = "presence:update"
    data: PresenceUpdateData


class PresenceSnapshotData(BaseModel):
    user_ids: List[str]


class PresenceSnapshot(BaseModel):
    event: Literal["presence:snapshot"] = "presence:snapshot"
    data: PresenceSnapshotData


class NewMessageData(BaseModel):
    conversation_id: str
    message: MessageResponse


class ChatNew(BaseModel):
    event: Literal["chat:new"] = "chat:new"
    data: NewMessageData


class MessageEdited(BaseModel):
    type: Literal["EDIT"] = "EDIT"
    conversation_id: str
    message: MessageResponse


class MessageDeleted(BaseModel):
    type: Literal["DELETE"] = "DELETE"
    conversation_id: str
    message: MessageResponse


class ReactionsChanged(BaseModel):
    type: Literal["REACTIONS"] = "REACTIONS"
    conversation_id: str
    message_id: str
    reactions: List[ReactionResponse]


class MessageHiddenUpdate(BaseModel):
    type: Literal["HIDDEN"] = "HIDDEN"
    conversation_id: str
    message_id: str


class ConversationRemovedUpdate(BaseModel):
    type: Literal["CONVERSATION_REMOVED"] = "CONVERSATION_REMOVED"
    conversation_id: str


class ConversationDeletedUpdate(BaseModel):
    type: Literal["CONVERSATION_DELETED"] = "CONVERSATION_DELETED"
    conversation_id: str


ChatUpdateData = Annotated[
    Union[
        MessageEdited,
        MessageDeleted,
        ReactionsChanged,
        MessageHiddenUpdate,
        ConversationRemovedUpdate,
        ConversationDeletedUpdate,
    ],
    Field(discriminator="type"),
]


class ChatUpdate(BaseModel):
    event: Literal["chat:update"] = "chat:update"
    data: ChatUpdateData


class TypingData(BaseModel):
    conversation_id: str
    user_id: str
    is_typing: bool


class ChatTyping(BaseModel):
    event: Literal["chat:typing"] = "chat:typing"
    data: TypingData


class ReadReceiptData(BaseModel):
    conversation_id: str
    user_id: str
    read_at: datetime
    conversation_type: ConversationType


class ChatRead(BaseModel):
    event: Literal["chat:read"] = "chat:read"
    data: ReadReceiptData


class MembersUpdatedData(BaseModel):
    conversation_id: str
    reason: Literal["ADDED", "LEFT", "NICKNAME", "ROLE"]
    actor_id: str
    user_ids: List[str] = []


class ChatMembersUpdated(BaseModel):
    event: Literal["chat:members_updated"] = "chat:members_updated"
    data: MembersUpdatedData


class ConversationItemData(BaseModel):
    item: ConversationSummary


class ChatConversationAdded(BaseModel):
    event: Literal["chat:conversation_added"] = "chat:conversation_added"
    data: ConversationItemData


class ConversationMarker(BaseModel):
    id: str


class ConversationMarkerData(BaseModel):
    item: ConversationMarker


class ChatConversationUpdated(BaseModel):
    event: Literal["chat:conversation_updated"] = "chat:conversation_updated"
    data: Union[ConversationItemData, ConversationMarkerData]


class ConversationIdData(BaseModel):
    conversation_id: str


class ChatConversationRemoved(BaseModel):
    event: Literal["chat:conversation_removed"] = "chat:conversation_removed"
    data: ConversationIdData


class ChatConversationDeleted(BaseModel):
    event: Literal["chat:conversation_deleted"] = "chat:conversation_deleted"
    data: ConversationIdData


class Ack(BaseModel):
    event: Literal["ack"] = "ack"
    ref: Optional[Any] = None
    data: dict = {}


class ErrorData(BaseModel):
    status: int
    detail: str


class ErrorReply(BaseModel):
    event: Literal["error"] = "error"
    ref: Optional[Any] = None
    data: ErrorData

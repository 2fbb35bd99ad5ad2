from fastapi import APIRouter, Depends, File, UploadFile, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from datetime import datetime
from typing import List, Optional
from database import get_db
from auth import get_current_user_id
from errors import PayloadTooLarge
from schemas import (
    AddMembersRequest, AddMembersResponse, AttachmentUploadResponse, ConversationSummary,
    CreateGroupRequest, EditMessageRequest, GroupCreatedResponse, LeaveResponse,
    MemberResponse, MemberRoleRequest, MessageResponse, NicknameRequest, NicknameResponse,
    ReactionRequest, ReactionsResponse, ReadResponse, SendMessageRequest,
    UpdateConversationRequest, UserBrief,
)
from models import MemberRole
from dispatcher import (
    dispatcher, plan_message_deleted, plan_message_edited, plan_message_hidden,
    plan_new_message, plan_reactions_changed, plan_read,
)
import conversations
import messages
import storage

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])

# Handlers that fan out events are async; database, broker and storage work inside
# them goes through run_in_threadpool so a slow dependency never blocks the sockets.


@router.get("/conversations", response_model=List[ConversationSummary])
def get_conversations(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    return conversations.list_conversations(db, user_id)


@router.get("/conversations/{conversation_id}", response_model=ConversationSummary)
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    return conversations.summary_for_user(db, user_id, conversation_id)


@router.post("/with/{other_user_id}", response_model=ConversationSummary)
async def open_direct_conversation(
    other_user_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    conversation = await run_in_threadpool(conversations.find_or_create_direct, db, user_id, other_user_id)
    conversation_id = conversation.id
    # both sides get the item so every open client lists the conversation
    await dispatcher.conversation_added(db, conversation_id, [other_user_id, user_id])
    return await run_in_threadpool(conversations.summary_for_user, db, user_id, conversation_id)


@router.post("/groups", response_model=GroupCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    request: CreateGroupRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    def create():
        conversation = conversations.create_group(db, user_id, request.title, request.member_ids)
        return conversation.id, conversations.get_member_ids(db, conversation.id)

    conversation_id, member_ids = await run_in_threadpool(create)
    await dispatcher.conversation_added(db, conversation_id, member_ids)
    return GroupCreatedResponse(conversation_id=conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
def get_messages(
    conversation_id: str,
    limit: Optional[int] = None,
    before: Optional[datetime] = None,
    before_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    return messages.list_messages(db, user_id, conversation_id, limit=limit, before=before, before_id=before_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(messages.send_to_conversation, db, user_id, conversation_id, request)
    if result.created:
        await dispatcher.deliver(plan_new_message(conversation_id, result.message, result.receiver_ids))
    return result.message


@router.post("/conversations/{conversation_id}/read", response_model=ReadResponse)
async def mark_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(messages.mark_read, db, user_id, conversation_id)
    await dispatcher.deliver(plan_read(conversation_id, user_id, result.read_at, result.type))
    return ReadResponse(read_at=result.read_at, type=result.type)


@router.patch("/conversations/{conversation_id}", response_model=ConversationSummary)
async def update_conversation(
    conversation_id: str,
    request: UpdateConversationRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    await run_in_threadpool(conversations.update_title, db, user_id, conversation_id, request.title)
    await dispatcher.conversation_updated(db, conversation_id)
    return await run_in_threadpool(conversations.summary_for_user, db, user_id, conversation_id)


@router.patch("/conversations/{conversation_id}/nickname", response_model=NicknameResponse)
async def set_my_nickname(
    conversation_id: str,
    request: NicknameRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(conversations.set_nickname, db, user_id, conversation_id, request.nickname)
    await dispatcher.members_updated(db, conversation_id, "NICKNAME", user_id, [user_id])
    return NicknameResponse(**result)


@router.patch("/conversations/{conversation_id}/nicknames/{target_user_id}", response_model=NicknameResponse)
async def set_member_nickname(
    conversation_id: str,
    target_user_id: str,
    request: NicknameRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(
        conversations.set_nickname_for_member, db, user_id, conversation_id, target_user_id, request.nickname
    )
    await dispatcher.members_updated(db, conversation_id, "NICKNAME", user_id, [target_user_id])
    return NicknameResponse(**result)


@router.patch("/conversations/{conversation_id}/members/{target_user_id}/role", response_model=MemberResponse)
async def set_member_role(
    conversation_id: str,
    target_user_id: str,
    request: MemberRoleRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    def update():
        member = conversations.update_member_role(db, user_id, conversation_id, target_user_id, request.role)
        return MemberResponse.model_validate(member)

    response = await run_in_threadpool(update)
    affected = [target_user_id, user_id] if request.role == MemberRole.OWNER else [target_user_id]
    await dispatcher.members_updated(db, conversation_id, "ROLE", user_id, affected)
    return response


@router.get("/conversations/{conversation_id}/members", response_model=List[MemberResponse])
def get_members(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    conversations.ensure_member(db, user_id, conversation_id)
    return conversations.list_members(db, conversation_id)


@router.post("/conversations/{conversation_id}/members", response_model=AddMembersResponse)
async def add_members(
    conversation_id: str,
    request: AddMembersRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(conversations.add_members, db, user_id, conversation_id, request.user_ids)
    added = result["added_user_ids"]
    if added:
        await dispatcher.conversation_added(db, conversation_id, added)
        await dispatcher.members_updated(db, conversation_id, "ADDED", user_id, added)
        await dispatcher.conversation_updated(db, conversation_id)
    return AddMembersResponse(**result)


@router.post("/conversations/{conversation_id}/leave", response_model=LeaveResponse)
async def leave_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    result = await run_in_threadpool(conversations.leave, db, user_id, conversation_id)
    if result["deleted"]:
        await dispatcher.conversation_deleted(conversation_id, result["member_ids"])
        return LeaveResponse(deleted=True)

    await dispatcher.conversation_removed(user_id, conversation_id)
    await dispatcher.members_updated(db, conversation_id, "LEFT", user_id, [user_id])
    await dispatcher.conversation_updated(db, conversation_id)
    return LeaveResponse(deleted=False)


@router.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    change = await run_in_threadpool(messages.edit_message, db, user_id, message_id, request.text)
    await dispatcher.deliver(plan_message_edited(change.conversation_id, change.message))
    return change.message


@router.delete("/messages/{message_id}", response_model=MessageResponse)
async def revoke_message(
    message_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    change = await run_in_threadpool(messages.revoke_message, db, user_id, message_id)
    await dispatcher.deliver(plan_message_deleted(change.conversation_id, change.message))
    return change.message


@router.post("/messages/{message_id}/hide")
async def hide_message(
    message_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    change = await run_in_threadpool(messages.hide_message, db, user_id, message_id)
    await dispatcher.deliver(plan_message_hidden(user_id, change.conversation_id, message_id))
    return {"ok": True, "conversation_id": change.conversation_id, "message_id": message_id}


@router.post("/messages/{message_id}/reactions", response_model=ReactionsResponse)
async def toggle_reaction(
    message_id: str,
    request: ReactionRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    change = await run_in_threadpool(messages.toggle_reaction, db, user_id, message_id, request.emoji)
    await dispatcher.deliver(plan_reactions_changed(change.conversation_id, message_id, change.reactions))
    return ReactionsResponse(reactions=change.reactions)


@router.post("/uploads", response_model=AttachmentUploadResponse)
async def upload_attachment(
    file: Optional[UploadFile] = File(None),
    user_id: str = Depends(get_current_user_id)
):
    if file is None:
        return AttachmentUploadResponse(attachment=None)
    max_bytes = storage.CHAT_UPLOAD_MAX_BYTES
    if file.size is not None and file.size > max_bytes:
        raise PayloadTooLarge("File is too large")
    # one byte past the limit is enough to know it is too large
    file_data = await file.read(max_bytes + 1)
    if len(file_data) > max_bytes:
        raise PayloadTooLarge("File is too large")
    attachment = await run_in_threadpool(
        storage.upload_attachment,
        file_data,
        file.filename or "file",
        file.content_type or "application/octet-stream"
    )
    return AttachmentUploadResponse(attachment=attachment)


@router.get("/users/search", response_model=List[UserBrief])
def search_users(
    q: str = "",
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    return conversations.search_users(db, user_id, q)

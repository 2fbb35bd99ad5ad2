"""Conversation directory: direct/group conversations, membership and per-user summaries."""
from sqlalchemy.orm import Session
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from models import (
    Conversation, ConversationMember, ConversationType, MemberRole,
    Message, MessageHidden, MessageType, User,
)
from schemas import ConversationSummary, LastMessagePreview, UserBrief
from errors import BadRequest, Forbidden, NotFound
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 3
SEARCH_LIMIT = 20

REVOKED_PREVIEW = "Message revoked"
IMAGE_PREVIEW = "[Image]"
FILE_PREVIEW = "[Attachment]"


def norm_text(value) -> str:
    return ("" if value is None else str(value)).strip()


def canonical_pair(user_id: str, other_user_id: str):
    return (user_id, other_user_id) if user_id < other_user_id else (other_user_id, user_id)


def get_user(db: Session, user_id: str):
    return db.query(User).filter(User.id == user_id).first()


def get_conversation(db: Session, conversation_id: str):
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_member(db: Session, conversation_id: str, user_id: str):
    return db.query(ConversationMember).filter(
        ConversationMember.conversation_id == conversation_id,
        ConversationMember.user_id == user_id
    ).first()


def ensure_member(db: Session, user_id: str, conversation_id: str) -> ConversationMember:
    member = get_member(db, conversation_id, user_id)
    if not member:
        raise Forbidden("You are not a member of this conversation")
    return member


def ensure_owner_or_admin(db: Session, user_id: str, conversation_id: str) -> ConversationMember:
    member = ensure_member(db, user_id, conversation_id)
    if member.conversation.type != ConversationType.GROUP:
        raise BadRequest("Only available for group conversations")
    if member.role not in (MemberRole.OWNER, MemberRole.ADMIN):
        raise Forbidden("You do not have permission to manage this group")
    return member


def get_member_ids(db: Session, conversation_id: str) -> List[str]:
    rows = db.query(ConversationMember.user_id).filter(
        ConversationMember.conversation_id == conversation_id
    ).all()
    return [row.user_id for row in rows]


def list_members(db: Session, conversation_id: str):
    return db.query(ConversationMember).filter(
        ConversationMember.conversation_id == conversation_id
    ).order_by(ConversationMember.joined_at.asc()).all()


def display_names(db: Session, conversation_id: str) -> dict:
    """Per-conversation nickname, falling back to the profile name."""
    names = {}
    for member in list_members(db, conversation_id):
        profile_name = member.user.name if member.user else None
        names[member.user_id] = member.nickname or profile_name or "User"
    return names


def preview_text(message: Message) -> str:
    if message.deleted_at:
        return REVOKED_PREVIEW
    if message.text:
        return message.text
    if message.type == MessageType.IMAGE:
        return IMAGE_PREVIEW
    if message.type == MessageType.FILE:
        return FILE_PREVIEW
    return ""


# ----- direct conversations -----

def _find_keyed_direct(db: Session, user_a_id: str, user_b_id: str):
    return db.query(Conversation).filter(
        Conversation.type == ConversationType.DM,
        Conversation.user_a_id == user_a_id,
        Conversation.user_b_id == user_b_id
    ).first()


def _find_legacy_direct(db: Session, user_id: str, other_user_id: str):
    candidates = db.query(Conversation).filter(
        Conversation.type == ConversationType.DM,
        Conversation.user_a_id.is_(None),
        Conversation.members.any(ConversationMember.user_id == user_id),
        Conversation.members.any(ConversationMember.user_id == other_user_id)
    ).order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc()).all()
    candidates = [c for c in candidates if len(c.members) == 2]
    if len(candidates) > 1:
        logger.warning(
            "Ambiguous legacy DMs for %s/%s: %s; keying the most recent, leaving the rest untouched",
            user_id, other_user_id, [c.id for c in candidates]
        )
    return candidates[0] if candidates else None


def ensure_pair_members(db: Session, conversation: Conversation, user_ids) -> Conversation:
    """Re-add a participant who left a keyed DM so the pair keeps a single row."""
    present = {m.user_id for m in conversation.members}
    missing = [uid for uid in user_ids if uid not in present]
    if not missing:
        return conversation
    for uid in missing:
        conversation.members.append(ConversationMember(user_id=uid, role=MemberRole.MEMBER))
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request rejoined them first
        db.rollback()
    db.refresh(conversation)
    return conversation


def _create_keyed_direct(db: Session, user_id: str, other_user_id: str) -> Conversation:
    user_a_id, user_b_id = canonical_pair(user_id, other_user_id)
    conversation = Conversation(
        type=ConversationType.DM,
        user_a_id=user_a_id,
        user_b_id=user_b_id,
        created_by_id=user_id,
        members=[
            ConversationMember(user_id=user_id, role=MemberRole.MEMBER),
            ConversationMember(user_id=other_user_id, role=MemberRole.MEMBER),
        ]
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_keyed_direct(db, user_a_id, user_b_id)
        if existing:
            return ensure_pair_members(db, existing, (user_id, other_user_id))
        raise
    db.refresh(conversation)
    return conversation


def find_or_create_direct(db: Session, user_id: str, other_user_id: str) -> Conversation:
    if not other_user_id or other_user_id == user_id:
        raise BadRequest("Invalid user")
    if not get_user(db, other_user_id):
        raise NotFound("User not found")

    user_a_id, user_b_id = canonical_pair(user_id, other_user_id)
    keyed = _find_keyed_direct(db, user_a_id, user_b_id)
    if keyed:
        return ensure_pair_members(db, keyed, (user_id, other_user_id))

    legacy = _find_legacy_direct(db, user_id, other_user_id)
    if legacy:
        legacy.user_a_id = user_a_id
        legacy.user_b_id = user_b_id
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _find_keyed_direct(db, user_a_id, user_b_id)
            if existing:
                return ensure_pair_members(db, existing, (user_id, other_user_id))
            raise
        db.refresh(legacy)
        return legacy

    return _create_keyed_direct(db, user_id, other_user_id)


# ----- groups -----

def create_group(db: Session, creator_id: str, title: str, member_ids: List[str]) -> Conversation:
    clean_title = norm_text(title)
    if not clean_title:
        raise BadRequest("Group title must not be empty")

    unique_ids = list(dict.fromkeys([creator_id] + [norm_text(uid) for uid in (member_ids or [])]))
    unique_ids = [uid for uid in unique_ids if uid]
    if len(unique_ids) < MIN_GROUP_SIZE:
        raise BadRequest(f"A group needs at least {MIN_GROUP_SIZE} members")

    found = db.query(User.id).filter(User.id.in_(unique_ids)).count()
    if found != len(unique_ids):
        raise NotFound("Some users do not exist")

    conversation = Conversation(
        type=ConversationType.GROUP,
        title=clean_title,
        created_by_id=creator_id,
        members=[
            ConversationMember(
                user_id=uid,
                role=MemberRole.OWNER if uid == creator_id else MemberRole.MEMBER
            )
            for uid in unique_ids
        ]
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def update_title(db: Session, user_id: str, conversation_id: str, title: str) -> Conversation:
    member = ensure_owner_or_admin(db, user_id, conversation_id)
    clean_title = norm_text(title)
    if not clean_title:
        raise BadRequest("Group title must not be empty")
    conversation = member.conversation
    conversation.title = clean_title
    db.commit()
    db.refresh(conversation)
    return conversation


def _clean_nickname(nickname) -> Optional[str]:
    if nickname is None:
        return None
    return norm_text(nickname) or None


def set_nickname(db: Session, user_id: str, conversation_id: str, nickname) -> dict:
    return set_nickname_for_member(db, user_id, conversation_id, user_id, nickname)


def set_nickname_for_member(db: Session, actor_id: str, conversation_id: str, target_user_id: str, nickname) -> dict:
    # any member may rename any other member
    ensure_member(db, actor_id, conversation_id)
    target = get_member(db, conversation_id, target_user_id)
    if not target:
        raise NotFound("Member not found")
    target.nickname = _clean_nickname(nickname)
    db.commit()
    return {"user_id": target_user_id, "nickname": target.nickname}


def add_members(db: Session, user_id: str, conversation_id: str, user_ids: List[str]) -> dict:
    ensure_owner_or_admin(db, user_id, conversation_id)

    unique_ids = [uid for uid in dict.fromkeys(norm_text(uid) for uid in (user_ids or [])) if uid]
    if not unique_ids:
        raise BadRequest("No users to add")

    current_ids = set(get_member_ids(db, conversation_id))
    to_add = [uid for uid in unique_ids if uid not in current_ids]
    if not to_add:
        return {
            "conversation_id": conversation_id,
            "added_user_ids": [],
            "added_users": [],
            "members_count": len(current_ids),
        }

    users = db.query(User).filter(User.id.in_(to_add)).all()
    if len(users) != len(to_add):
        raise NotFound("Some users do not exist")

    for uid in to_add:
        db.add(ConversationMember(conversation_id=conversation_id, user_id=uid, role=MemberRole.MEMBER))
    db.commit()

    return {
        "conversation_id": conversation_id,
        "added_user_ids": to_add,
        "added_users": [UserBrief.model_validate(u) for u in users],
        "members_count": len(current_ids) + len(to_add),
    }


def update_member_role(db: Session, actor_id: str, conversation_id: str, target_user_id: str, role: MemberRole) -> ConversationMember:
    actor = ensure_member(db, actor_id, conversation_id)
    if actor.conversation.type != ConversationType.GROUP:
        raise BadRequest("Only available for group conversations")
    if actor.role != MemberRole.OWNER:
        raise Forbidden("Only the group owner can change roles")
    if target_user_id == actor_id:
        raise BadRequest("Transfer ownership to another member instead")
    target = get_member(db, conversation_id, target_user_id)
    if not target:
        raise NotFound("Member not found")

    role = MemberRole(role)
    if role == MemberRole.OWNER:
        actor.role = MemberRole.ADMIN
    target.role = role
    db.commit()
    db.refresh(target)
    return target


def leave(db: Session, user_id: str, conversation_id: str) -> dict:
    """Remove the caller; deletes the conversation once nobody is left."""
    member = ensure_member(db, user_id, conversation_id)
    conversation = member.conversation
    member_ids = get_member_ids(db, conversation_id)
    remaining = len([uid for uid in member_ids if uid != user_id])

    if (
        conversation.type == ConversationType.GROUP
        and member.role == MemberRole.OWNER
        and remaining > 0
    ):
        raise Forbidden("The owner cannot leave while other members remain. Transfer ownership first.")

    if remaining == 0:
        db.delete(conversation)
    else:
        db.delete(member)
    db.commit()

    return {
        "conversation_id": conversation_id,
        "deleted": remaining == 0,
        "remaining": remaining,
        "member_ids": member_ids,
    }


# ----- summaries -----

def latest_visible_message(db: Session, user_id: str, conversation_id: str):
    hidden = select(MessageHidden.message_id).where(MessageHidden.user_id == user_id)
    return db.query(Message).filter(
        Message.conversation_id == conversation_id,
        Message.id.notin_(hidden)
    ).order_by(Message.created_at.desc()).first()


def unread_count(db: Session, member: ConversationMember) -> int:
    conversation = member.conversation
    if conversation.type == ConversationType.DM:
        return db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation.id,
            Message.receiver_id == member.user_id,
            Message.read_at.is_(None)
        ).scalar() or 0

    since = member.last_read_at or member.joined_at
    return db.query(func.count(Message.id)).filter(
        Message.conversation_id == conversation.id,
        Message.receiver_id.is_(None),
        Message.created_at > since,
        Message.sender_id != member.user_id,
        Message.deleted_at.is_(None)
    ).scalar() or 0


def _summarize(db: Session, member: ConversationMember) -> Optional[ConversationSummary]:
    conversation = member.conversation
    last = latest_visible_message(db, member.user_id, conversation.id)
    last_message = None
    if last:
        last_message = LastMessagePreview(
            content=preview_text(last),
            created_at=last.created_at,
            sender_id=last.sender_id
        )

    if conversation.type == ConversationType.DM:
        other = next((m for m in conversation.members if m.user_id != member.user_id), None)
        if not other or not other.user:
            return None
        return ConversationSummary(
            id=conversation.id,
            type=conversation.type,
            title=None,
            other_user=UserBrief.model_validate(other.user),
            members_count=2,
            last_message=last_message,
            unread=unread_count(db, member)
        )

    return ConversationSummary(
        id=conversation.id,
        type=conversation.type,
        title=conversation.title,
        members_count=len(conversation.members),
        last_message=last_message,
        unread=unread_count(db, member)
    )


def summary_for_user(db: Session, user_id: str, conversation_id: str) -> ConversationSummary:
    member = ensure_member(db, user_id, conversation_id)
    summary = _summarize(db, member)
    if summary is None:
        raise NotFound("Conversation partner not found")
    return summary


def list_conversations(db: Session, user_id: str) -> List[ConversationSummary]:
    memberships = db.query(ConversationMember).join(Conversation).filter(
        ConversationMember.user_id == user_id
    ).order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc()).all()

    summaries = []
    for member in memberships:
        summary = _summarize(db, member)
        if summary is not None:
            summaries.append(summary)
    return summaries


def search_users(db: Session, user_id: str, q: str):
    query = norm_text(q)
    if not query:
        return []
    pattern = f"%{query}%"
    return db.query(User).filter(
        User.id != user_id,
        or_(User.name.ilike(pattern), User.email.ilike(pattern))
    ).order_by(User.created_at.desc()).limit(SEARCH_LIMIT).all()

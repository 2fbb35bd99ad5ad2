from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Enum, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class ConversationType(str, enum.Enum):
    DM = "DM"
    GROUP = "GROUP"


class MemberRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"


class User(Base):
    """Mirror of the identity service's users; chat only reads it."""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Conversation(Base):
    __tablename__ = "chat_conversations"
    __table_args__ = (
        # canonical unordered pair for DMs, NULL for groups
        UniqueConstraint("user_a_id", "user_b_id", name="uq_chat_conversations_pair"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    type = Column(Enum(ConversationType), nullable=False, default=ConversationType.DM)
    title = Column(String, nullable=True)
    created_by_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_a_id = Column(String(64), nullable=True, index=True)
    user_b_id = Column(String(64), nullable=True, index=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    members = relationship("ConversationMember", back_populates="conversation", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class ConversationMember(Base):
    __tablename__ = "chat_conversation_members"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_chat_members_conversation_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String(64), ForeignKey("chat_conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(MemberRole), nullable=False, default=MemberRole.MEMBER)
    nickname = Column(String, nullable=True)
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    last_read_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="members")
    user = relationship("User")


class Message(Base):
    __tablename__ = "chat_messages"

    # client-supplied idempotency key when given
    id = Column(String(64), primary_key=True, default=new_id)
    conversation_id = Column(String(64), ForeignKey("chat_conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(String(64), nullable=True, index=True)  # DM only
    text = Column(Text, nullable=False, default="")
    type = Column(Enum(MessageType), nullable=False, default=MessageType.TEXT)
    attachments = Column(JSON, nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User")
    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageReaction.created_at",
    )
    hidden_by = relationship("MessageHidden", back_populates="message", cascade="all, delete-orphan")


class MessageReaction(Base):
    __tablename__ = "chat_message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_chat_reactions_message_user_emoji"),
    )

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String(64), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    message = relationship("Message", back_populates="reactions")


class MessageHidden(Base):
    """Per-viewer "delete for me"; the shared message row is untouched."""
    __tablename__ = "chat_message_hidden"
    __table_args__ = (
        UniqueConstraint("user_id", "message_id", name="uq_chat_hidden_user_message"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String(64), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    message = relationship("Message", back_populates="hidden_by")

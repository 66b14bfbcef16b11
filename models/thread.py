"""Conversation threads and their messages."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models._types import JSONType

DEFAULT_THREAD_TITLE = "New Thread"

THREAD_STATUS = Enum("active", "archived", name="thread_status")
MESSAGE_ROLE = Enum("user", "assistant", "system", name="thread_message_role")
MESSAGE_STATUS = Enum("sending", "sent", "error", name="thread_message_status")


class Thread(Base):
    __tablename__ = "threads"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(128), nullable=False, index=True)
    title = Column(String(255), nullable=False, default=DEFAULT_THREAD_TITLE)
    status = Column(THREAD_STATUS, nullable=False, default="active", index=True)
    is_bookmarked = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    messages = relationship(
        "Message",
        back_populates="thread",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )
    reports = relationship(
        "Report",
        back_populates="thread",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    __tablename__ = "thread_messages"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(MESSAGE_ROLE, nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    report_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("playground_reports.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status = Column(MESSAGE_STATUS, nullable=False, default="sent")
    meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    thread = relationship("Thread", back_populates="messages")


__all__ = ["DEFAULT_THREAD_TITLE", "Message", "Thread"]

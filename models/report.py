"""SQLAlchemy ORM for generated playground reports."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models._types import JSONType


class Report(Base):
    """One fully generated report; written once when its generation completes."""

    __tablename__ = "playground_reports"
    __table_args__ = (
        UniqueConstraint("generation_id", name="uq_playground_reports_generation_id"),
        {"extend_existing": True},
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    generation_id = Column(String(128), nullable=False)
    user_id = Column(String(128), nullable=False, index=True)
    model = Column(String(128), nullable=False)
    prompt = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    sections = Column(JSONType, nullable=False, default=list)
    meta = Column(JSONType, nullable=False, default=dict)
    total_tokens = Column(Integer, nullable=True)
    total_cost = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    thread = relationship("Thread", back_populates="reports")
    mentions = relationship(
        "EntityMention",
        back_populates="report",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


__all__ = ["Report"]

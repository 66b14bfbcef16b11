"""Financial entities referenced by reports."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models._types import JSONType


class Entity(Base):
    """Shared reference row; many reports may mention one entity."""

    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_entities_slug"),
        {"extend_existing": True},
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(32), nullable=False, index=True)
    ticker = Column(String(32), nullable=True, index=True)
    mention_count = Column(Integer, nullable=False, default=0)
    first_mentioned_at = Column(DateTime(timezone=True), nullable=True)
    last_mentioned_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    mentions = relationship("EntityMention", back_populates="entity")


class EntityMention(Base):
    __tablename__ = "entity_mentions"
    __table_args__ = (
        UniqueConstraint("entity_id", "report_id", name="uq_entity_mentions_entity_report"),
        {"extend_existing": True},
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    report_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("playground_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    context = Column(Text, nullable=True)
    sentiment = Column(Float, nullable=False, default=0.0)
    relevance = Column(Float, nullable=False, default=0.0)
    meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    entity = relationship("Entity", back_populates="mentions")
    report = relationship("Report", back_populates="mentions")


__all__ = ["Entity", "EntityMention"]

"""Persistence helpers for generated reports."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import database
from core.logging import get_logger
from models.entity import Entity, EntityMention
from models.report import Report
from models.thread import Message, Thread
from services.generation.entity_extraction import ExtractedEntity
from services.thread_repository import add_message

logger = get_logger(__name__)


def _get_session(session: Optional[Session]) -> tuple[Session, bool]:
    if session is not None:
        return session, False
    return database.SessionLocal(), True


def _upsert_entity(db: Session, extracted: ExtractedEntity, *, now: datetime) -> Entity:
    entity = db.query(Entity).filter(Entity.slug == extracted.slug).first()
    if entity is None:
        try:
            with db.begin_nested():
                entity = Entity(
                    slug=extracted.slug,
                    name=extracted.name,
                    type=extracted.type,
                    ticker=extracted.ticker,
                    mention_count=0,
                    first_mentioned_at=now,
                )
                db.add(entity)
        except IntegrityError:
            # Another report created the same slug concurrently.
            entity = db.query(Entity).filter(Entity.slug == extracted.slug).one()
    if extracted.ticker and not entity.ticker:
        entity.ticker = extracted.ticker
    entity.mention_count = (entity.mention_count or 0) + extracted.mentions
    entity.last_mentioned_at = now
    return entity


def create_report_record(
    *,
    generation_id: str,
    thread_id: UUID,
    user_id: str,
    model: str,
    prompt: str,
    content: str,
    sections: List[Dict[str, Any]],
    entities: Sequence[ExtractedEntity] = (),
    metadata: Optional[Dict[str, Any]] = None,
    total_tokens: Optional[int] = None,
    total_cost: Optional[float] = None,
    user_message_id: Optional[UUID] = None,
    session: Optional[Session] = None,
) -> Report:
    """Write the report, its assistant message and entity mentions in one transaction.

    The prompt message named by ``user_message_id`` is marked ``sent`` in the
    same transaction.

    Idempotent per ``generation_id``: a second call returns the row written by
    the first instead of inserting another one.
    """
    db, managed = _get_session(session)
    try:
        existing = db.query(Report).filter(Report.generation_id == generation_id).first()
        if existing is not None:
            logger.info("Report for generation %s already persisted as %s.", generation_id, existing.id)
            return existing

        thread = db.query(Thread).filter(Thread.id == thread_id, Thread.deleted_at.is_(None)).first()
        if thread is None:
            raise ValueError("Thread not found or deleted.")

        now = datetime.now(timezone.utc)
        record = Report(
            thread_id=thread_id,
            generation_id=generation_id,
            user_id=user_id,
            model=model,
            prompt=prompt,
            content=content,
            sections=list(sections),
            meta=dict(metadata or {}),
            total_tokens=total_tokens,
            total_cost=total_cost,
        )
        db.add(record)
        db.flush()

        add_message(
            db,
            thread=thread,
            role="assistant",
            content=content,
            report_id=record.id,
            meta={"model": model, "generation_id": generation_id, "section_count": len(sections)},
        )
        if user_message_id is not None:
            db.query(Message).filter(Message.id == user_message_id, Message.thread_id == thread_id).update(
                {Message.status: "sent"}, synchronize_session=False
            )

        for extracted in entities:
            entity = _upsert_entity(db, extracted, now=now)
            db.add(
                EntityMention(
                    entity=entity,
                    report_id=record.id,
                    context=extracted.context,
                    sentiment=extracted.sentiment,
                    relevance=extracted.relevance,
                    meta={"mentions": extracted.mentions},
                )
            )

        db.commit()
        db.refresh(record)
        return record
    except IntegrityError:
        db.rollback()
        existing = db.query(Report).filter(Report.generation_id == generation_id).first()
        if existing is None:
            raise
        logger.info("Concurrent write for generation %s resolved to report %s.", generation_id, existing.id)
        return existing
    except Exception:
        db.rollback()
        raise
    finally:
        if managed:
            db.close()


def get_report_by_id(
    report_id: UUID,
    *,
    session: Optional[Session] = None,
) -> Optional[Report]:
    db, managed = _get_session(session)
    try:
        return db.query(Report).filter(Report.id == report_id).first()
    finally:
        if managed:
            db.close()


def get_report_by_generation_id(
    generation_id: str,
    *,
    session: Optional[Session] = None,
) -> Optional[Report]:
    db, managed = _get_session(session)
    try:
        return db.query(Report).filter(Report.generation_id == generation_id).first()
    finally:
        if managed:
            db.close()


def list_report_entities(
    report_id: UUID,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    db, managed = _get_session(session)
    try:
        rows = (
            db.query(EntityMention, Entity)
            .join(Entity, EntityMention.entity_id == Entity.id)
            .filter(EntityMention.report_id == report_id)
            .order_by(EntityMention.relevance.desc())
            .all()
        )
        return [
            {
                "name": entity.name,
                "slug": entity.slug,
                "type": entity.type,
                "ticker": entity.ticker,
                "context": mention.context,
                "sentiment": mention.sentiment,
                "relevance": mention.relevance,
            }
            for mention, entity in rows
        ]
    finally:
        if managed:
            db.close()


__all__ = [
    "create_report_record",
    "get_report_by_generation_id",
    "get_report_by_id",
    "list_report_entities",
]

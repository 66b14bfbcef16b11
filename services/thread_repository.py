"""Persistence helpers for playground threads and their messages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

import database
from models.thread import DEFAULT_THREAD_TITLE, Message, Thread

THREAD_TITLE_MAX_CHARS = 100


def _get_session(session: Optional[Session]) -> tuple[Session, bool]:
    if session is not None:
        return session, False
    return database.SessionLocal(), True


def derive_thread_title(content: str) -> str:
    normalized = " ".join((content or "").split())
    return normalized[:THREAD_TITLE_MAX_CHARS] or DEFAULT_THREAD_TITLE


def create_thread(
    *,
    user_id: str,
    title: Optional[str] = None,
    session: Optional[Session] = None,
) -> Thread:
    db, managed = _get_session(session)
    try:
        thread = Thread(
            user_id=user_id,
            title=title.strip() if title and title.strip() else DEFAULT_THREAD_TITLE,
            status="active",
        )
        db.add(thread)
        db.commit()
        db.refresh(thread)
        return thread
    except Exception:
        db.rollback()
        raise
    finally:
        if managed:
            db.close()


def get_thread(thread_id: UUID, *, session: Optional[Session] = None) -> Optional[Thread]:
    db, managed = _get_session(session)
    try:
        return db.query(Thread).filter(Thread.id == thread_id).first()
    finally:
        if managed:
            db.close()


def add_message(
    db: Session,
    *,
    thread: Thread,
    role: str,
    content: str,
    report_id: Optional[UUID] = None,
    status: str = "sent",
    meta: Optional[dict] = None,
) -> Message:
    """Stage a message on an open session without committing."""
    now = datetime.now(timezone.utc)
    message = Message(
        thread_id=thread.id,
        role=role,
        content=content,
        report_id=report_id,
        status=status,
        meta=dict(meta or {}),
        created_at=now,
    )
    db.add(message)
    if role == "user" and (not thread.title or thread.title == DEFAULT_THREAD_TITLE):
        thread.title = derive_thread_title(content)
    thread.updated_at = now
    db.flush()
    return message


def create_message(
    *,
    thread_id: UUID,
    role: str,
    content: str,
    report_id: Optional[UUID] = None,
    status: str = "sent",
    meta: Optional[dict] = None,
    session: Optional[Session] = None,
) -> Message:
    db, managed = _get_session(session)
    try:
        thread = db.query(Thread).filter(Thread.id == thread_id, Thread.deleted_at.is_(None)).first()
        if thread is None:
            raise ValueError("Thread not found or deleted.")
        message = add_message(
            db,
            thread=thread,
            role=role,
            content=content,
            report_id=report_id,
            status=status,
            meta=meta,
        )
        db.commit()
        db.refresh(message)
        return message
    except Exception:
        db.rollback()
        raise
    finally:
        if managed:
            db.close()


def set_message_status(message_id: UUID, status: str, *, session: Optional[Session] = None) -> bool:
    """Move a message to ``status``; returns False when it no longer exists."""
    db, managed = _get_session(session)
    try:
        updated = db.query(Message).filter(Message.id == message_id).update({Message.status: status}, synchronize_session=False)
        db.commit()
        return bool(updated)
    except Exception:
        db.rollback()
        raise
    finally:
        if managed:
            db.close()


def list_recent_messages(
    thread_id: UUID,
    *,
    limit: int,
    session: Optional[Session] = None,
) -> List[Dict[str, str]]:
    """Return the latest ``limit`` sent messages as prompt history, oldest first."""
    if limit <= 0:
        return []
    db, managed = _get_session(session)
    try:
        rows = (
            db.query(Message.role, Message.content)
            .filter(Message.thread_id == thread_id, Message.status == "sent")
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
    finally:
        if managed:
            db.close()
    rows.reverse()
    return [{"role": role, "content": content} for role, content in rows]


__all__ = [
    "add_message",
    "create_message",
    "create_thread",
    "derive_thread_title",
    "get_thread",
    "list_recent_messages",
    "set_message_status",
]

"""Liveness and readiness probes."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from services.generation.registry import GenerationRegistry
from web.deps import get_generation_registry

router = APIRouter(prefix="/health", tags=["Health"])


def database_status(db: Session) -> Dict[str, Any]:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"ok": False, "error": exc.__class__.__name__}
    return {"ok": True}


@router.get("", summary="Liveness probe")
def read_liveness():
    return {"status": "ok"}


@router.get("/status", summary="Readiness probe with database and generation state")
def read_service_status(
    db: Session = Depends(get_db),
    registry: GenerationRegistry = Depends(get_generation_registry),
):
    database = database_status(db)
    return {
        "status": "ok" if database["ok"] else "degraded",
        "database": database,
        "generations": {"inFlight": len(registry)},
    }


__all__ = ["database_status", "router"]

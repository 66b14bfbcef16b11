"""Engine, session factory and declarative base for the playground tables."""

from typing import Any, Dict, Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.env import env_bool, env_str

load_dotenv()

DATABASE_URL: Optional[str] = env_str("DATABASE_URL") or env_str("TEST_DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")

IS_POSTGRES = DATABASE_URL.lower().startswith("postgresql")
if not IS_POSTGRES and not env_bool("DATABASE_ALLOW_NON_POSTGRES", False):
    raise RuntimeError(
        "Refusing non-PostgreSQL DATABASE_URL; set DATABASE_ALLOW_NON_POSTGRES=1 for local SQLite runs."
    )


def build_engine(url: str) -> Engine:
    """SQLite connections are shared with the persistence worker threads."""
    options: Dict[str, Any] = {"pool_pre_ping": url.lower().startswith("postgresql")}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **options)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

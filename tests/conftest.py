import os
from typing import Callable, Generator

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("DATABASE_URL", os.getenv("TEST_DATABASE_URL") or "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-playground-tests")

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import database as database_module
from database import Base, build_engine


@pytest.fixture(scope="session")
def engine(tmp_path_factory: pytest.TempPathFactory) -> Generator[Engine, None, None]:
    import models  # noqa: F401  registers every table on Base.metadata

    url = os.getenv("TEST_DATABASE_URL") or ""
    if not url.lower().startswith("postgresql"):
        # Reports are persisted from worker threads, which need a shared on-disk database.
        url = f"sqlite+pysqlite:///{tmp_path_factory.mktemp('db') / 'playground.db'}"
    test_engine = build_engine(url)
    Base.metadata.create_all(bind=test_engine)

    saved = (database_module.engine, database_module.SessionLocal)
    database_module.engine = test_engine
    database_module.SessionLocal = sessionmaker(bind=test_engine, autoflush=False)
    try:
        yield test_engine
    finally:
        database_module.engine, database_module.SessionLocal = saved
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables(engine: Engine) -> Generator[None, None, None]:
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = database_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def thread_factory(engine: Engine) -> Callable[..., object]:
    from services import thread_repository

    def _create(user_id: str = "user-1", title: str | None = None):
        return thread_repository.create_thread(user_id=user_id, title=title)

    return _create

"""
Database engines and session helpers.

Two access paths share one schema:
    - Async engine (aiosqlite) for schema creation at API startup
    - Sync engine + sessionmaker for Celery workers and the screening pipeline

Pipeline services take a session factory (any zero-arg callable returning a
Session) so tests can hand in an in-memory SQLite sessionmaker.
"""

from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session
from app.config import get_settings

settings = get_settings()

# Convert sqlite:/// to sqlite+aiosqlite:///
database_url = settings.database_url.replace("sqlite:///", "sqlite+aiosqlite:///")

engine = create_async_engine(database_url, echo=False)

# Synchronous engine for Celery tasks
sync_database_url = settings.database_url
sync_connect_args = {"check_same_thread": False} if sync_database_url.startswith("sqlite") else {}
sync_engine = create_engine(sync_database_url, echo=False, connect_args=sync_connect_args)
SyncSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=sync_engine
)

SessionFactory = Callable[[], Session]


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: SessionFactory = SyncSessionLocal) -> Iterator[Session]:
    """Commit on success, roll back on error, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def init_db():
    import app.models  # noqa: F401  (register tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def init_sync_db() -> None:
    """Create tables from a worker process."""
    import app.models  # noqa: F401

    Base.metadata.create_all(sync_engine)

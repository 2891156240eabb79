"""Database engine setup for nodepipe."""

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

if TYPE_CHECKING:
    from nodepipe.config import Settings

# Lazy engine initialization - engine created on first use
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _enable_foreign_keys(dbapi_conn: object, connection_record: object) -> None:
    """Enable foreign key constraints for SQLite connections."""
    cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for_url(url: str) -> Engine:
    """Create an engine with proper configuration.

    SQLite connections are shared across the driver's worker threads, so
    same-thread checking is disabled and writers wait on the file lock.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", _enable_foreign_keys)
        return engine
    return create_engine(url, echo=False, pool_pre_ping=True)


def get_engine(settings: "Settings | None" = None) -> Engine:
    """Get or create the engine."""
    global _engine
    if _engine is None:
        if settings is None:
            from nodepipe.config import get_settings

            settings = get_settings()
        settings.ensure_storage_dir()
        _engine = create_engine_for_url(settings.db_url)
    return _engine


def get_session_factory(settings: "Settings | None" = None) -> sessionmaker[Session]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine(settings)
        _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session from ``factory`` that commits on success."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_session(settings: "Settings | None" = None) -> Generator[Session, None, None]:
    """Yield a database session from the global factory."""
    with session_scope(get_session_factory(settings)) as session:
        yield session


def init_database(settings: "Settings | None" = None) -> None:
    """Create all tables."""
    from nodepipe.db.models import Base

    Base.metadata.create_all(get_engine(settings))


def reset_engines() -> None:
    """Reset engine caches (useful for testing)."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _session_factory = None

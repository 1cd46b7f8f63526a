"""Database connection and session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from referral_engine.logging_config import get_logger
from referral_engine.settings import settings
from referral_engine.storage.models import Base

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ships with foreign keys off; every connection must opt in
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    """Create an engine for the referral store.

    SQLite connections are shared with the CLI and test threads and get
    foreign key enforcement; other backends get a pre-ping pool.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Configured engine
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=settings.database_echo,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


class Database:
    """Owns the engine and hands out transactional sessions.

    Services take a ``Database`` so tests can point them at their own
    store; the module-level ``db`` is built from settings.
    """

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self.engine = build_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.debug("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        """Create every referral and discount table."""
        # Model modules register their tables on Base.metadata at import
        import referral_engine.discounts.models  # noqa: F401
        import referral_engine.referral.models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created", tables=len(Base.metadata.tables))

    def drop_tables(self) -> None:
        """Drop every referral and discount table."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    def dispose(self) -> None:
        """Release every pooled connection."""
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Transactional scope: commit on success, roll back and re-raise on error.

        Conditional updates inside the scope report their affected rows
        before commit, so callers can branch on them.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance
db = Database()

"""Engine and session management for the sync database."""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


class DatabaseError(Exception):
    """Raised when the sync database cannot be opened or is missing tables."""
    pass


class DatabaseManager:
    """Owns the engine and hands out transactional sessions.

    Every table the sync engine needs lives in one database: the folder
    tree, file records, field mappings, gallery fields, the activity log and
    the run-state row.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or get_settings().database.url
        url = make_url(self.database_url)
        self.is_sqlite = url.get_backend_name() == "sqlite"
        self.is_memory = self.is_sqlite and url.database in (None, "", ":memory:")

        if self.is_memory:
            # One shared connection, or each session would see its own empty database
            self.engine = create_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False}
            )
        elif self.is_sqlite:
            self._sqlite_path = Path(url.database).expanduser()
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False, "timeout": 20}
            )
        else:
            self.engine = create_engine(self.database_url, pool_pre_ping=True, pool_recycle=300)

        # Rows stay readable after session_scope() exits
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        logger.info("Database manager initialized", backend=url.get_backend_name(), in_memory=self.is_memory)

    def create_tables(self) -> None:
        if self.is_sqlite and not self.is_memory:
            self._sqlite_path.parent.mkdir(parents=True, exist_ok=True)

        Base.metadata.create_all(bind=self.engine)
        logger.info("Sync tables ready", tables=sorted(Base.metadata.tables))

    def missing_tables(self) -> list:
        existing = set(inspect(self.engine).get_table_names())
        return sorted(set(Base.metadata.tables) - existing)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Commit on success, roll back and re-raise on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Database transaction rolled back", error=str(e))
            raise
        finally:
            session.close()

    def test_connection(self) -> bool:
        """True when the database answers and every sync table exists."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            missing = self.missing_tables()
        except SQLAlchemyError as e:
            logger.error("Database connection check failed", error=str(e))
            return False

        if missing:
            logger.error("Database is missing sync tables", missing=missing)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Open the process-wide database, creating the tables when asked."""
    global _db_manager
    _db_manager = DatabaseManager(database_url)

    if create_tables:
        _db_manager.create_tables()

    if not _db_manager.test_connection():
        raise DatabaseError(f"Sync database is not usable: {_db_manager.database_url}")

    return _db_manager


def close_database() -> None:
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
        logger.info("Database connections closed")

"""Bounded, queryable activity log of sync operations."""

from typing import List, Optional

from .database import DatabaseManager
from .models import ActivityLogEntry, LogLevel
from .operations import ActivityLogRepository
from ..utils.logging import get_logger


DEFAULT_MAX_ENTRIES = 1000


class ActivityLog:
    """Persists log entries to the database and mirrors them to structlog.

    The table keeps at most ``max_entries`` rows; the oldest are trimmed
    on every append.
    """

    def __init__(self, db_manager: DatabaseManager, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.db_manager = db_manager
        self.max_entries = max_entries
        self.logger = get_logger("activity")

    def log(self, message: str, level: str = LogLevel.INFO.value) -> None:
        """Append an entry. Persistence failures are reported to structlog only."""
        level = _normalize_level(level)
        getattr(self.logger, level)(message)

        try:
            with self.db_manager.session_scope() as session:
                repo = ActivityLogRepository(session)
                repo.create(message, level)
                repo.trim(self.max_entries)
        except Exception as e:
            self.logger.error("Failed to persist activity log entry", error=str(e))

    def info(self, message: str) -> None:
        self.log(message, LogLevel.INFO.value)

    def warning(self, message: str) -> None:
        self.log(message, LogLevel.WARNING.value)

    def error(self, message: str) -> None:
        self.log(message, LogLevel.ERROR.value)

    def debug(self, message: str) -> None:
        self.log(message, LogLevel.DEBUG.value)

    def get_recent_logs(self, limit: int = 100) -> List[ActivityLogEntry]:
        """Most recent entries, newest first."""
        with self.db_manager.session_scope() as session:
            return [ActivityLogEntry.model_validate(e) for e in ActivityLogRepository(session).get_recent(limit)]

    def get_logs_by_level(self, level: str, limit: int = 100) -> List[ActivityLogEntry]:
        with self.db_manager.session_scope() as session:
            entries = ActivityLogRepository(session).get_by_level(_normalize_level(level), limit)
            return [ActivityLogEntry.model_validate(e) for e in entries]

    def count(self) -> int:
        with self.db_manager.session_scope() as session:
            return ActivityLogRepository(session).count()

    def clear_logs(self) -> int:
        with self.db_manager.session_scope() as session:
            cleared = ActivityLogRepository(session).clear()
        self.logger.info("Activity log cleared", entries=cleared)
        return cleared


def _normalize_level(level: Optional[str]) -> str:
    try:
        return LogLevel((level or LogLevel.INFO.value).lower()).value
    except ValueError:
        return LogLevel.INFO.value

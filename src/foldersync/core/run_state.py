"""Persisted sync run state and the at-most-one-run guard."""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database.database import DatabaseManager
from ..database.models import SyncRunState, SyncStatus, utcnow
from ..database.operations import SyncStateRepository
from ..utils.logging import get_logger


class RunStateStore:
    """Owns the run-state row.

    ``try_acquire`` is a compare-and-swap on ``is_running`` so separate
    processes sharing the database cannot both start a run; the asyncio lock
    serializes the check-and-set within this process. The holder refreshes
    ``heartbeat_at`` while it works; a guard whose heartbeat is older than
    ``stale_lock_minutes`` is considered abandoned and can be taken over.
    """

    def __init__(self, db_manager: DatabaseManager, stale_lock_minutes: int = 120, heartbeat_seconds: float = 60):
        self.db_manager = db_manager
        self.stale_lock_minutes = stale_lock_minutes
        self.heartbeat_seconds = heartbeat_seconds
        self._last_beat: Optional[datetime] = None
        self.logger = get_logger(self.__class__.__name__)
        self._lock = asyncio.Lock()

    async def try_acquire(self, direction: str) -> bool:
        async with self._lock:
            now = utcnow()
            stale_before = now - timedelta(minutes=self.stale_lock_minutes)
            with self.db_manager.session_scope() as session:
                acquired = SyncStateRepository(session).try_acquire(direction, now, stale_before)
            if acquired:
                self._last_beat = now

        self.logger.debug("Run guard acquisition", direction=direction, acquired=acquired)
        return acquired

    def heartbeat(self) -> None:
        """Mark the held guard as alive, at most once per ``heartbeat_seconds``."""
        now = utcnow()
        if self._last_beat is not None and (now - self._last_beat).total_seconds() < self.heartbeat_seconds:
            return

        try:
            with self.db_manager.session_scope() as session:
                SyncStateRepository(session).heartbeat(now)
        except SQLAlchemyError as e:
            self.logger.warning("Run guard heartbeat failed", error=str(e))
            return
        self._last_beat = now

    def release(self) -> None:
        with self.db_manager.session_scope() as session:
            SyncStateRepository(session).release()
        self.logger.debug("Run guard released")

    def is_running(self) -> bool:
        return self.get().is_running

    def mark_scheduled(self, direction: str) -> None:
        with self.db_manager.session_scope() as session:
            SyncStateRepository(session).update(
                status=SyncStatus.SCHEDULED.value,
                last_direction=direction,
                scheduled_at=utcnow()
            )

    def finish(self, status: SyncStatus, error: Optional[str] = None) -> None:
        """Record the outcome of a run; completion time moves for completed and partial runs."""
        fields = {"status": status.value, "last_error": error}
        if status in (SyncStatus.COMPLETED, SyncStatus.PARTIAL):
            fields["completed_at"] = utcnow()

        with self.db_manager.session_scope() as session:
            SyncStateRepository(session).update(**fields)

    def get(self) -> SyncRunState:
        with self.db_manager.session_scope() as session:
            return SyncRunState.model_validate(SyncStateRepository(session).get_or_create())

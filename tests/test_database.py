"""Tests for the folder tree, field targets, activity log and run state."""

import sys
import os
from datetime import timedelta

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from foldersync.core.run_state import RunStateStore
from foldersync.database import (
    DatabaseManager,
    FileRecordCreate, FileRecordUpdate, FolderTreeObserver,
    FolderNotFoundError, RecordNotFoundError, InvalidFolderError, DuplicateMappingError,
    SyncStatus, SyncStateModel
)
from foldersync.database.activity_log import ActivityLog
from foldersync.database.folder_tree import FOLDER_CREATED, FOLDER_DELETED, FILE_ADDED, FILE_MOVED
from foldersync.database.models import utcnow
from foldersync.database.operations import SYNC_STATE_ROW_ID


class EventRecorder(FolderTreeObserver):
    def __init__(self):
        self.folder_events = []
        self.file_events = []

    def on_folder_changed(self, folder_id, change):
        self.folder_events.append((folder_id, change))

    def on_file_changed(self, file_id, change):
        self.file_events.append((file_id, change))


class TestDatabaseManager:

    def test_connection(self, db_manager):
        assert db_manager.test_connection()

    def test_connection_requires_sync_tables(self):
        manager = DatabaseManager("sqlite:///:memory:")
        try:
            assert "sync_state" in manager.missing_tables()
            assert not manager.test_connection()
        finally:
            manager.close()

    def test_file_database_directory_created(self, tmp_path):
        manager = DatabaseManager(f"sqlite:///{tmp_path}/nested/sync.db")
        try:
            manager.create_tables()
            assert manager.missing_tables() == []
            assert (tmp_path / "nested" / "sync.db").exists()
        finally:
            manager.close()

    def test_failed_scope_rolls_back(self, db_manager):
        with pytest.raises(RuntimeError):
            with db_manager.session_scope() as session:
                session.add(SyncStateModel(id=SYNC_STATE_ROW_ID, status="none", is_running=True))
                session.flush()
                raise RuntimeError("abort")

        with db_manager.session_scope() as session:
            assert session.get(SyncStateModel, SYNC_STATE_ROW_ID) is None


class TestFolderTree:

    def test_create_appends_in_order(self, folder_tree):
        first = folder_tree.create_folder("First")
        second = folder_tree.create_folder("Second")
        child = folder_tree.create_folder("Child", first.id)

        assert (first.ord, second.ord) == (0, 1)
        assert child.parent_id == first.id and child.ord == 0
        assert [f.name for f in folder_tree.folders_by_parent(0)] == ["First", "Second"]
        assert folder_tree.get_folder_by_name("Child", first.id).id == child.id
        assert folder_tree.get_folder_by_name("Child") is None

    @pytest.mark.parametrize("name", ["", "   ", "a/b"])
    def test_invalid_names_rejected(self, folder_tree, name):
        with pytest.raises(InvalidFolderError):
            folder_tree.create_folder(name)

    def test_missing_parent_rejected(self, folder_tree):
        with pytest.raises(FolderNotFoundError):
            folder_tree.create_folder("Lost", parent_id=404)

    def test_rename(self, folder_tree):
        folder = folder_tree.create_folder("Old")
        assert folder_tree.rename_folder(folder.id, "New").name == "New"
        with pytest.raises(FolderNotFoundError):
            folder_tree.rename_folder(999, "Nope")

    def test_delete_unfiles_members_and_lifts_children(self, folder_tree, add_local_file):
        parent = folder_tree.create_folder("Parent")
        doomed = folder_tree.create_folder("Doomed", parent.id)
        child = folder_tree.create_folder("Child", doomed.id)
        record = add_local_file("a.jpg", doomed.id)

        folder_tree.delete_folder(doomed.id)

        assert folder_tree.get_folder(doomed.id) is None
        assert folder_tree.get_folder(child.id).parent_id == parent.id
        assert folder_tree.folder_for_attachment(record.id) is None

    def test_membership_ordering(self, folder_tree, add_local_file):
        folder = folder_tree.create_folder("Gallery")
        a = add_local_file("a.jpg", folder.id)
        b = add_local_file("b.jpg")
        folder_tree.move_attachment_to_folder(b.id, folder.id)

        assert [r.id for r in folder_tree.attachments_in_folder(folder.id)] == [a.id, b.id]
        assert folder_tree.folder_for_attachment(b.id) == folder.id

    def test_move_to_zero_unfiles(self, folder_tree, add_local_file):
        folder = folder_tree.create_folder("Gallery")
        record = add_local_file("a.jpg", folder.id)
        folder_tree.move_attachment_to_folder(record.id, 0)
        assert folder_tree.folder_for_attachment(record.id) is None
        assert folder_tree.attachments_in_folder(folder.id) == []

    def test_move_validates_ids(self, folder_tree, add_local_file):
        folder = folder_tree.create_folder("Gallery")
        record = add_local_file("a.jpg")
        with pytest.raises(RecordNotFoundError):
            folder_tree.move_attachment_to_folder(999, folder.id)
        with pytest.raises(FolderNotFoundError):
            folder_tree.move_attachment_to_folder(record.id, 999)

    def test_filename_lookup_takes_oldest(self, folder_tree, add_local_file):
        first = add_local_file("dup.jpg")
        add_local_file("dup.jpg", content=b"again")
        assert folder_tree.attachment_by_filename("dup.jpg").id == first.id
        assert folder_tree.attachment_by_filename("none.jpg") is None

    def test_lookups_ignore_case(self, folder_tree, add_local_file):
        photos = folder_tree.create_folder("Photos")
        record = add_local_file("Cat.JPG", photos.id)

        assert folder_tree.get_folder_by_name("photos").id == photos.id
        assert folder_tree.get_folder_by_name("PHOTOS", photos.id) is None
        assert folder_tree.attachment_by_filename("cat.jpg").id == record.id

    def test_update_and_delete_attachment(self, folder_tree, add_local_file):
        record = add_local_file("a.jpg")
        later = record.modified_at + timedelta(minutes=5)

        updated = folder_tree.update_attachment(record.id, FileRecordUpdate(modified_at=later, file_size=9))
        assert updated.modified_at == later
        assert updated.file_size == 9
        assert updated.filename == "a.jpg"

        folder_tree.delete_attachment(record.id)
        assert folder_tree.get_attachment(record.id) is None
        with pytest.raises(RecordNotFoundError):
            folder_tree.delete_attachment(record.id)

    def test_observers_notified(self, folder_tree):
        recorder = EventRecorder()
        folder_tree.add_observer(recorder)
        folder_tree.add_observer(recorder)

        folder = folder_tree.create_folder("Watched")
        record = folder_tree.add_attachment(FileRecordCreate(filename="w.jpg"))
        folder_tree.move_attachment_to_folder(record.id, folder.id)
        folder_tree.move_attachment_to_folder(record.id, folder.id)
        folder_tree.delete_folder(folder.id)

        assert recorder.folder_events == [(folder.id, FOLDER_CREATED), (folder.id, FOLDER_DELETED)]
        assert recorder.file_events == [(record.id, FILE_ADDED), (record.id, FILE_MOVED)]

        folder_tree.remove_observer(recorder)
        folder_tree.create_folder("Unwatched")
        assert len(recorder.folder_events) == 2

    def test_failing_observer_does_not_undo_change(self, folder_tree):
        class Broken(EventRecorder):
            def on_folder_changed(self, folder_id, change):
                raise RuntimeError("boom")

        folder_tree.add_observer(Broken())
        folder = folder_tree.create_folder("Kept")
        assert folder_tree.get_folder(folder.id) is not None


class TestFieldTargets:

    def test_set_and_get(self, field_targets, add_local_file):
        a = add_local_file("a.jpg")
        b = add_local_file("b.jpg")

        assert field_targets.get_gallery_field(10, "gallery") == []
        assert field_targets.set_gallery_field(10, "gallery", [b.id, a.id]) == [b.id, a.id]
        assert field_targets.get_gallery_field(10, "gallery") == [b.id, a.id]

        field_targets.set_gallery_field(10, "gallery", [])
        assert field_targets.get_gallery_field(10, "gallery") == []

    def test_unknown_ids_dropped(self, field_targets, add_local_file):
        a = add_local_file("a.jpg")
        assert field_targets.set_gallery_field(10, "gallery", [999, a.id]) == [a.id]

    def test_duplicate_mapping_rejected(self, field_targets, folder_tree):
        folder = folder_tree.create_folder("Mapped")
        field_targets.add_mapping(folder.id, "gallery", 10)

        with pytest.raises(DuplicateMappingError):
            field_targets.add_mapping(folder.id, "gallery", 10)
        assert len(field_targets.list_mappings()) == 1

        field_targets.add_mapping(folder.id, "gallery", 11)
        assert len(field_targets.list_mappings()) == 2

    def test_remove_mapping(self, field_targets):
        field_targets.add_mapping(1, "gallery", 10)
        assert field_targets.remove_mapping(1, "gallery", 10)
        assert not field_targets.remove_mapping(1, "gallery", 10)
        assert field_targets.list_mappings() == []


class TestActivityLog:

    def test_recent_newest_first(self, activity_log):
        activity_log.info("first")
        activity_log.warning("second")
        activity_log.error("third")

        messages = [entry.message for entry in activity_log.get_recent_logs()]
        assert messages == ["third", "second", "first"]
        assert [e.message for e in activity_log.get_logs_by_level("warning")] == ["second"]

    def test_bounded(self, db_manager):
        log = ActivityLog(db_manager, max_entries=5)
        for n in range(12):
            log.info(f"entry {n}")

        assert log.count() == 5
        assert [e.message for e in log.get_recent_logs(limit=10)] == [f"entry {n}" for n in range(11, 6, -1)]

    def test_unknown_level_stored_as_info(self, activity_log):
        activity_log.log("odd", level="verbose")
        assert activity_log.get_recent_logs(limit=1)[0].level == "info"

    def test_clear(self, activity_log):
        activity_log.debug("gone soon")
        assert activity_log.clear_logs() == 1
        assert activity_log.count() == 0


class TestRunState:

    @pytest.mark.asyncio
    async def test_guard_is_exclusive(self, run_state):
        assert await run_state.try_acquire("both")
        assert not await run_state.try_acquire("to_remote")

        state = run_state.get()
        assert state.is_running
        assert state.status == SyncStatus.IN_PROGRESS
        assert state.last_direction == "both"

        run_state.release()
        assert not run_state.is_running()
        assert await run_state.try_acquire("from_remote")

    @pytest.mark.asyncio
    async def test_stale_guard_taken_over(self, db_manager):
        store = RunStateStore(db_manager, stale_lock_minutes=120)
        assert await store.try_acquire("both")

        with db_manager.session_scope() as session:
            state = session.get(SyncStateModel, SYNC_STATE_ROW_ID)
            state.heartbeat_at = utcnow() - timedelta(hours=3)

        assert await store.try_acquire("both")

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_guard_alive(self, db_manager):
        holder = RunStateStore(db_manager, stale_lock_minutes=120, heartbeat_seconds=0)
        other = RunStateStore(db_manager, stale_lock_minutes=120)
        assert await holder.try_acquire("both")

        with db_manager.session_scope() as session:
            state = session.get(SyncStateModel, SYNC_STATE_ROW_ID)
            state.started_at = utcnow() - timedelta(hours=3)
            state.heartbeat_at = utcnow() - timedelta(hours=3)

        holder.heartbeat()

        assert not await other.try_acquire("both")
        state = holder.get()
        assert state.started_at < utcnow() - timedelta(hours=2)
        assert state.heartbeat_at > utcnow() - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_heartbeat_throttled(self, db_manager):
        store = RunStateStore(db_manager, heartbeat_seconds=60)
        assert await store.try_acquire("both")
        old = utcnow() - timedelta(hours=3)

        with db_manager.session_scope() as session:
            session.get(SyncStateModel, SYNC_STATE_ROW_ID).heartbeat_at = old

        store.heartbeat()
        assert store.get().heartbeat_at == old

    @pytest.mark.asyncio
    async def test_guard_shared_through_database(self, db_manager):
        assert await RunStateStore(db_manager).try_acquire("both")
        assert not await RunStateStore(db_manager).try_acquire("both")

    def test_finish_records_outcome(self, run_state):
        run_state.mark_scheduled("from_remote")
        scheduled = run_state.get()
        assert scheduled.status == SyncStatus.SCHEDULED
        assert scheduled.scheduled_at is not None

        run_state.finish(SyncStatus.FAILED, "boom")
        failed = run_state.get()
        assert failed.status == SyncStatus.FAILED
        assert failed.last_error == "boom"
        assert failed.completed_at is None

        run_state.finish(SyncStatus.PARTIAL, "half")
        assert run_state.get().completed_at is not None

    def test_fresh_state(self, db_manager):
        state = RunStateStore(db_manager).get()
        assert state.status == SyncStatus.NONE
        assert not state.is_running

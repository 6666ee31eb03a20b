"""Core sync engine reconciling the folder tree, the remote store and field targets."""

import asyncio
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .conflict import DownloadAction, DownloadDecision, decide_download, should_upload
from .media_library import MediaLibrary, UnsupportedFileError
from .path_mapping import PathMapper, join_remote_path
from .run_state import RunStateStore
from ..api_clients.base import RemoteEntry, RemoteStore, RemoteStoreError
from ..config.schema import SyncDirection, SyncOptions
from ..database.activity_log import ActivityLog
from ..database.field_targets import FieldTargetService
from ..database.folder_tree import FolderTreeObserver, FolderTreeService, FILE_ADDED
from ..database.models import FileRecord, FileRecordUpdate, SyncRunState, SyncStatus
from ..utils.logging import get_logger, log_async_execution_time, sync_run_context
from ..utils.retry import MEMBERSHIP_RETRY, RetryPolicy, retry_async


CONNECTIVITY_ERROR = "Remote store is not connected."

PASS_TO_REMOTE = "Local to remote"
PASS_FROM_REMOTE = "Remote to local"
PASS_TO_FIELDS = "Local to field targets"

DEFAULT_SCHEDULE_DELAY = 5
DEFAULT_BUSY_RETRY = 120
DEFAULT_FILE_ADDED_DELAY = 10

# Failures a single file or folder may hit without failing its pass
ITEM_ERRORS = (RemoteStoreError, OSError, UnsupportedFileError, LookupError, ValueError, SQLAlchemyError)


class SyncEngineError(Exception):
    """Raised when the sync engine cannot carry out an operation."""
    pass


class PassFailedError(SyncEngineError):
    """Raised inside a pass when it cannot continue at all."""
    pass


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    name: str
    attempted: bool = True
    success: bool = True
    error: Optional[str] = None
    folders_created: int = 0
    files_uploaded: int = 0
    files_downloaded: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    fields_updated: int = 0


@dataclass
class SyncReport:
    """Result of a ``run_sync`` call."""

    direction: SyncDirection
    status: SyncStatus
    deferred: bool = False
    error_message: Optional[str] = None
    passes: List[PassResult] = field(default_factory=list)
    sync_duration: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "status": self.status.value,
            "deferred": self.deferred,
            "error_message": self.error_message,
            "passes": [asdict(p) for p in self.passes],
            "sync_duration": self.sync_duration,
        }


class SyncEngine(FolderTreeObserver):
    """Runs the three reconciliation passes under an at-most-one-run guard.

    Pass 1 pushes local folders and files to the remote store, pass 2 pulls
    remote folders and files into the folder tree, and pass 3 copies folder
    contents into mapped gallery fields. Each pass has its own error
    boundary; the overall status is derived from all three.
    """

    def __init__(
        self,
        remote: RemoteStore,
        folder_tree: FolderTreeService,
        field_targets: FieldTargetService,
        activity_log: ActivityLog,
        media: MediaLibrary,
        run_state: RunStateStore,
        options: SyncOptions,
        scheduler=None,
        schedule_delay_seconds: float = DEFAULT_SCHEDULE_DELAY,
        busy_retry_seconds: float = DEFAULT_BUSY_RETRY,
        file_added_delay_seconds: float = DEFAULT_FILE_ADDED_DELAY,
        membership_retry: RetryPolicy = MEMBERSHIP_RETRY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.remote = remote
        self.folder_tree = folder_tree
        self.field_targets = field_targets
        self.activity_log = activity_log
        self.media = media
        self.run_state = run_state
        self.options = options
        self.scheduler = scheduler
        self.schedule_delay_seconds = schedule_delay_seconds
        self.busy_retry_seconds = busy_retry_seconds
        self.file_added_delay_seconds = file_added_delay_seconds
        self.membership_retry = membership_retry
        self._sleep = sleep
        self._running = False
        self.logger = get_logger(self.__class__.__name__)

        self.logger.info(
            "Sync engine initialized",
            root_path=options.root_path,
            conflict_policy=options.conflict_policy.value
        )

    def set_scheduler(self, scheduler) -> None:
        self.scheduler = scheduler

    @property
    def is_syncing(self) -> bool:
        return self._running

    # Entry points

    def schedule_sync(self, direction: SyncDirection = SyncDirection.BOTH, delay_seconds: Optional[float] = None) -> None:
        """Record intent to sync and enqueue a deferred run. Never raises."""
        try:
            direction = SyncDirection(direction)
            self.run_state.mark_scheduled(direction.value)
            self._defer(direction, self.schedule_delay_seconds if delay_seconds is None else delay_seconds)
            self.activity_log.info(f"Sync scheduled with direction: {direction.value}")
        except Exception as e:
            self.logger.error("Failed to schedule sync", direction=str(direction), error=str(e))

    @log_async_execution_time
    async def run_sync(self, direction: SyncDirection = SyncDirection.BOTH) -> SyncReport:
        """Run one reconciliation if no other run holds the guard.

        A busy guard is not an error: the run is deferred and the returned
        report has ``deferred`` set.
        """
        direction = SyncDirection(direction)
        with sync_run_context(direction.value):
            return await self._run_guarded(direction)

    async def _run_guarded(self, direction: SyncDirection) -> SyncReport:
        start_time = time.monotonic()

        if not await self._claim(direction):
            self.activity_log.warning(
                f"Sync already in progress. Retrying {direction.value} sync in {self.busy_retry_seconds} seconds."
            )
            self._defer(direction, self.busy_retry_seconds)
            return SyncReport(direction=direction, status=SyncStatus.IN_PROGRESS, deferred=True)

        report = SyncReport(direction=direction, status=SyncStatus.IN_PROGRESS)

        try:
            self.activity_log.info(f"Starting sync with direction: {direction.value}")

            if not await self.remote.is_connected():
                report.status = SyncStatus.FAILED
                report.error_message = CONNECTIVITY_ERROR
                self.run_state.finish(SyncStatus.FAILED, CONNECTIVITY_ERROR)
                self.activity_log.error(f"Sync failed: {CONNECTIVITY_ERROR}")
                return report

            report.passes = await self._run_passes(direction)
            report.status, report.error_message = self._overall_status(report.passes)
            self.run_state.finish(report.status, report.error_message)

            if report.status == SyncStatus.COMPLETED:
                self.activity_log.info("Sync completed successfully")
            elif report.status == SyncStatus.FAILED:
                self.activity_log.error("Sync failed completely")
            else:
                self.activity_log.warning("Sync partially completed with errors")

        finally:
            self._running = False
            self.run_state.release()
            report.sync_duration = time.monotonic() - start_time

        self.logger.info(
            "Sync run finished",
            direction=direction.value,
            status=report.status.value,
            duration=f"{report.sync_duration:.2f}s"
        )
        return report

    async def _claim(self, direction: SyncDirection) -> bool:
        """Claim this engine, then the shared guard.

        A run already in progress here keeps the engine even when its guard
        looks stale in the database.
        """
        if self._running:
            return False
        self._running = True
        try:
            acquired = await self.run_state.try_acquire(direction.value)
        except Exception:
            self._running = False
            raise
        if not acquired:
            self._running = False
        return acquired

    def get_status(self) -> SyncRunState:
        return self.run_state.get()

    # Change notifications

    def on_folder_changed(self, folder_id: int, change: str) -> None:
        if self._running:
            return
        self.logger.debug("Folder changed", folder_id=folder_id, change=change)
        self.schedule_sync(SyncDirection.TO_REMOTE)

    def on_file_changed(self, file_id: int, change: str) -> None:
        if self._running:
            return
        self.logger.debug("File changed", file_id=file_id, change=change)
        # New files get longer so their folder assignment can land first
        delay = self.file_added_delay_seconds if change == FILE_ADDED else None
        self.schedule_sync(SyncDirection.TO_REMOTE, delay)

    # Pass orchestration

    async def _run_passes(self, direction: SyncDirection) -> List[PassResult]:
        passes = []

        if direction.pushes:
            passes.append(await self._run_pass(PASS_TO_REMOTE, self.sync_to_remote))
        else:
            passes.append(PassResult(PASS_TO_REMOTE, attempted=False))

        if direction.pulls:
            passes.append(await self._run_pass(PASS_FROM_REMOTE, self.sync_from_remote))
        else:
            passes.append(PassResult(PASS_FROM_REMOTE, attempted=False))

        passes.append(await self._run_pass(PASS_TO_FIELDS, self.sync_to_fields))
        return passes

    async def _run_pass(self, name: str, run: Callable[[PassResult], Awaitable[None]]) -> PassResult:
        result = PassResult(name)
        self.run_state.heartbeat()
        self.activity_log.info(f"Starting {name.lower()} sync")

        try:
            await run(result)
        except Exception as e:
            result.success = False
            result.error = str(e)
            self.activity_log.error(f"{name} sync failed: {e}")
            return result

        self.activity_log.info(f"Completed {name.lower()} sync")
        return result

    @staticmethod
    def _overall_status(passes: List[PassResult]) -> Tuple[SyncStatus, Optional[str]]:
        """Skipped passes count as successful."""
        errors = [f"{p.name}: {p.error}" for p in passes if not p.success]
        error_message = " | ".join(errors) or None

        if all(p.success for p in passes):
            return SyncStatus.COMPLETED, None
        if not any(p.success for p in passes):
            return SyncStatus.FAILED, error_message
        return SyncStatus.PARTIAL, error_message

    def _defer(self, direction: SyncDirection, delay_seconds: float) -> None:
        if self.scheduler is None:
            self.logger.warning("No scheduler attached, deferred sync dropped", direction=direction.value)
            return
        self.scheduler.defer(direction, delay_seconds)

    # Pass 1: local to remote

    async def sync_to_remote(self, result: PassResult) -> None:
        root_path = self.options.root_path
        await self._ensure_remote_root(root_path, result)

        folders = self.folder_tree.all_folders()
        mapper = PathMapper(root_path, folders)

        # Parents before children
        ordered = sorted(folders, key=lambda f: (len(mapper.ancestor_names(f.id)), f.parent_id, f.ord, f.id))

        for folder in ordered:
            remote_path = mapper.remote_path(folder.id)
            try:
                if await self._ensure_remote_folder(remote_path):
                    result.folders_created += 1
                    self.activity_log.info(f"Created remote folder: {remote_path}")
            except RemoteStoreError as e:
                self.activity_log.error(f"Error creating remote folder {remote_path}: {e}")

        for folder in ordered:
            folder_path = mapper.remote_path(folder.id)
            for record in self.folder_tree.attachments_in_folder(folder.id):
                await self._push_file(record, folder_path, result)

    async def _push_file(self, record: FileRecord, folder_path: str, result: PassResult) -> None:
        self.run_state.heartbeat()
        local_path = self.media.resolve_path(record)
        if not local_path:
            self.activity_log.warning(f"File not found for record {record.id} ({record.filename})")
            result.files_skipped += 1
            return

        remote_path = join_remote_path(folder_path, record.filename)

        try:
            existing = await self.remote.get_metadata(remote_path)
            if not should_upload(self.options.conflict_policy, record.modified_at, existing):
                result.files_skipped += 1
                return

            entry = await self.remote.upload(local_path, remote_path)
        except ITEM_ERRORS as e:
            self.activity_log.error(f"Error uploading {record.filename} to {remote_path}: {e}")
            result.files_failed += 1
            return

        result.files_uploaded += 1
        self.activity_log.info(f"Uploaded file: {remote_path}")
        self._align_modified_time(record, entry)

    def _align_modified_time(self, record: FileRecord, entry: Optional[RemoteEntry]) -> None:
        """Stamp the record with the uploaded copy's server time.

        Both copies then compare equal, so neither direction sees the fresh
        upload as newer. Server times have whole-second resolution and may
        sit just before the local time.
        """
        if entry is None or entry.server_modified is None:
            return
        if entry.server_modified == record.modified_at:
            return
        try:
            self.folder_tree.update_attachment(record.id, FileRecordUpdate(modified_at=entry.server_modified))
        except ITEM_ERRORS as e:
            self.logger.warning("Failed to align record modified time", file_id=record.id, error=str(e))

    # Pass 2: remote to local

    async def sync_from_remote(self, result: PassResult) -> None:
        root_path = self.options.root_path
        await self._ensure_remote_root(root_path, result)

        # Stack of (remote folder, local parent id); files directly under the root are not imported
        worklist: List[Tuple[RemoteEntry, int]] = []
        root_entries = await self.remote.list_folder(root_path)
        for entry in reversed(root_entries):
            if entry.is_folder:
                worklist.append((entry, 0))
            elif entry.is_file:
                self.logger.debug("Ignoring file at remote root", path=entry.path_display)

        while worklist:
            remote_folder, parent_id = worklist.pop()

            try:
                entries = await self.remote.list_folder(remote_folder.path_display)
            except RemoteStoreError as e:
                self.activity_log.error(f"Error listing remote folder {remote_folder.path_display}: {e}")
                continue

            try:
                folder_id = await self._find_or_create_folder(remote_folder.name, parent_id, result)
            except ITEM_ERRORS as e:
                self.activity_log.error(f"Error resolving local folder for {remote_folder.path_display}: {e}")
                continue

            for entry in entries:
                if entry.is_file:
                    await self._pull_file(entry, folder_id, result)

            for entry in reversed(entries):
                if entry.is_folder:
                    worklist.append((entry, folder_id))

    def find_existing_record(self, filename: str) -> Optional[FileRecord]:
        """Local record matching a remote file.

        Matches by filename alone and takes the first (oldest) record, so
        same-named files in different folders are ambiguous.
        """
        return self.folder_tree.attachment_by_filename(filename)

    async def _pull_file(self, entry: RemoteEntry, folder_id: int, result: PassResult) -> None:
        self.run_state.heartbeat()
        filename = entry.name

        if not self.options.allows_extension(entry.extension):
            self.activity_log.info(f"Skipping file {filename} - file type {entry.extension} not in allowed types")
            result.files_skipped += 1
            return

        local = self.find_existing_record(filename)
        decision = decide_download(self.options.conflict_policy, filename, entry.server_modified, local)

        if decision.action == DownloadAction.KEEP_BOTH:
            # A copy from an earlier run already carries this name
            renamed = self.find_existing_record(decision.filename)
            if renamed is not None:
                decision = DownloadDecision(DownloadAction.KEEP_LOCAL, decision.filename, renamed.id)

        if not decision.downloads:
            try:
                await self._file_record(decision.existing_record_id, folder_id)
            except ITEM_ERRORS as e:
                self.activity_log.error(f"Error filing {filename} into folder {folder_id}: {e}")
                result.files_failed += 1
                return
            result.files_skipped += 1
            return

        staged = self.media.staging_path(decision.filename)
        try:
            await self.remote.download(entry.path_display, staged)
            record = self.media.import_file(
                staged,
                decision.filename,
                modified_at=entry.server_modified,
                record_id=decision.existing_record_id
            )
            await self._file_record(record.id, folder_id)
        except ITEM_ERRORS as e:
            self.activity_log.error(f"Error importing {entry.path_display}: {e}")
            result.files_failed += 1
            return
        finally:
            self.media.discard(staged)

        result.files_downloaded += 1
        self.activity_log.info(f"Added/updated file in media library: {decision.filename}")

    async def _find_or_create_folder(self, name: str, parent_id: int, result: PassResult) -> int:
        async def find_or_create(attempt: int) -> int:
            folder = self.folder_tree.get_folder_by_name(name, parent_id)
            if folder is not None:
                return folder.id
            created = self.folder_tree.create_folder(name, parent_id)
            result.folders_created += 1
            self.activity_log.info(f"Created local folder: {name}")
            return created.id

        return await retry_async(
            find_or_create,
            policy=self.membership_retry,
            retry_on=(SQLAlchemyError,),
            description="find or create folder",
            sleep=self._sleep
        )

    async def _file_record(self, file_id: int, folder_id: int) -> None:
        """Make sure a record sits in ``folder_id``, retrying the membership write."""
        if self.folder_tree.folder_for_attachment(file_id) == folder_id:
            return

        async def move(attempt: int) -> None:
            self.folder_tree.move_attachment_to_folder(file_id, folder_id)

        await retry_async(
            move,
            policy=self.membership_retry,
            retry_on=(LookupError, SQLAlchemyError),
            description="move attachment to folder",
            sleep=self._sleep
        )

    # Pass 3: local to field targets

    async def sync_to_fields(self, result: PassResult) -> None:
        mappings = self.field_targets.list_mappings()
        if not mappings:
            self.activity_log.info("No folder-to-field mappings found")
            return

        for mapping in mappings:
            if not mapping.folder_id or not mapping.field_key or not mapping.target_id:
                continue

            file_ids = [record.id for record in self.folder_tree.attachments_in_folder(mapping.folder_id)]
            self.field_targets.set_gallery_field(mapping.target_id, mapping.field_key, file_ids)
            result.fields_updated += 1

            self.activity_log.info(
                f"Updated gallery field: {mapping.field_key} on {mapping.target_id} with {len(file_ids)} files"
            )

    # Remote helpers

    async def _ensure_remote_root(self, root_path: str, result: PassResult) -> None:
        try:
            if await self._ensure_remote_folder(root_path):
                result.folders_created += 1
                self.activity_log.info(f"Created remote root folder: {root_path}")
        except RemoteStoreError as e:
            raise PassFailedError(f"Error creating remote root folder: {e}") from e

    async def _ensure_remote_folder(self, path: str) -> bool:
        """Create ``path`` remotely unless it exists. Returns True if created."""
        if await self.remote.get_metadata(path) is not None:
            return False
        await self.remote.create_folder(path)
        return True

"""Main application entry point."""

import asyncio
import signal
import sys
from pathlib import Path
from aiohttp import web_runner

from .config.settings import get_settings
from .config.loader import load_sync_options
from .utils.logging import setup_logging, get_logger
from .database import init_database, close_database
from .database.activity_log import ActivityLog
from .database.field_targets import FieldTargetService
from .database.folder_tree import FolderTreeService
from .auth.token_store import TokenStore
from .api_clients.dropbox import DropboxClient
from .core.media_library import MediaLibrary
from .core.run_state import RunStateStore
from .core.sync_engine import SyncEngine
from .scheduler.job_scheduler import SyncScheduler
from .web.app import create_web_app


class FolderSyncApp:
    """Main folder sync application."""

    def __init__(self):
        """Initialize the application."""
        self.settings = get_settings()
        self.logger = get_logger("FolderSync")
        self.running = False
        self.web_runner: web_runner.AppRunner | None = None
        self.client: DropboxClient | None = None
        self.engine: SyncEngine | None = None
        self.scheduler: SyncScheduler | None = None

    async def startup(self):
        """Application startup."""
        self.logger.info(
            "Starting Folder Sync",
            version=self.settings.version,
            environment=self.settings.environment
        )

        Path("./data").mkdir(exist_ok=True)
        Path("./logs").mkdir(exist_ok=True)

        db_manager = init_database(create_tables=True)
        options = load_sync_options(self.settings)

        token_store = TokenStore(
            token_storage_path=self.settings.dropbox.token_storage_path,
            access_token=self.settings.dropbox.access_token,
            refresh_token=self.settings.dropbox.refresh_token
        )
        self.client = DropboxClient.from_settings(self.settings.dropbox, token_store=token_store)

        folder_tree = FolderTreeService(db_manager)
        self.engine = SyncEngine(
            remote=self.client,
            folder_tree=folder_tree,
            field_targets=FieldTargetService(db_manager),
            activity_log=ActivityLog(db_manager, max_entries=self.settings.activity_log.max_entries),
            media=MediaLibrary(folder_tree, self.settings.sync.media_root, self.settings.sync.staging_dir),
            run_state=RunStateStore(db_manager, stale_lock_minutes=self.settings.sync.stale_lock_minutes),
            options=options,
            schedule_delay_seconds=self.settings.sync.schedule_delay_seconds,
            busy_retry_seconds=self.settings.sync.busy_retry_seconds
        )
        folder_tree.add_observer(self.engine)

        self.scheduler = SyncScheduler(self.engine, options)
        self.engine.set_scheduler(self.scheduler)
        await self.scheduler.start()

        await self._setup_web_server()

        self.running = True
        self.logger.info("Folder Sync started successfully")

    async def shutdown(self):
        """Application shutdown."""
        self.logger.info("Shutting down Folder Sync")
        self.running = False

        if self.scheduler and self.scheduler.running:
            await self.scheduler.stop(wait=False)

        await self._stop_web_server()

        if self.client:
            await self.client.close()

        close_database()
        self.logger.info("Folder Sync stopped")

    async def run(self):
        """Run the main application loop."""
        await self.startup()

        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.shutdown()

    async def _setup_web_server(self):
        """Set up web server for health, status and webhooks."""
        web_app = create_web_app(
            self.engine,
            app_secret=self.settings.dropbox.app_secret,
            version=self.settings.version,
            is_healthy=lambda: self.running
        )

        self.web_runner = web_runner.AppRunner(web_app)
        await self.web_runner.setup()

        site = web_runner.TCPSite(self.web_runner, self.settings.web.host, self.settings.web.port)
        await site.start()

        self.logger.info("Web server started", host=self.settings.web.host, port=self.settings.web.port)

    async def _stop_web_server(self):
        if self.web_runner:
            await self.web_runner.cleanup()
            self.logger.info("Web server stopped")


def setup_signal_handlers(app: FolderSyncApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        app.logger.info("Received signal", signal=signum)
        app.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main():
    """Main entry point."""
    setup_logging()

    logger = get_logger("main")
    logger.info("Initializing Folder Sync application")

    app = FolderSyncApp()
    setup_signal_handlers(app)
    await app.run()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()

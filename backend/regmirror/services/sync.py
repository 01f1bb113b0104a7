"""Registry sync orchestrator: crawls the registry and refreshes the cache."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from regmirror.config import Settings
from regmirror.schemas.registry import SyncStats
from regmirror.services.registry_cache import RegistryCache
from regmirror.services.registry_client import RegistryClient


class RegistrySyncService:
    """Runs registry crawls on a fixed interval or on demand.

    At most one sync runs at a time. A call to ``sync_now()`` while a sync
    is in flight returns immediately without touching the network; it is
    not queued. Scheduled and manual runs share the same flag.

    Example:
        service = RegistrySyncService(settings, AsyncSessionLocal)
        await service.start()
        ...
        await service.sync_now()
        ...
        await service.stop()
    """

    JOB_ID = "registry_sync"

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[RegistryCache] = None,
        client_factory: Optional[Callable[[], RegistryClient]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the sync service.

        Args:
            settings: Registry and schedule configuration
            session_factory: Factory for cache database sessions
            cache: Cache store (a default RegistryCache if omitted)
            client_factory: Builds a RegistryClient per sync
            logger: Logger to report through
        """
        self.settings = settings
        self.session_factory = session_factory
        self.logger = logger or logging.getLogger(__name__)
        self.cache = cache or RegistryCache(logger=self.logger)
        self._client_factory = client_factory or (lambda: RegistryClient(settings, logger=self.logger))

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_started: bool = False
        self.is_syncing: bool = False
        self.last_sync: Optional[datetime] = None
        self.last_result: Optional[SyncStats] = None
        self.last_error: Optional[str] = None

    async def start(self) -> None:
        """Start the scheduled sync. Calling it again while started is a no-op."""
        if self.is_started:
            self.logger.warning("Registry sync service already started, skipping")
            return

        if not self.settings.sync_enabled:
            self.logger.info("Scheduled registry sync is disabled in settings")
            return

        job_kwargs = {}
        if self.settings.sync_on_start:
            # Leaving next_run_time out lets the trigger compute the first run;
            # an explicit None would add the job paused
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_scheduled_sync,
            IntervalTrigger(seconds=self.settings.sync_interval_seconds),
            id=self.JOB_ID,
            name="Registry Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_kwargs,
        )
        self.scheduler.start()
        self.is_started = True
        self.logger.info(
            f"Registry sync service started with interval: {self.settings.sync_interval_seconds}s"
        )

        next_run = self.get_next_run_time()
        if next_run:
            self.logger.info(f"Next registry sync scheduled for: {next_run}")

    async def stop(self) -> None:
        """Stop scheduling syncs. A sync already running is not interrupted."""
        if self.scheduler and self.scheduler.running:
            try:
                self.scheduler.shutdown(wait=False)
                # Give event loop a chance to process shutdown
                await asyncio.sleep(0)
                self.logger.info("Registry sync service stopped")
            except (RuntimeError, SchedulerNotRunningError) as e:
                self.logger.error(f"Scheduler shutdown error: {e}")
        self.scheduler = None
        self.is_started = False

    async def sync_now(self) -> Optional[SyncStats]:
        """Run a sync unless one is already in progress.

        Returns:
            Sync counters, or None when skipped because a sync was running

        Raises:
            Whatever the crawl or cache write raised
        """
        if self.is_syncing:
            self.logger.info("Registry sync already in progress, skipping")
            return None
        return await self.perform_sync()

    async def perform_sync(self) -> Optional[SyncStats]:
        """Crawl the registry and write the result to the cache."""
        if self.is_syncing:
            self.logger.warning("Sync already in progress, skipping...")
            return None

        # Set before the first await so a concurrent caller sees it
        self.is_syncing = True
        start_time = datetime.now()
        try:
            self.logger.info("Starting registry sync...")
            async with self._client_factory() as client:
                repos = await client.list_registry()

            if not repos:
                # An empty crawl means the catalog was unreachable or empty; keep the cache
                self.logger.warning("Registry returned no repositories, keeping cached data")
                stats = SyncStats()
            else:
                async with self.session_factory() as db:
                    stats = await self.cache.sync_from_registry(db, repos)

            duration = (datetime.now() - start_time).total_seconds()
            self.last_sync = datetime.now(timezone.utc)
            self.last_result = stats
            self.last_error = None
            self.logger.info(f"Registry sync completed successfully in {duration:.2f}s")
            return stats
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            raise
        finally:
            self.is_syncing = False

    async def _run_scheduled_sync(self) -> None:
        """Scheduler job body; failures are logged and retried next interval."""
        try:
            await self.sync_now()
        except Exception as e:
            self.logger.error(f"Registry sync failed: {type(e).__name__}: {e}", exc_info=True)

    def get_next_run_time(self) -> Optional[datetime]:
        """Next scheduled run, or None if the scheduler is not running."""
        if not self.scheduler:
            return None

        try:
            job = self.scheduler.get_job(self.JOB_ID)
        except JobLookupError as e:
            self.logger.warning(f"Failed to get job: {e}")
            return None
        return job.next_run_time if job else None

    def get_status(self) -> dict:
        """Snapshot of the service state for status endpoints."""
        next_run = self.get_next_run_time() if self.is_started else None
        return {
            "started": self.is_started,
            "syncing": self.is_syncing,
            "interval_seconds": self.settings.sync_interval_seconds,
            "next_run": next_run.isoformat() if next_run else None,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_error": self.last_error,
        }

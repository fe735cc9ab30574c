"""Scheduled documentation syncs.

An APScheduler cron job walks the enabled source definitions and submits a
GitHub sync for every configured version. Versions that are already syncing
are skipped.
"""

import asyncio
import logging
from typing import List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from services.shared.models import SyncRun
from services.sync import SyncConflictError, SyncOrchestrator
from sources.loader import SourceLoader

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "scheduled_docs_sync"


class SyncScheduler:
    """Runs ``sync_all`` on a crontab schedule."""

    def __init__(self, orchestrator: SyncOrchestrator, source_loader: SourceLoader,
                 cron: str = "0 2 * * *", wait_for_completion: bool = False):
        self.orchestrator = orchestrator
        self.source_loader = source_loader
        self.cron = cron
        self.wait_for_completion = wait_for_completion
        self.scheduler: Optional[AsyncIOScheduler] = None

    def start(self):
        """Create the scheduler and register the cron job. Needs a running event loop."""
        trigger = CronTrigger.from_crontab(self.cron)
        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1}
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_job(self.sync_all, trigger, id=SYNC_JOB_ID, replace_existing=True)
        self.scheduler.start()
        logger.info(f"Scheduled documentation sync with cron: {self.cron}")

    def shutdown(self):
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        logger.info("Sync scheduler shutdown complete")

    async def sync_all(self) -> List["asyncio.Task[SyncRun]"]:
        """Submit a sync for every version of every enabled source."""
        self.source_loader.reload_cache()
        sources = self.source_loader.get_enabled_sources()
        tasks = []

        for name, source in sources.items():
            for version in source.versions:
                try:
                    task = await self.orchestrator.sync_from_source(
                        version.version_id, source.owner, source.repo,
                        source.docs_path_for(version), version.ref
                    )
                except SyncConflictError as e:
                    logger.info(f"Skipping {name} {version.ref}: {e}")
                    continue
                logger.info(f"Submitted sync for {name} {version.ref} ({source.owner}/{source.repo})")
                tasks.append(task)

        logger.info(f"Scheduled sync submitted {len(tasks)} runs across {len(sources)} sources")
        if self.wait_for_completion and tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return tasks

    def _job_executed(self, event):
        logger.info(f"Job {event.job_id} executed successfully")

    def _job_error(self, event):
        logger.error(f"Job {event.job_id} failed: {event.exception}")

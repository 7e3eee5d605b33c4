"""Maintenance scheduler for Bonfire.

Integrates APScheduler to run the background jobs of the sync engine:

- ``sweep:reactions`` re-pulls authoritative reaction counts (cron schedule)
- ``identity:evict`` drops expired identity-cache entries (fixed interval)

Jobs live in a MemoryJobStore and are rebuilt from configuration on every
start. Missed runs coalesce into one.
"""

from __future__ import annotations

from datetime import timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from bonfire.logging import get_logger

if TYPE_CHECKING:
    from bonfire.config import Config
    from bonfire.identity import IdentityCache
    from bonfire.sweeper import ReconciliationSweeper

log = get_logger("scheduler")

SWEEP_JOB_ID = "sweep:reactions"
EVICT_JOB_ID = "identity:evict"


class SyncScheduler:
    """Schedules the sweeper and identity-cache eviction.

    Attributes:
        sweeper: Reaction sweeper to run on the cron schedule.
        identity: Identity cache to evict from.
        config: Application configuration.
        scheduler: APScheduler instance.
    """

    def __init__(
        self,
        sweeper: ReconciliationSweeper,
        identity: IdentityCache,
        config: Config,
    ) -> None:
        self.sweeper = sweeper
        self.identity = identity
        self.config = config

        tz_name = config.scheduler.timezone
        self._timezone = ZoneInfo(tz_name) if tz_name != "UTC" else timezone.utc

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,  # Combine missed executions
                "max_instances": 1,  # No concurrent runs of same job
                "misfire_grace_time": 300,
            },
            timezone=self._timezone,
        )

    def start(self) -> None:
        """Register jobs and start the scheduler. Requires a running loop."""
        self._register_jobs()
        self.scheduler.start()
        log.info(
            "scheduler_started",
            jobs=len(self.scheduler.get_jobs()),
            timezone=self.config.scheduler.timezone,
        )

    def stop(self) -> None:
        """Stop the scheduler without waiting for running jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("scheduler_stopped")

    def _register_jobs(self) -> None:
        sync = self.config.sync

        try:
            sweep_trigger = CronTrigger.from_crontab(sync.sweep_cron, timezone=self._timezone)
        except ValueError as e:
            log.error("invalid_cron_schedule", job=SWEEP_JOB_ID, schedule=sync.sweep_cron, error=str(e))
        else:
            self.scheduler.add_job(
                self._run_sweep,
                trigger=sweep_trigger,
                id=SWEEP_JOB_ID,
                name="Reaction count sweep",
                replace_existing=True,
            )
            log.info("job_scheduled", job=SWEEP_JOB_ID, schedule=sync.sweep_cron)

        self.scheduler.add_job(
            self._run_eviction,
            trigger=IntervalTrigger(seconds=sync.identity_cache_sweep_seconds),
            id=EVICT_JOB_ID,
            name="Identity cache eviction",
            replace_existing=True,
        )
        log.info(
            "job_scheduled",
            job=EVICT_JOB_ID,
            interval_seconds=sync.identity_cache_sweep_seconds,
        )

    async def _run_sweep(self) -> int | None:
        log.info("job_triggered", job=SWEEP_JOB_ID)
        try:
            return await self.sweeper.sweep()
        except Exception as e:
            log.error("job_failed", job=SWEEP_JOB_ID, error=str(e))
            return None

    async def _run_eviction(self) -> int:
        return self.identity.evict_expired()

    async def trigger_now(self, job_id: str) -> int | None:
        """Run a job immediately, bypassing its schedule.

        Returns:
            The job's result, or None for an unknown job id.
        """
        if job_id == SWEEP_JOB_ID:
            return await self._run_sweep()
        if job_id == EVICT_JOB_ID:
            return await self._run_eviction()
        log.warning("manual_trigger_job_not_found", job=job_id)
        return None

    def get_jobs(self) -> list[dict]:
        """Get information about all scheduled jobs."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time,
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]

    def pause_job(self, job_id: str) -> bool:
        """Pause a scheduled job. Returns False if not found."""
        if not self.scheduler.get_job(job_id):
            return False
        self.scheduler.pause_job(job_id)
        log.info("job_paused", job=job_id)
        return True

    def resume_job(self, job_id: str) -> bool:
        """Resume a paused job. Returns False if not found."""
        if not self.scheduler.get_job(job_id):
            return False
        self.scheduler.resume_job(job_id)
        log.info("job_resumed", job=job_id)
        return True

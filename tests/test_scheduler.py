"""Tests for the maintenance scheduler."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from bonfire.config import Config
from bonfire.identity import IdentityCache
from bonfire.scheduler import EVICT_JOB_ID, SWEEP_JOB_ID, SyncScheduler
from bonfire.sweeper import ReconciliationSweeper


@pytest.fixture
def sweeper() -> MagicMock:
    sweeper = MagicMock(spec=ReconciliationSweeper)
    sweeper.sweep = AsyncMock(return_value=3)
    return sweeper


@pytest.fixture
def identity() -> MagicMock:
    identity = MagicMock(spec=IdentityCache)
    identity.evict_expired.return_value = 2
    return identity


@pytest.fixture
def scheduler(sweeper, identity, test_config: Config) -> SyncScheduler:
    return SyncScheduler(sweeper, identity, test_config)


class TestJobs:
    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, scheduler: SyncScheduler) -> None:
        scheduler.start()
        try:
            jobs = {job["id"]: job for job in scheduler.get_jobs()}
        finally:
            scheduler.stop()

        assert set(jobs) == {SWEEP_JOB_ID, EVICT_JOB_ID}
        assert "cron" in jobs[SWEEP_JOB_ID]["trigger"]
        assert "interval" in jobs[EVICT_JOB_ID]["trigger"]
        assert jobs[SWEEP_JOB_ID]["next_run_time"] is not None

    @pytest.mark.asyncio
    async def test_invalid_cron_skips_sweep_job(
        self, sweeper, identity, test_config: Config
    ) -> None:
        test_config.sync.sweep_cron = "not a cron"
        scheduler = SyncScheduler(sweeper, identity, test_config)

        scheduler.start()
        try:
            ids = [job["id"] for job in scheduler.get_jobs()]
        finally:
            scheduler.stop()

        assert ids == [EVICT_JOB_ID]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, scheduler: SyncScheduler) -> None:
        scheduler.start()
        try:
            assert scheduler.pause_job(SWEEP_JOB_ID) is True
            paused = {j["id"]: j for j in scheduler.get_jobs()}[SWEEP_JOB_ID]
            assert paused["next_run_time"] is None

            assert scheduler.resume_job(SWEEP_JOB_ID) is True
            assert scheduler.pause_job("nope") is False
            assert scheduler.resume_job("nope") is False
        finally:
            scheduler.stop()

    def test_stop_when_not_running(self, scheduler: SyncScheduler) -> None:
        scheduler.stop()


class TestManualTrigger:
    @pytest.mark.asyncio
    async def test_trigger_sweep(self, scheduler: SyncScheduler, sweeper) -> None:
        assert await scheduler.trigger_now(SWEEP_JOB_ID) == 3
        sweeper.sweep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trigger_eviction(self, scheduler: SyncScheduler, identity) -> None:
        assert await scheduler.trigger_now(EVICT_JOB_ID) == 2
        identity.evict_expired.assert_called_once()

    @pytest.mark.asyncio
    async def test_sweep_failure_is_contained(self, scheduler: SyncScheduler, sweeper) -> None:
        sweeper.sweep.side_effect = RuntimeError("boom")

        assert await scheduler.trigger_now(SWEEP_JOB_ID) is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler: SyncScheduler) -> None:
        assert await scheduler.trigger_now("nope") is None

"""
Integration tests for storesync/scheduler.py
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent

from storesync.config import AppConfig, SyncConfig
from storesync.scheduler import BackgroundScheduler, JobStatus


@pytest.fixture
def app_config(storefront_config):
    return AppConfig(
        display_timezone="Asia/Jerusalem",
        storefront=storefront_config,
        sync=SyncConfig(interval_minutes=60),
    )


@pytest.fixture
def preloader():
    preloader = MagicMock()
    preloader.preload_all = AsyncMock(return_value={"loaded": 8, "errors": 0, "duration_ms": 12})
    return preloader


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.run_full_sync = AsyncMock(return_value={"errors": [], "duration_ms": 40})
    return orchestrator


@pytest.fixture
async def scheduler(cache, preloader, orchestrator, app_config):
    scheduler = BackgroundScheduler(cache, preloader, orchestrator, app_config=app_config, max_history=3)
    await scheduler.start()
    yield scheduler
    scheduler.shutdown(wait=False)


def _event(code: int, job_id: str, scheduled: datetime, exception: Exception = None) -> JobExecutionEvent:
    return JobExecutionEvent(code, job_id, "default", scheduled, exception=exception)


class TestStart:
    """Tests for job registration."""

    @pytest.mark.asyncio
    async def test_registers_jobs(self, scheduler):
        jobs = {job["id"]: job for job in scheduler.get_jobs()}

        assert set(jobs) == {"cache_sweep", "stats_preload", "full_sync"}
        assert jobs["cache_sweep"]["trigger"] == "interval[0:01:00]"
        assert jobs["stats_preload"]["trigger"] == "interval[0:10:00]"
        assert jobs["full_sync"]["trigger"] == "interval[1:00:00]"
        assert all(job["next_run"] is not None for job in jobs.values())
        assert scheduler.is_running

    @pytest.mark.asyncio
    async def test_jobs_do_not_pile_up(self, scheduler):
        for job_id in ("cache_sweep", "stats_preload", "full_sync"):
            job = scheduler._scheduler.get_job(job_id)
            assert job.max_instances == 1
            assert job.coalesce is True

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, scheduler):
        first = scheduler._scheduler
        await scheduler.start()
        assert scheduler._scheduler is first

    @pytest.mark.asyncio
    async def test_shutdown(self, scheduler):
        scheduler.shutdown(wait=False)
        assert not scheduler.is_running


class TestJobs:
    """Tests for the job bodies."""

    @pytest.mark.asyncio
    async def test_cache_sweep(self, scheduler, cache, clock):
        cache.set("storefront:orders:2024-01-01:2024-01-31", "orders", 300)
        cache.set("storefront:discounts:all:all:search=all", "discounts", 1800)
        clock.advance(301)

        result = await scheduler._run_cache_sweep()

        assert result == {"removed": 1, "entries": 1}

    @pytest.mark.asyncio
    async def test_stats_preload(self, scheduler, preloader):
        result = await scheduler._run_stats_preload()

        preloader.preload_all.assert_awaited_once()
        assert result["loaded"] == 8

    @pytest.mark.asyncio
    async def test_full_sync(self, scheduler, orchestrator):
        result = await scheduler._run_full_sync()

        orchestrator.run_full_sync.assert_awaited_once()
        assert result["errors"] == []


class TestListeners:
    """Tests for execution tracking."""

    @pytest.mark.asyncio
    async def test_executed(self, scheduler):
        scheduled = datetime.now(scheduler.timezone) - timedelta(milliseconds=250)

        scheduler._on_job_executed(_event(EVENT_JOB_EXECUTED, "full_sync", scheduled))

        job = {j["id"]: j for j in scheduler.get_jobs()}["full_sync"]
        assert job["run_count"] == 1
        assert job["last_status"] == "success"

        history = scheduler.get_job_history("full_sync")
        assert history[0]["status"] == "success"
        assert history[0]["duration_ms"] >= 250

    @pytest.mark.asyncio
    async def test_error(self, scheduler):
        scheduled = datetime.now(scheduler.timezone)

        scheduler._on_job_error(_event(EVENT_JOB_ERROR, "stats_preload", scheduled, RuntimeError("boom")))

        info = scheduler._job_info["stats_preload"]
        assert info.last_status == JobStatus.FAILED
        assert info.error_count == 1
        assert info.last_error == "boom"
        assert scheduler.get_job_history("stats_preload")[0]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_missed(self, scheduler):
        scheduler._on_job_missed(_event(EVENT_JOB_MISSED, "cache_sweep", datetime.now(scheduler.timezone)))

        assert scheduler._job_info["cache_sweep"].last_status == JobStatus.MISSED
        assert scheduler._job_info["cache_sweep"].run_count == 0

    @pytest.mark.asyncio
    async def test_unknown_job_ignored(self, scheduler):
        scheduler._on_job_executed(_event(EVENT_JOB_EXECUTED, "other", datetime.now(scheduler.timezone)))
        assert scheduler.get_job_history("other") == []

    @pytest.mark.asyncio
    async def test_history_bounded_newest_first(self, scheduler):
        base = datetime.now(scheduler.timezone)
        for minutes in range(5):
            scheduler._on_job_executed(_event(EVENT_JOB_EXECUTED, "cache_sweep", base + timedelta(minutes=minutes)))

        history = scheduler.get_job_history("cache_sweep")

        assert len(history) == 3
        assert history[0]["started_at"] == (base + timedelta(minutes=4)).isoformat()


class TestControl:
    """Tests for manual job control."""

    @pytest.mark.asyncio
    async def test_run_job_now(self, scheduler):
        before = scheduler._scheduler.get_job("full_sync").next_run_time

        assert scheduler.run_job_now("full_sync") == {"status": "triggered", "job_id": "full_sync"}
        assert scheduler._scheduler.get_job("full_sync").next_run_time < before

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_job_now("nope")
        with pytest.raises(ValueError):
            scheduler.pause_job("nope")

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, scheduler):
        scheduler.pause_job("stats_preload")
        assert scheduler._scheduler.get_job("stats_preload").next_run_time is None

        scheduler.resume_job("stats_preload")
        assert scheduler._scheduler.get_job("stats_preload").next_run_time is not None

"""
Background job scheduler using APScheduler.

Manages the pipeline's background tasks:
- Cache sweep (every 60 seconds)
- Stats preload (every 10 minutes)
- Full sync (every 60 minutes)

Features:
- Job execution history
- Prevents job pile-up (max_instances=1, coalesce=True)
- Graceful shutdown
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storesync.cache import ExpiringCache
from storesync.config import AppConfig, config
from storesync.observability import correlation_context, get_logger
from storesync.preloader import StatsPreloader
from storesync.sync_service import SyncOrchestrator

logger = get_logger(__name__)


class JobStatus(Enum):
    """Job execution status."""
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.SUCCESS
    duration_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class BackgroundScheduler:
    """
    Background job scheduler with monitoring.

    Usage:
        scheduler = BackgroundScheduler(cache, preloader, orchestrator)
        await scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(
        self,
        cache: ExpiringCache,
        preloader: StatsPreloader,
        orchestrator: SyncOrchestrator,
        app_config: Optional[AppConfig] = None,
        max_history: int = 50,
    ):
        self.cache = cache
        self.preloader = preloader
        self.orchestrator = orchestrator
        self.config = app_config or config
        self.timezone = ZoneInfo(self.config.display_timezone)

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._max_history = max_history
        self._started = False

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)

        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_jobs()

        self._scheduler.start()
        self._started = True

        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id)
            if job and job.next_run_time:
                info.next_run = job.next_run_time

        logger.info("Background scheduler started")

    def _register_jobs(self) -> None:
        """Register all background jobs."""
        self._add_job(
            job_id="cache_sweep",
            name="Cache Sweep",
            description="Evict expired cache entries",
            func=self._run_cache_sweep,
            trigger=IntervalTrigger(seconds=self.config.cache.sweep_interval_seconds),
        )

        self._add_job(
            job_id="stats_preload",
            name="Stats Preload",
            description="Refresh preloaded period stats and leaderboards",
            func=self._run_stats_preload,
            trigger=IntervalTrigger(minutes=self.config.preloader.refresh_interval_minutes),
        )

        self._add_job(
            job_id="full_sync",
            name="Full Sync",
            description="Reconcile daily, product, customer and coupon aggregates",
            func=self._run_full_sync,
            trigger=IntervalTrigger(minutes=self.config.sync.interval_minutes),
        )

        logger.info(f"Registered {len(self._job_info)} background jobs")

    def _add_job(
        self,
        job_id: str,
        name: str,
        description: str,
        func: Callable,
        trigger,
        max_instances: int = 1,
        coalesce: bool = True,
    ) -> None:
        """Add a job to the scheduler."""
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=max_instances,
            coalesce=coalesce,
            replace_existing=True,
        )

        self._job_info[job_id] = JobInfo(id=job_id, name=name, description=description)
        self._job_history[job_id] = []

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB IMPLEMENTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _run_cache_sweep(self) -> Dict[str, Any]:
        removed = self.cache.sweep()
        if removed:
            logger.debug(f"Cache sweep removed {removed} expired entries")
        return {"removed": removed, "entries": len(self.cache)}

    async def _run_stats_preload(self) -> Dict[str, Any]:
        """Run the periodic stats preload."""
        with correlation_context():
            logger.info("Stats preload job triggered")
            result = await self.preloader.preload_all()
            logger.info("Stats preload job complete", extra={"result": result})
            return result

    async def _run_full_sync(self) -> Dict[str, Any]:
        """Run the periodic full sync."""
        with correlation_context():
            logger.info("Starting full sync job")
            result = await self.orchestrator.run_full_sync()
            logger.info("Full sync job complete", extra={"errors": result.get("errors", [])})
            return result

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _refresh_next_run(self, info: JobInfo) -> None:
        job = self._scheduler.get_job(info.id) if self._scheduler else None
        if job and job.next_run_time:
            info.next_run = job.next_run_time

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        """Handle successful job execution."""
        info = self._job_info.get(event.job_id)
        if info is None:
            return

        finished_at = datetime.now(self.timezone)
        started_at = event.scheduled_run_time or finished_at
        info.last_run = finished_at
        info.last_status = JobStatus.SUCCESS
        info.run_count += 1
        self._refresh_next_run(info)

        self._add_execution(event.job_id, JobExecution(
            job_id=event.job_id,
            started_at=started_at,
            finished_at=finished_at,
            status=JobStatus.SUCCESS,
            duration_ms=(finished_at - started_at).total_seconds() * 1000,
        ))

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        """Handle job execution error."""
        info = self._job_info.get(event.job_id)
        if info is None:
            return

        finished_at = datetime.now(self.timezone)
        info.last_run = finished_at
        info.last_status = JobStatus.FAILED
        info.run_count += 1
        info.error_count += 1
        info.last_error = str(event.exception) if event.exception else "Unknown error"
        self._refresh_next_run(info)

        self._add_execution(event.job_id, JobExecution(
            job_id=event.job_id,
            started_at=event.scheduled_run_time or finished_at,
            finished_at=finished_at,
            status=JobStatus.FAILED,
            error=info.last_error,
        ))

        logger.error(
            f"Job {event.job_id} failed: {info.last_error}",
            extra={"job_id": event.job_id, "error": info.last_error}
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        """Handle missed job execution."""
        info = self._job_info.get(event.job_id)
        if info is None:
            return

        now = datetime.now(self.timezone)
        info.last_status = JobStatus.MISSED
        self._add_execution(event.job_id, JobExecution(
            job_id=event.job_id,
            started_at=now,
            finished_at=now,
            status=JobStatus.MISSED,
        ))

        logger.warning(f"Job {event.job_id} missed scheduled execution", extra={"job_id": event.job_id})

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        """Add execution to history, keeping only last N."""
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)

        if len(history) > self._max_history:
            self._job_history[job_id] = history[-self._max_history:]

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of all jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else "",
                "next_run": info.next_run.isoformat() if info.next_run else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Execution history for a job, most recent first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "started_at": e.started_at.isoformat() if e.started_at else None,
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": e.duration_ms,
            "error": e.error,
        } for e in reversed(history)]

    def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Move a job's next run to now."""
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")

        job = self._scheduler.get_job(job_id) if self._scheduler else None
        if not job:
            raise ValueError(f"Job not found: {job_id}")

        logger.info(f"Manually triggering job: {job_id}")
        job.modify(next_run_time=datetime.now(self.timezone))
        return {"status": "triggered", "job_id": job_id}

    def pause_job(self, job_id: str) -> None:
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")
        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")

    def resume_job(self, job_id: str) -> None:
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")
        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Background scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

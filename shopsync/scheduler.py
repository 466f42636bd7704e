"""
Periodic job scheduler using APScheduler.

Independent jobs, each with its own cadence:
- shop_sync         every SYNC_INTERVAL_SECONDS (first run at startup)
- health_check      every HEALTH_CHECK_INTERVAL_SECONDS
- inventory_alerts  every 15 minutes
- data_validation   every 30 minutes
- performance_snapshot every 10 minutes
- hourly_cleanup    at minute 0
- daily_cleanup     00:00 UTC
- weekly_cleanup    Sunday 02:00 UTC

Features:
- Prevents job pile-up (max_instances=1, coalesce=True)
- Fresh correlation ID per execution
- Job execution history
- Manual run, pause/resume, graceful shutdown
"""
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from shopsync.config import AppConfig
from shopsync.observability import correlation_context, get_logger

if TYPE_CHECKING:
    from shopsync.alerts import InventoryAlertService
    from shopsync.cleanup import CleanupManager
    from shopsync.monitor import HealthMonitor
    from shopsync.sync_service import SyncOrchestrator

logger = get_logger(__name__)

SCHEDULER_TIMEZONE = ZoneInfo("UTC")


class JobStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass(frozen=True)
class JobSpec:
    """Declaration of one periodic job."""
    id: str
    name: str
    description: str
    func: Callable[[], Awaitable[Any]]
    trigger: BaseTrigger
    run_at_start: bool = False


@dataclass
class JobExecution:
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class JobInfo:
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    last_duration_ms: Optional[float] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


def build_job_specs(
    app_config: AppConfig,
    orchestrator: "SyncOrchestrator",
    monitor: "HealthMonitor",
    inventory_alerts: "InventoryAlertService",
    cleanup: "CleanupManager",
) -> List[JobSpec]:
    """The engine's job table."""
    tz = SCHEDULER_TIMEZONE
    return [
        JobSpec(
            id="shop_sync",
            name="Shop Sync",
            description="Fetch upstream data, aggregate and refresh the cache",
            func=orchestrator.run_cycle,
            trigger=IntervalTrigger(seconds=app_config.sync.interval_seconds, timezone=tz),
            run_at_start=True,
        ),
        JobSpec(
            id="health_check",
            name="Health Check",
            description="Probe cache, upstream, memory and dependencies",
            func=monitor.run_health_cycle,
            trigger=IntervalTrigger(seconds=app_config.monitor.interval_seconds, timezone=tz),
        ),
        JobSpec(
            id="inventory_alerts",
            name="Inventory Alerts",
            description="Rebuild low stock alerts",
            func=inventory_alerts.check_inventory_alerts,
            trigger=IntervalTrigger(
                minutes=app_config.cleanup.inventory_alert_interval_minutes, timezone=tz
            ),
        ),
        JobSpec(
            id="data_validation",
            name="Data Validation",
            description="Check dashboard freshness and upstream connectivity",
            func=monitor.validate_data,
            trigger=IntervalTrigger(
                minutes=app_config.monitor.validation_interval_minutes, timezone=tz
            ),
        ),
        JobSpec(
            id="performance_snapshot",
            name="Performance Snapshot",
            description="Record engine counters, memory and uptime",
            func=monitor.record_performance_snapshot,
            trigger=IntervalTrigger(
                minutes=app_config.monitor.performance_interval_minutes, timezone=tz
            ),
        ),
        JobSpec(
            id="hourly_cleanup",
            name="Hourly Cleanup",
            description="Prune old alerts and temporary keys",
            func=cleanup.run_hourly,
            trigger=CronTrigger(minute=0, timezone=tz),
        ),
        JobSpec(
            id="daily_cleanup",
            name="Daily Cleanup",
            description="Prune old sync metrics and refresh hot keys",
            func=cleanup.run_daily,
            trigger=CronTrigger(hour=0, minute=0, timezone=tz),
        ),
        JobSpec(
            id="weekly_cleanup",
            name="Weekly Cleanup",
            description="Archive aggregated sync metrics",
            func=cleanup.run_weekly,
            trigger=CronTrigger(day_of_week="sun", hour=2, minute=0, timezone=tz),
        ),
    ]


class JobScheduler:
    """
    Background job scheduler with execution tracking.

    Usage:
        scheduler = JobScheduler(build_job_specs(config, orchestrator, ...))
        await scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(self, jobs: List[JobSpec], max_history: int = 50):
        self._specs = {spec.id: spec for spec in jobs}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {job_id: [] for job_id in self._specs}
        self._job_info: Dict[str, JobInfo] = {
            spec.id: JobInfo(id=spec.id, name=spec.name, description=spec.description)
            for spec in jobs
        }
        self._run_started: Dict[str, Tuple[datetime, float]] = {}
        self._max_history = max_history
        self._started = False

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        for spec in self._specs.values():
            self._add_job(spec)

        self._scheduler.start()
        self._started = True
        self._refresh_next_runs()
        logger.info(f"Scheduler started with {len(self._specs)} jobs")

    def _add_job(self, spec: JobSpec) -> None:
        options: Dict[str, Any] = {}
        if spec.run_at_start:
            options["next_run_time"] = datetime.now(SCHEDULER_TIMEZONE)
        self._scheduler.add_job(
            self._wrap(spec),
            trigger=spec.trigger,
            id=spec.id,
            name=spec.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **options,
        )

    def _wrap(self, spec: JobSpec) -> Callable[[], Awaitable[Any]]:
        """Run a job handler inside its own correlation context."""

        async def run_job() -> Any:
            with correlation_context() as corr_id:
                self._run_started[spec.id] = (datetime.now(SCHEDULER_TIMEZONE), time.perf_counter())
                logger.debug(f"Job {spec.id} started", extra={"job_id": spec.id, "run_id": corr_id})
                return await spec.func()

        run_job.__name__ = f"run_{spec.id}"
        return run_job

    def _refresh_next_runs(self) -> None:
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            info.next_run = job.next_run_time if job else None

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> Optional[JobInfo]:
        info = self._job_info.get(job_id)
        if info is None:
            return None

        now = datetime.now(SCHEDULER_TIMEZONE)
        started_at, started = self._run_started.pop(job_id, (None, None))
        duration_ms = round((time.perf_counter() - started) * 1000, 2) if started else None

        info.last_status = status
        if status is not JobStatus.MISSED:
            info.last_run = now
            info.last_duration_ms = duration_ms
            info.run_count += 1
        if status is JobStatus.FAILED:
            info.error_count += 1
            info.last_error = error

        job = self._scheduler.get_job(job_id) if self._scheduler else None
        if job is not None:
            info.next_run = job.next_run_time

        self._add_execution(job_id, JobExecution(
            job_id=job_id,
            started_at=started_at or now,
            finished_at=now,
            status=status,
            duration_ms=duration_ms,
            error=error,
        ))
        return info

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        self._finish(event.job_id, JobStatus.SUCCESS)

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        error = str(event.exception) if event.exception else "Unknown error"
        if self._finish(event.job_id, JobStatus.FAILED, error):
            logger.error(
                f"Job {event.job_id} failed: {error}",
                extra={"job_id": event.job_id, "error": error}
            )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        if self._finish(event.job_id, JobStatus.MISSED):
            logger.warning(f"Job {event.job_id} missed its run time", extra={"job_id": event.job_id})

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)
        if len(history) > self._max_history:
            del history[:-self._max_history]

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """All jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else str(self._specs[job_id].trigger),
                "next_run": info.next_run.isoformat() if info.next_run else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "last_duration_ms": info.last_duration_ms,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_next_run(self, job_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(job_id) if self._scheduler else None
        return job.next_run_time if job else None

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent executions of a job, newest first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "started_at": e.started_at.isoformat(),
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": e.duration_ms,
            "error": e.error,
        } for e in reversed(history)]

    def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Move a job's next run to now."""
        job = self._require_job(job_id)
        logger.info(f"Manually triggering job: {job_id}")
        job.modify(next_run_time=datetime.now(SCHEDULER_TIMEZONE))
        return {"status": "triggered", "job_id": job_id}

    def pause_job(self, job_id: str) -> None:
        self._require_job(job_id)
        self._scheduler.pause_job(job_id)
        self._job_info[job_id].next_run = None
        logger.info(f"Paused job: {job_id}")

    def resume_job(self, job_id: str) -> None:
        self._require_job(job_id)
        self._scheduler.resume_job(job_id)
        self._job_info[job_id].next_run = self.get_next_run(job_id)
        logger.info(f"Resumed job: {job_id}")

    def _require_job(self, job_id: str):
        if job_id not in self._specs:
            raise ValueError(f"Unknown job: {job_id}")
        job = self._scheduler.get_job(job_id) if self._scheduler else None
        if job is None:
            raise ValueError(f"Job not scheduled: {job_id}")
        return job

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

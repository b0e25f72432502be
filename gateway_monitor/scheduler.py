"""Job scheduling for check cycles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from gateway_monitor.cycle import Monitor
from gateway_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)

INTERVAL_JOB_ID = "interval-check"


def cron_trigger(cron_expression: str, *, timezone_name: str = "UTC") -> CronTrigger:
    # Format: "minute hour day month day_of_week"
    cron_parts = cron_expression.split()
    if len(cron_parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")
    return CronTrigger(
        minute=cron_parts[0],
        hour=cron_parts[1],
        day=cron_parts[2],
        month=cron_parts[3],
        day_of_week=cron_parts[4],
        timezone=timezone_name,
    )


class MonitorScheduler:
    """Drives change-driven and periodic check cycles with APScheduler."""

    def __init__(self, monitor: Monitor, settings: MonitorSettings, *, scheduler: AsyncIOScheduler | None = None):
        self.monitor = monitor
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    async def start(self):
        """Start the scheduler; jobs begin firing on the running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Scheduler started", jobs=list(self.jobs))

    async def stop(self):
        """Stop the scheduler; no further ticks fire after this returns."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=True)
        self.running = False
        logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: int,
        kwargs: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        run_immediately: bool = False,
    ):
        """Add an interval-based job. Overlapping runs of the same job are skipped."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        extra: Dict[str, Any] = {}
        if run_immediately:
            extra["next_run_time"] = datetime.now(timezone.utc)

        job = self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            kwargs=kwargs or {},
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            **extra,
        )

        self.jobs[job_id] = {
            "job": job,
            "type": "interval",
            "seconds": seconds,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("Added interval job", job_id=job_id, seconds=seconds, description=description)

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron_expression: str,
        kwargs: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        timezone_name: str = "UTC",
    ):
        """Add a cron-scheduled job."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=cron_trigger(cron_expression, timezone_name=timezone_name),
            id=job_id,
            kwargs=kwargs or {},
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )

        self.jobs[job_id] = {
            "job": job,
            "type": "cron",
            "expression": cron_expression,
            "timezone": timezone_name,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("Added cron job", job_id=job_id, cron=cron_expression, timezone=timezone_name)

    def remove_job(self, job_id: str):
        if job_id not in self.jobs:
            return
        try:
            self.scheduler.remove_job(job_id)
        except Exception as exc:
            logger.warning("Failed to remove job", job_id=job_id, error=str(exc))
        del self.jobs[job_id]

    def install_default_jobs(self):
        """Register the interval check and one periodic digest job per configured schedule."""
        self.add_interval_job(
            INTERVAL_JOB_ID,
            self.monitor.run_cycle,
            seconds=self.settings.interval_seconds,
            kwargs={"periodic": False},
            description="Change-driven service check",
            run_immediately=True,
        )

        periodic = self.settings.periodic
        if not periodic.enabled:
            return
        for idx, expr in enumerate(periodic.schedules):
            self.add_cron_job(
                f"periodic-{idx}",
                self.monitor.run_cycle,
                expr,
                kwargs={"periodic": True},
                description=f"Periodic status digest ({expr})",
                timezone_name=periodic.timezone,
            )

    def list_jobs(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for job_id, info in self.jobs.items():
            job = info["job"]
            next_run = getattr(job, "next_run_time", None)
            out.append(
                {
                    "id": job_id,
                    "type": info["type"],
                    "description": info.get("description"),
                    "schedule": info.get("expression") or f"every {info.get('seconds')}s",
                    "next_run_time": next_run.isoformat() if next_run else None,
                }
            )
        return out

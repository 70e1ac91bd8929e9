"""Scheduler service for the dispatch loops and periodic sweeps."""

import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mailqueue.logging import get_logger

logger = get_logger(__name__, component="scheduler")


class SchedulerService:
    """
    Wraps APScheduler to run the workers and sweeps on their own timers.

    Uses BackgroundScheduler to run jobs in a thread pool while allowing the
    main thread to handle signals and coordinate shutdown. Each job runs at
    most once at a time; a delayed job fires once rather than catching up.
    """

    def __init__(
        self,
        shutdown_event: Optional[threading.Event] = None,
        misfire_grace_time: int = 60,
        max_workers: int = 10,
    ):
        """
        Initialize the scheduler service.

        Args:
            shutdown_event: Optional event to set on shutdown for coordination
            misfire_grace_time: Seconds a late job may still start
            max_workers: Thread pool size shared by all jobs
        """
        self.shutdown_event = shutdown_event
        self._jobs: "OrderedDict[str, Callable[[], object]]" = OrderedDict()

        self.scheduler = BackgroundScheduler(
            executors={"default": {"type": "threadpool", "max_workers": max_workers}},
            job_defaults={
                "max_instances": 1,  # Prevent overlapping runs of the same job
                "coalesce": True,  # If a run is delayed, only execute once
                "misfire_grace_time": misfire_grace_time,
            },
            timezone=timezone.utc,
        )

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[[], object],
        interval_seconds: int,
        name: Optional[str] = None,
        run_immediately: bool = True,
    ) -> None:
        """
        Register a job that runs every ``interval_seconds``.

        Args:
            job_id: Unique job id (e.g. "dispatch-0", "retry-sweep")
            func: Callable run on each tick
            interval_seconds: Interval between runs in seconds
            name: Human readable job name
            run_immediately: Run once right after start instead of after one interval
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=interval_seconds, timezone=timezone.utc),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            **({"next_run_time": datetime.now(timezone.utc)} if run_immediately else {}),
        )
        self._jobs[job_id] = func

        logger.debug(
            f"Registered interval job {job_id} every {interval_seconds}s",
            extra={
                "event": "scheduler.job.registered",
                "job_id": job_id,
                "interval_seconds": interval_seconds,
            },
        )

    def add_daily_job(
        self,
        job_id: str,
        func: Callable[[], object],
        hour: int,
        minute: int = 0,
        name: Optional[str] = None,
    ) -> None:
        """Register a job that runs once a day at ``hour:minute`` UTC."""
        self.scheduler.add_job(
            func=func,
            trigger=CronTrigger(hour=hour, minute=minute, timezone=timezone.utc),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
        )
        self._jobs[job_id] = func

        logger.debug(
            f"Registered daily job {job_id} at {hour:02d}:{minute:02d} UTC",
            extra={"event": "scheduler.job.registered", "job_id": job_id, "hour": hour},
        )

    def start(self) -> None:
        """Start the scheduler. Interval jobs registered with run_immediately fire now."""
        self.scheduler.start()

        logger.info(
            f"Scheduler started with {len(self._jobs)} jobs",
            extra={"event": "scheduler.started", "job_ids": list(self._jobs)},
        )

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: If True, wait for running jobs to complete before returning
        """
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        if self.shutdown_event:
            self.shutdown_event.set()

        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def trigger_now(self, job_id: Optional[str] = None) -> None:
        """
        Run one job, or every registered job in registration order, synchronously.

        Used for manual runs. Errors propagate to the caller.

        Raises:
            KeyError: If ``job_id`` is not registered
        """
        job_ids = [job_id] if job_id is not None else list(self._jobs)
        for current in job_ids:
            func = self._jobs[current]
            logger.info(
                f"Triggering immediate run of {current}",
                extra={"event": "scheduler.trigger_now", "job_id": current},
            )
            func()

    def job_ids(self) -> List[str]:
        return list(self._jobs)

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self, job_id: str) -> Optional[datetime]:
        """
        Get the next scheduled run time of a job.

        Returns:
            Next run time as a datetime, or None if not scheduled
        """
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None

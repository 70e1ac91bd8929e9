"""Unit tests for the scheduler service.

Tests the SchedulerService including:
- Job registration with correct configuration
- Immediate first run of interval jobs
- Prevents overlapping runs (max_instances=1)
- Daily jobs
- Start/shutdown lifecycle
- Trigger now functionality
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from mailqueue.scheduler import SchedulerService


class TestSchedulerService:
    """Test suite for SchedulerService."""

    def test_scheduler_job_defaults(self):
        """Test that jobs default to max_instances=1 and coalesce=True."""
        scheduler = SchedulerService(misfire_grace_time=30)

        assert scheduler.scheduler._job_defaults["max_instances"] == 1
        assert scheduler.scheduler._job_defaults["coalesce"] is True
        assert scheduler.scheduler._job_defaults["misfire_grace_time"] == 30
        assert not scheduler.is_running()

    def test_start_and_shutdown(self):
        """Test scheduler start and shutdown lifecycle."""
        shutdown_event = threading.Event()
        scheduler = SchedulerService(shutdown_event=shutdown_event)
        scheduler.add_interval_job("noop", Mock(), 300, run_immediately=False)

        scheduler.start()
        assert scheduler.is_running()

        scheduler.shutdown(wait=False)
        assert not scheduler.is_running()
        assert shutdown_event.is_set()

    def test_shutdown_without_event(self):
        scheduler = SchedulerService(shutdown_event=None)
        scheduler.start()

        scheduler.shutdown(wait=False)

        assert not scheduler.is_running()

    def test_interval_job_runs_immediately(self):
        """Test that an interval job fires right after start."""
        ran = threading.Event()
        scheduler = SchedulerService()
        scheduler.add_interval_job("dispatch-0", ran.set, 60)

        scheduler.start()
        try:
            assert ran.wait(timeout=5)
        finally:
            scheduler.shutdown(wait=True)

    def test_job_does_not_overlap_itself(self):
        """Test that max_instances=1 prevents concurrent executions."""
        active = [0]
        peak = [0]
        lock = threading.Lock()

        def slow_job():
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(1.2)
            with lock:
                active[0] -= 1

        scheduler = SchedulerService()
        scheduler.add_interval_job("slow", slow_job, 1)

        scheduler.start()
        time.sleep(2.5)
        scheduler.shutdown(wait=True)

        assert peak[0] == 1

    def test_next_run_time_of_registered_jobs(self):
        scheduler = SchedulerService()
        scheduler.add_interval_job("retry-sweep", Mock(), 60, run_immediately=False)
        scheduler.add_daily_job("retention-sweep", Mock(), hour=3)

        scheduler.start()
        try:
            before = datetime.now(timezone.utc)
            retry_next = scheduler.get_next_run_time("retry-sweep")
            retention_next = scheduler.get_next_run_time("retention-sweep")
        finally:
            scheduler.shutdown(wait=False)

        assert retry_next > before
        assert retention_next.hour == 3
        assert retention_next.minute == 0
        assert scheduler.get_next_run_time("missing") is None

    def test_non_positive_interval_rejected(self):
        scheduler = SchedulerService()

        with pytest.raises(ValueError):
            scheduler.add_interval_job("bad", Mock(), 0)

    def test_trigger_now_runs_jobs_in_registration_order(self):
        calls = []
        scheduler = SchedulerService()
        scheduler.add_interval_job("first", lambda: calls.append("first"), 60)
        scheduler.add_daily_job("second", lambda: calls.append("second"), hour=3)

        scheduler.trigger_now()
        scheduler.trigger_now("second")

        assert calls == ["first", "second", "second"]
        assert scheduler.job_ids() == ["first", "second"]

    def test_trigger_now_unknown_job(self):
        scheduler = SchedulerService()

        with pytest.raises(KeyError):
            scheduler.trigger_now("missing")

    def test_job_exceptions_do_not_stop_scheduler(self):
        """Test that a failing job keeps being scheduled."""
        calls = [0]

        def failing_job():
            calls[0] += 1
            raise RuntimeError("boom")

        scheduler = SchedulerService()
        scheduler.add_interval_job("failing", failing_job, 1)

        scheduler.start()
        time.sleep(2.5)
        running = scheduler.is_running()
        scheduler.shutdown(wait=True)

        assert running
        assert calls[0] >= 2

"""Main entry point for the mail queue service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from mailqueue.config.environment import EnvironmentConfig
from mailqueue.config.exceptions import ConfigurationError
from mailqueue.config.loader import load_config
from mailqueue.config.models import AppConfig
from mailqueue.logging import get_logger
from mailqueue.logging.config import configure_logging
from mailqueue.notifications import (
    DeliveryService,
    PreferenceService,
    SMTPClient,
    TemplateService,
)
from mailqueue.persistence import Database, init_database
from mailqueue.queue import NotificationQueueService
from mailqueue.scheduler import SchedulerService
from mailqueue.utils.identity import generate_worker_id
from mailqueue.worker import DeliveryWorker

logger = get_logger(__name__, component="cli")


@dataclass
class Services:
    """Everything the service wires together at startup."""

    database: Database
    queue: NotificationQueueService
    templates: TemplateService
    preferences: PreferenceService
    delivery: DeliveryService
    workers: List[DeliveryWorker]

    def close(self) -> None:
        self.database.close()


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load and prepare runtime configuration.

    Args:
        config_path: Path to configuration file (None searches the defaults)
        log_level_override: Log level from CLI (takes precedence)

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    # Log level priority: CLI > Environment > Config
    if log_level_override:
        env_config.log_level = log_level_override
    elif env_config.log_level:
        pass
    elif app_config.logging and app_config.logging.level:
        env_config.log_level = app_config.logging.level
    else:
        env_config.log_level = "INFO"

    return app_config, env_config


def build_services(
    app_config: AppConfig,
    env_config: EnvironmentConfig,
    database: Optional[Database] = None,
    transport=None,
) -> Services:
    """
    Construct the queue, delivery pipeline and workers.

    One process-scoped identity is generated here; each worker claims with
    that identity plus its index.
    """
    database = database or init_database(env_config.database_url)
    process_id = generate_worker_id()

    queue = NotificationQueueService.from_config(database, app_config.queue)
    templates = TemplateService(database)
    preferences = PreferenceService(database)
    transport = transport or SMTPClient(
        env_config,
        use_tls=app_config.email.use_tls,
        timeout=app_config.email.send_timeout,
    )
    delivery = DeliveryService(
        database,
        queue,
        renderer=templates,
        transport=transport,
        preferences=preferences,
        worker_id=f"submit-{process_id}",
    )
    workers = [
        DeliveryWorker(
            queue,
            delivery,
            worker_id=f"dispatch-{index}-{process_id}",
            batch_size=app_config.queue.batch_size,
        )
        for index in range(app_config.worker.concurrency)
    ]

    templates.initialize_default_templates()

    return Services(
        database=database,
        queue=queue,
        templates=templates,
        preferences=preferences,
        delivery=delivery,
        workers=workers,
    )


def register_jobs(scheduler: SchedulerService, services: Services, app_config: AppConfig) -> None:
    """Register one dispatch job per worker plus every maintenance sweep."""
    sweeps = app_config.sweeps

    for index, worker in enumerate(services.workers):
        scheduler.add_interval_job(
            f"dispatch-{index}",
            worker.run_once,
            app_config.worker.poll_interval_seconds,
            name=f"Dispatch worker {index}",
        )

    scheduler.add_interval_job(
        "retry-sweep",
        services.queue.process_retryable_items,
        sweeps.retry_interval_seconds,
        name="Retry reactivation sweep",
    )
    scheduler.add_interval_job(
        "stuck-sweep",
        services.queue.handle_stuck_items,
        sweeps.stuck_interval_seconds,
        name="Stuck item reclaim sweep",
    )
    scheduler.add_interval_job(
        "deferred-release",
        services.delivery.release_deferred_notifications,
        sweeps.deferred_interval_seconds,
        name="Quiet hours release sweep",
    )
    scheduler.add_daily_job(
        "retention-sweep",
        lambda: services.queue.cleanup_old_items(sweeps.retention_days),
        hour=sweeps.retention_hour,
        name="Retention sweep",
    )


def run_manual_cycle(services: Services, app_config: AppConfig) -> int:
    """
    Run every sweep once and one dispatch cycle per worker.

    Returns:
        Number of items whose delivery failed in this cycle
    """
    reactivated = services.queue.process_retryable_items()
    reclaimed = services.queue.handle_stuck_items()
    released = services.delivery.release_deferred_notifications()

    results = [worker.run_once() for worker in services.workers]
    deleted = services.queue.cleanup_old_items(app_config.sweeps.retention_days)

    sent = sum(r.sent for r in results)
    failed = sum(r.failed for r in results)
    logger.info(
        f"Manual run completed: {sent} sent, {failed} failed, "
        f"{reactivated} re-admitted, {reclaimed} reclaimed, {released} released, "
        f"{deleted} deleted",
        extra={
            "event": "service.manual_run.completed",
            "sent": sent,
            "failed": failed,
            "reactivated": reactivated,
            "reclaimed": reclaimed,
            "released": released,
            "deleted": deleted,
        },
    )
    return failed


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the mail queue service.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Mail Queue - persistent email notification queue with retries"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml or config/config.yaml)",
    )
    parser.add_argument(
        "--manual-run",
        action="store_true",
        help="Run one dispatch cycle and every sweep once, then exit",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print queue counts per status as JSON and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )

    args = parser.parse_args(argv)

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)

        environment = os.environ.get("ENVIRONMENT", "local")
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=environment,
        )

        logger.info(
            "Mail queue starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "manual_run": args.manual_run,
            },
        )

        services = build_services(app_config, env_config)
        logger.info(
            "Services initialized",
            extra={
                "event": "services.initialized",
                "worker_count": len(services.workers),
                "batch_size": app_config.queue.batch_size,
                "max_retries": app_config.queue.max_retries,
            },
        )

        if args.stats:
            stats = services.queue.get_queue_stats()
            print(json.dumps(stats.as_dict(), indent=2))
            services.close()
            return 0

        if args.manual_run:
            failed = run_manual_cycle(services, app_config)
            services.close()
            logger.info(
                "Mail queue stopped",
                extra={
                    "event": "service.stopping",
                    "uptime_seconds": round(time.time() - start_time, 2),
                },
            )
            return 1 if failed else 0

        # Daemon mode
        shutdown_event = threading.Event()
        scheduler_service = SchedulerService(shutdown_event=shutdown_event)
        register_jobs(scheduler_service, services, app_config)

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        scheduler_service.start()
        logger.info(
            "Scheduler started. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started"},
        )

        try:
            shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info(
                "Keyboard interrupt received, shutting down",
                extra={"event": "service.keyboard_interrupt"},
            )

        # Let running jobs finish before the database goes away
        scheduler_service.shutdown(wait=True)
        services.close()
        logger.info(
            "Mail queue stopped",
            extra={
                "event": "service.stopping",
                "uptime_seconds": round(time.time() - start_time, 2),
            },
        )
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())

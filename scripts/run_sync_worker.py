#!/usr/bin/env python3
"""
Sync Worker - Processes sync runs and webhook events from the persistent queue.

Run with: python scripts/run_sync_worker.py --factory myapp.crm:build_collaborators

If the worker dies, tasks remain in the queue and are picked up on restart.
Tasks are claimed with SELECT FOR UPDATE SKIP LOCKED, so several workers
can run concurrently; rate budgets and circuit state are shared through
the database.

Usage:
    python scripts/run_sync_worker.py                   # All task kinds
    python scripts/run_sync_worker.py --kind webhook    # Webhooks only
    python scripts/run_sync_worker.py --kind sync       # Sync runs only
"""

import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from crmsync.core.circuit_breaker import set_notification_callback  # noqa: E402
from crmsync.core.config import settings  # noqa: E402
from crmsync.core.errors import ErrorHandler, capture_message, init_sentry  # noqa: E402
from crmsync.core.logging_config import configure_logging, get_logger  # noqa: E402
from crmsync.db import create_db_and_tables  # noqa: E402
from crmsync.models.sync_task import TaskKind  # noqa: E402
from crmsync.services.container import SyncServices, build_services, load_collaborators  # noqa: E402
from crmsync.services.execution import execute_task  # noqa: E402
from crmsync.services.task_queue import claim_next_task, get_queue_stats, reset_stale_tasks  # noqa: E402

logger = get_logger("crmsync.worker")

# Global shutdown flag
shutdown_requested = False

IDLE_SLEEP_SECONDS = 5


def handle_shutdown(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global shutdown_requested
    logger.info("worker_shutdown_requested", signal=signum)
    shutdown_requested = True


def worker_loop(services: SyncServices, kind: Optional[TaskKind] = None) -> None:
    """
    Main worker loop.

    Continuously claims and executes tasks until shutdown.
    """
    logger.info("worker_starting", kind=kind.value if kind else "all")

    # Reset stale tasks from previous crashes
    with Session(services.engine) as session:
        stats = reset_stale_tasks(session, timeout_minutes=settings.TASK_STALE_MINUTES)
        if stats["reset"] > 0:
            logger.warning("worker_reset_stale_tasks", count=stats["reset"])
        logger.info("worker_queue_stats", **get_queue_stats(session, kind=kind))

    idle_count = 0
    processed_count = 0
    failed_count = 0

    while not shutdown_requested:
        with ErrorHandler("sync_worker_iteration"):
            with Session(services.engine) as session:
                task = claim_next_task(session, kind=kind)

                if task:
                    idle_count = 0
                    result = execute_task(services, session, task)
                    if result.success:
                        processed_count += 1
                    else:
                        failed_count += 1
                    continue

                idle_count += 1
                # Log every minute when idle (12 * 5s = 60s)
                if idle_count % 12 == 1:
                    logger.info("worker_queue_empty", **get_queue_stats(session, kind=kind))
        time.sleep(IDLE_SLEEP_SECONDS)

    logger.info("worker_stopped", processed=processed_count, failed=failed_count)


def _notify_circuit_change(name: str, old_state: str, new_state: str) -> None:
    capture_message(
        "circuit_state_changed",
        level="warning" if new_state == "open" else "info",
        context={"operation": name, "old_state": old_state, "new_state": new_state},
    )


def main(factory: str, kind: Optional[TaskKind] = None) -> None:
    """Main entry point."""
    configure_logging(settings.LOG_LEVEL)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    # Set up signal handlers
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    logger.info("worker_started_at", at=datetime.now(timezone.utc).isoformat())

    create_db_and_tables()
    client, repository = load_collaborators(factory)
    services = build_services(client, repository, settings)
    set_notification_callback(_notify_circuit_change)

    try:
        worker_loop(services, kind)
    finally:
        set_notification_callback(None)
        logger.info("worker_cleanup_complete")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Sync Worker - Process sync and webhook tasks from the queue")
    parser.add_argument(
        "--factory",
        type=str,
        default=settings.COLLABORATORS_FACTORY,
        help="'module:callable' returning (crm_client, entity_repository) (default: COLLABORATORS_FACTORY)",
    )
    parser.add_argument(
        "--kind",
        type=str,
        default=None,
        choices=[k.value for k in TaskKind],
        help="Only process one task kind (default: all)",
    )
    args = parser.parse_args()

    main(args.factory, TaskKind(args.kind) if args.kind else None)

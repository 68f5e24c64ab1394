from datetime import datetime, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from crmsync.core.errors import capture_message
from crmsync.core.health_probe import HealthStatus
from crmsync.core.logging_config import get_logger
from crmsync.services.execution import enqueue_sync
from crmsync.services.sync_types import SyncOptions
from crmsync.services.task_queue import cleanup_old_tasks, reset_stale_tasks

logger = get_logger(__name__)

scheduler = AsyncIOScheduler()


def job_enqueue_scheduled_syncs(services: Any) -> int:
    """Queue one incremental sync per configured entity type."""
    entity_types = services.settings.SYNC_SCHEDULED_ENTITIES
    queued = 0
    with Session(services.engine) as session:
        for entity_type in entity_types:
            try:
                enqueue_sync(session, entity_type, SyncOptions.for_scheduler())
                queued += 1
            except Exception as e:
                logger.error("scheduled_sync_enqueue_failed", entity_type=entity_type, error=str(e))
    logger.info("scheduled_syncs_enqueued", count=queued, entity_types=list(entity_types))
    return queued


def job_probe_upstream(services: Any) -> Optional[HealthStatus]:
    """Run the upstream health probe when its interval has elapsed."""
    health = services.health
    if not health.should_check():
        return None

    record = health.check()
    status = health.status()
    if status is HealthStatus.UNHEALTHY:
        logger.warning(
            "upstream_unhealthy",
            consecutive_failures=health.consecutive_failures,
            error=record.error,
        )
        capture_message(
            "upstream_unhealthy",
            level="warning",
            context={"consecutive_failures": health.consecutive_failures, "error": record.error},
        )
    elif status is HealthStatus.DEGRADED:
        logger.info("upstream_degraded", latency_ms=record.latency_ms)
    return status


def job_reset_stale_tasks(services: Any) -> int:
    with Session(services.engine) as session:
        result = reset_stale_tasks(session, timeout_minutes=services.settings.TASK_STALE_MINUTES)
    return result["reset"]


def job_cleanup_old_tasks(services: Any) -> dict:
    with Session(services.engine) as session:
        return cleanup_old_tasks(session, days_to_keep=services.settings.TASK_RETENTION_DAYS)


def start_scheduler(
    services: Any,
    scheduler: AsyncIOScheduler = scheduler,
    start: bool = True,
) -> AsyncIOScheduler:
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up
    settings = services.settings

    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler.add_job(
            job_enqueue_scheduled_syncs,
            IntervalTrigger(minutes=settings.SYNC_SCHEDULE_MINUTES),
            args=[services],
            id="job_enqueue_scheduled_syncs",
            max_instances=1,
            misfire_grace_time=600,  # 10 minutes
            coalesce=True,
            replace_existing=True,
        )

    if settings.HEALTH_ENABLED:
        # Polls every minute; the probe itself enforces HEALTH_CHECK_INTERVAL
        scheduler.add_job(
            job_probe_upstream,
            IntervalTrigger(minutes=1),
            args=[services],
            id="job_probe_upstream",
            max_instances=1,
            misfire_grace_time=60,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )

    scheduler.add_job(
        job_reset_stale_tasks,
        IntervalTrigger(minutes=max(1, settings.TASK_STALE_MINUTES // 2)),
        args=[services],
        id="job_reset_stale_tasks",
        max_instances=1,
        misfire_grace_time=300,  # 5 minutes
        coalesce=True,
        replace_existing=True,
    )

    # Off-peak purge of finished tasks
    scheduler.add_job(
        job_cleanup_old_tasks,
        CronTrigger(hour=3, minute=0),
        args=[services],
        id="job_cleanup_old_tasks",
        max_instances=1,
        misfire_grace_time=7200,  # 2 hours
        coalesce=True,
        replace_existing=True,
    )

    if start:
        scheduler.start()
    logger.info(
        "scheduler_started" if start else "scheduler_configured",
        jobs=[job.id for job in scheduler.get_jobs()],
    )
    return scheduler

"""
Task Queue Service

Persistent queue of sync runs and webhook events. Tasks survive restarts;
a task that exhausts its attempts (or fails with a non-retryable error)
stays in the table with status FAILED and forms the dead-letter queue.

Usage:
    from crmsync.services.task_queue import (
        enqueue_task,
        claim_next_task,
        complete_task,
        fail_task,
        defer_task,
        reset_stale_tasks,
    )

    with Session(engine) as session:
        # Enqueue a new task
        task = enqueue_task(session, TaskKind.SYNC, "deals", payload={"limit": 500})

        # Worker claims next task
        task = claim_next_task(session)
        if task:
            result = run(task)
            if result.success:
                complete_task(session, task.id, result.summary())
            else:
                fail_task(session, task.id, result.error_message, retryable=True, retry_after=60)

        # On startup, reset any stale in-progress tasks
        reset_stale_tasks(session, timeout_minutes=30)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlmodel import Session, delete, select

from crmsync.core.typing import col, utc_now
from crmsync.models.sync_task import SyncTask, TaskKind, TaskStatus

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def _get_task(session: Session, task_id: int) -> Optional[SyncTask]:
    return session.exec(select(SyncTask).where(col(SyncTask.id) == task_id)).first()


def enqueue_task(
    session: Session,
    kind: TaskKind,
    entity_type: str,
    payload: Optional[Dict[str, Any]] = None,
    priority: int = 0,
    max_attempts: int = 3,
    dedupe: Optional[bool] = None,
    run_after: Optional[datetime] = None,
) -> SyncTask:
    """
    Enqueue a new task.

    Sync tasks are deduplicated by default: if a pending sync for the same
    entity type already exists, it is returned instead of creating a second
    one. Webhook tasks are never deduplicated (each event is distinct).

    Args:
        session: Database session
        kind: TaskKind.SYNC or TaskKind.WEBHOOK
        entity_type: CRM entity type
        payload: Sync options or the raw webhook payload
        priority: Higher values = more urgent (default 0)
        max_attempts: Maximum attempts before the task is dead-lettered
        dedupe: Override the default deduplication for the kind
        run_after: Earliest time a worker may claim the task

    Returns:
        The created or existing SyncTask
    """
    if dedupe is None:
        dedupe = kind == TaskKind.SYNC

    if dedupe:
        stmt = select(SyncTask).where(
            col(SyncTask.kind) == kind,
            col(SyncTask.entity_type) == entity_type,
            col(SyncTask.status) == TaskStatus.PENDING,
        )
        existing = session.exec(stmt).first()

        if existing:
            # Update priority if new task has higher priority
            if priority > existing.priority:
                existing.priority = priority
                existing.updated_at = utc_now()
                session.add(existing)
                session.commit()
                session.refresh(existing)
            logger.debug(f"Task already pending for kind={kind.value}, entity_type={entity_type}")
            return existing

    task = SyncTask(
        kind=kind,
        entity_type=entity_type,
        payload=dict(payload or {}),
        priority=priority,
        max_attempts=max_attempts,
        run_after=run_after,
    )
    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info(f"Enqueued task id={task.id} kind={kind.value} entity_type={entity_type}")
    return task


def claim_next_task(
    session: Session,
    kind: Optional[TaskKind] = None,
    now: Optional[datetime] = None,
) -> Optional[SyncTask]:
    """
    Claim the next pending task for processing.

    Atomically updates the task status to IN_PROGRESS and increments attempt
    count. Tasks whose run_after lies in the future are not eligible. Tasks
    are ordered by priority (desc) then created_at (asc).

    Returns:
        The claimed SyncTask, or None if no tasks available
    """
    now = now or utc_now()

    stmt = select(SyncTask).where(
        col(SyncTask.status) == TaskStatus.PENDING,
        or_(col(SyncTask.run_after).is_(None), col(SyncTask.run_after) <= now),
    )

    if kind:
        stmt = stmt.where(col(SyncTask.kind) == kind)

    stmt = stmt.order_by(
        col(SyncTask.priority).desc(),
        col(SyncTask.created_at).asc(),
    ).limit(1)

    # Use FOR UPDATE to prevent two workers claiming the same task
    stmt = stmt.with_for_update(skip_locked=True)

    task = session.exec(stmt).first()

    if not task:
        return None

    task.status = TaskStatus.IN_PROGRESS
    task.attempts += 1
    task.started_at = now
    task.updated_at = now

    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info(
        f"Claimed task id={task.id} kind={task.kind.value} entity_type={task.entity_type}, "
        f"attempt={task.attempts}/{task.max_attempts}"
    )
    return task


def complete_task(
    session: Session,
    task_id: int,
    result_summary: Optional[Dict[str, Any]] = None,
) -> Optional[SyncTask]:
    """Mark a task as successfully completed."""
    task = _get_task(session, task_id)

    if not task:
        logger.warning(f"Task id={task_id} not found for completion")
        return None

    now = utc_now()
    task.status = TaskStatus.COMPLETED
    task.completed_at = now
    task.updated_at = now
    task.last_error = None
    task.error_kind = None
    task.run_after = None
    task.result_summary = result_summary

    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info(f"Completed task id={task.id} kind={task.kind.value} entity_type={task.entity_type}")
    return task


def fail_task(
    session: Session,
    task_id: int,
    error: str,
    error_kind: Optional[str] = None,
    retryable: bool = True,
    retry_after: Optional[float] = None,
    result_summary: Optional[Dict[str, Any]] = None,
) -> Optional[SyncTask]:
    """
    Mark a task as failed, with potential retry.

    A retryable failure with attempts left returns the task to PENDING, not
    claimable before `retry_after` seconds. Otherwise the task is
    dead-lettered (status FAILED).

    Args:
        session: Database session
        task_id: ID of the task that failed
        error: Error message describing the failure
        error_kind: Classified error kind
        retryable: The classifier's retry decision
        retry_after: Seconds before the task may run again
        result_summary: Counts from the failed run

    Returns:
        The updated SyncTask, or None if not found
    """
    task = _get_task(session, task_id)

    if not task:
        logger.warning(f"Task id={task_id} not found for failure")
        return None

    now = utc_now()
    error = error or "unknown error"
    task.last_error = error[:MAX_ERROR_LENGTH]
    task.error_kind = error_kind
    task.updated_at = now
    if result_summary is not None:
        task.result_summary = result_summary

    if not retryable or task.attempts >= task.max_attempts:
        task.status = TaskStatus.FAILED
        task.completed_at = now
        task.run_after = None
        logger.warning(
            f"Task id={task.id} dead-lettered after {task.attempts} attempts "
            f"(retryable={retryable}): {error[:100]}"
        )
    else:
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.run_after = now + timedelta(seconds=retry_after) if retry_after else None
        logger.info(
            f"Task id={task.id} failed (attempt {task.attempts}/{task.max_attempts}), will retry: {error[:100]}"
        )

    session.add(task)
    session.commit()
    session.refresh(task)

    return task


def defer_task(
    session: Session,
    task_id: int,
    retry_after: float,
    reason: str = "deferred",
) -> Optional[SyncTask]:
    """
    Put a task back in the queue without spending an attempt.

    Used when a run stopped early for a reason that is not the task's fault
    (rate budget exhausted, upstream unhealthy).
    """
    task = _get_task(session, task_id)

    if not task:
        logger.warning(f"Task id={task_id} not found for deferral")
        return None

    now = utc_now()
    task.status = TaskStatus.PENDING
    task.attempts = max(0, task.attempts - 1)
    task.started_at = None
    task.run_after = now + timedelta(seconds=max(0.0, retry_after))
    task.last_error = reason[:MAX_ERROR_LENGTH]
    task.updated_at = now

    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info(f"Deferred task id={task.id} for {retry_after:.0f}s: {reason[:100]}")
    return task


def reset_stale_tasks(
    session: Session,
    timeout_minutes: int = 30,
) -> Dict[str, int]:
    """
    Reset stale in-progress tasks to pending.

    Tasks that have been IN_PROGRESS for longer than timeout_minutes are
    considered stale (worker crashed/hung) and returned to the queue.

    Returns:
        Dict with {"reset": N} count of reset tasks
    """
    cutoff = utc_now() - timedelta(minutes=timeout_minutes)

    stmt = select(SyncTask).where(
        col(SyncTask.status) == TaskStatus.IN_PROGRESS,
        col(SyncTask.started_at) < cutoff,
    )

    stale_tasks = list(session.exec(stmt).all())

    count = 0
    for task in stale_tasks:
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.updated_at = utc_now()
        task.last_error = f"Task timed out after {timeout_minutes} minutes"
        session.add(task)
        count += 1

    if count > 0:
        session.commit()
        logger.warning(f"Reset {count} stale tasks to pending")

    return {"reset": count}


def cleanup_old_tasks(
    session: Session,
    days_to_keep: int = 7,
) -> Dict[str, int]:
    """
    Delete completed and dead-lettered tasks older than days_to_keep.

    Returns:
        Dict with {"completed_deleted": N, "failed_deleted": N}
    """
    cutoff = utc_now() - timedelta(days=days_to_keep)

    completed_result = session.execute(
        delete(SyncTask).where(
            col(SyncTask.status) == TaskStatus.COMPLETED,
            col(SyncTask.completed_at) < cutoff,
        )
    )
    failed_result = session.execute(
        delete(SyncTask).where(
            col(SyncTask.status) == TaskStatus.FAILED,
            col(SyncTask.updated_at) < cutoff,
        )
    )
    session.commit()

    completed_deleted = completed_result.rowcount or 0
    failed_deleted = failed_result.rowcount or 0

    logger.info(
        f"Cleaned up {completed_deleted} completed and {failed_deleted} failed tasks older than {days_to_keep} days"
    )

    return {
        "completed_deleted": completed_deleted,
        "failed_deleted": failed_deleted,
    }


def get_queue_stats(
    session: Session,
    kind: Optional[TaskKind] = None,
) -> Dict[str, int]:
    """
    Get task queue statistics.

    Returns:
        Dict with counts per status: {"pending": N, "in_progress": N, ...}
    """
    stats: Dict[str, int] = {status.value: 0 for status in TaskStatus}

    stmt = select(col(SyncTask.status), func.count()).group_by(col(SyncTask.status))
    if kind:
        stmt = stmt.where(col(SyncTask.kind) == kind)

    for status, count in session.exec(stmt).all():
        stats[TaskStatus(status).value] = count

    return stats


def list_dead_letter(
    session: Session,
    kind: Optional[TaskKind] = None,
    limit: int = 100,
) -> List[SyncTask]:
    """Dead-lettered tasks, most recent first."""
    stmt = select(SyncTask).where(col(SyncTask.status) == TaskStatus.FAILED)
    if kind:
        stmt = stmt.where(col(SyncTask.kind) == kind)
    stmt = stmt.order_by(col(SyncTask.updated_at).desc()).limit(limit)
    return list(session.exec(stmt).all())


def retry_dead_letter(session: Session, task_id: int) -> Optional[SyncTask]:
    """
    Re-queue a dead-lettered task with a fresh attempt budget.

    Returns None if the task does not exist or is not dead-lettered.
    """
    task = _get_task(session, task_id)

    if not task or task.status != TaskStatus.FAILED:
        logger.warning(f"Task id={task_id} is not in the dead-letter queue")
        return None

    task.status = TaskStatus.PENDING
    task.attempts = 0
    task.run_after = None
    task.started_at = None
    task.completed_at = None
    task.updated_at = utc_now()

    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info(f"Re-queued dead-lettered task id={task.id} kind={task.kind.value}")
    return task


__all__ = [
    "enqueue_task",
    "claim_next_task",
    "complete_task",
    "fail_task",
    "defer_task",
    "reset_stale_tasks",
    "cleanup_old_tasks",
    "get_queue_stats",
    "list_dead_letter",
    "retry_dead_letter",
]

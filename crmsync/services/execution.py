"""
Inline and queued execution of sync runs and webhook events.

Both paths call the same SyncServices entry points; the queued path only
adds persistence and maps the result onto the task queue:

    success             -> complete_task
    deferred            -> defer_task (no attempt spent)
    failure, retryable  -> fail_task, back to pending after retry_after
    failure, final      -> fail_task, dead-lettered
"""

from typing import Any, Mapping, Optional, Union

from sqlmodel import Session

from crmsync.core.config import settings
from crmsync.core.entities import normalize_entity_type
from crmsync.core.errors import capture_message
from crmsync.core.logging_config import get_logger
from crmsync.models.sync_task import SyncTask, TaskKind, TaskStatus
from crmsync.services.sync_types import ExecutionMode, SyncOptions, SyncResult
from crmsync.services.task_queue import claim_next_task, complete_task, defer_task, enqueue_task, fail_task
from crmsync.services.webhook_events import parse_webhook

logger = get_logger(__name__)

__all__ = ["run_inline", "enqueue_sync", "enqueue_webhook", "execute_task", "run_worker_once"]

DEFAULT_DEFER_SECONDS = 60.0


def run_inline(
    services: Any,
    entity_type: str,
    options: Union[SyncOptions, Mapping[str, Any], None] = None,
) -> SyncResult:
    """Run a sync in the caller's thread and return its result."""
    return services.run_sync(entity_type, options)


def enqueue_sync(
    session: Session,
    entity_type: str,
    options: Union[SyncOptions, Mapping[str, Any], None] = None,
    priority: int = 0,
    max_attempts: Optional[int] = None,
) -> SyncTask:
    """
    Queue a sync run for a worker.

    Options are validated now so a malformed request fails at the caller,
    and the run is forced into async execution (rate waits defer the task).

    Raises:
        SyncValidationError: for invalid options
    """
    opts = SyncOptions.parse(options).model_copy(update={"execution": ExecutionMode.ASYNC})
    return enqueue_task(
        session,
        TaskKind.SYNC,
        normalize_entity_type(entity_type) or entity_type,
        payload=opts.model_dump(mode="json"),
        priority=priority,
        max_attempts=max_attempts or settings.TASK_MAX_ATTEMPTS,
    )


def enqueue_webhook(
    session: Session,
    payload: Mapping[str, Any],
    priority: int = 1,
    max_attempts: Optional[int] = None,
) -> SyncTask:
    """
    Queue a raw webhook payload.

    Raises:
        SyncValidationError: when the payload cannot be parsed
    """
    event = parse_webhook(payload)
    return enqueue_task(
        session,
        TaskKind.WEBHOOK,
        event.entity_type,
        payload=dict(payload),
        priority=priority,
        max_attempts=max_attempts or settings.TASK_MAX_ATTEMPTS,
        dedupe=False,
    )


def _run_task(services: Any, task: SyncTask) -> SyncResult:
    if task.kind == TaskKind.SYNC:
        return services.run_sync(task.entity_type, task.payload)
    return services.apply_webhook_event(task.payload)


def execute_task(services: Any, session: Session, task: SyncTask) -> SyncResult:
    """Run a claimed task and record its outcome on the queue."""
    try:
        result = _run_task(services, task)
    except Exception as e:
        error = services.classifier.classify(e, {"operation": task.kind.value})
        logger.exception("task_crashed", task_id=task.id, error_kind=error.kind.value)
        result = SyncResult.failure(task.entity_type, error, context=task.kind.value)

    summary = result.summary()

    if result.success:
        complete_task(session, task.id, summary)
    elif result.deferred:
        defer_task(
            session,
            task.id,
            result.retry_after if result.retry_after is not None else DEFAULT_DEFER_SECONDS,
            reason=result.error_message or "deferred",
        )
    else:
        error = result.error
        updated = fail_task(
            session,
            task.id,
            result.error_message or (error.message if error else "sync failed"),
            error_kind=error.kind.value if error else None,
            retryable=error.retryable if error else True,
            retry_after=error.retry_after if error else None,
            result_summary=summary,
        )
        if updated is not None and updated.status == TaskStatus.FAILED:
            capture_message(
                "task_dead_lettered",
                level="warning",
                context={
                    "task_id": task.id,
                    "kind": task.kind.value,
                    "entity_type": task.entity_type,
                    "error_kind": updated.error_kind,
                    "error": updated.last_error,
                },
            )

    logger.info(
        "task_finished",
        task_id=task.id,
        kind=task.kind.value,
        success=result.success,
        deferred=result.deferred,
    )
    return result


def run_worker_once(services: Any, kind: Optional[TaskKind] = None) -> Optional[SyncResult]:
    """Claim and execute one task. Returns None when the queue is empty."""
    with Session(services.engine) as session:
        task = claim_next_task(session, kind=kind)
        if task is None:
            return None
        return execute_task(services, session, task)

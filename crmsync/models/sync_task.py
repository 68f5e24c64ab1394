"""
Sync Task Model

Persistent task queue for sync runs and webhook events that survive
application restarts. Tasks that exhaust their attempts stay in the table
with status FAILED and act as the dead-letter queue.

Usage:
    from crmsync.models.sync_task import SyncTask, TaskKind, TaskStatus

    task = SyncTask(kind=TaskKind.SYNC, entity_type="deals", payload={"limit": 500})
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, Index, JSON

from crmsync.core.typing import utc_now


class TaskStatus(str, Enum):
    """Status of a sync task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, Enum):
    """What a task runs."""

    SYNC = "sync"
    WEBHOOK = "webhook"


class SyncTask(SQLModel, table=True):
    """
    Persistent task for crash-resilient sync/webhook processing.

    Attributes:
        kind: "sync" (payload = SyncOptions) or "webhook" (payload = raw event)
        entity_type: CRM entity type the task touches
        status: Current task status
        priority: Higher values = more urgent (default 0)
        attempts: Number of execution attempts
        max_attempts: Maximum attempts before the task is dead-lettered
        run_after: Earliest time a worker may claim the task (backoff / deferral)
        last_error: Error message from most recent failure
        error_kind: Classified error kind of the most recent failure
        result_summary: Counts from the last run
    """

    __tablename__ = "sync_tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: TaskKind = Field(default=TaskKind.SYNC)
    entity_type: str = Field(max_length=64, index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    priority: int = Field(default=0)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: Optional[datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    result_summary: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    __table_args__ = (
        # Primary queue query: status + priority + created_at
        Index("ix_sync_tasks_queue", "status", "priority", "created_at"),
        # Stale task detection (in_progress + started_at)
        Index("ix_sync_tasks_stale", "status", "started_at"),
        # Deduplication of scheduled syncs
        Index("ix_sync_tasks_dedup", "kind", "entity_type", "status"),
    )


__all__ = ["SyncTask", "TaskKind", "TaskStatus"]

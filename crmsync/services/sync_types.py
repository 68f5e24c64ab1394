"""
Sync run options and results.

SyncOptions is validated with pydantic (the same bounds the operator API
enforces); SyncResult is an immutable record of one run, or of several
sub-runs combined with `merge()`.

Usage:
    options = SyncOptions.for_command(limit=200, full=True)
    result = services.run_sync("deals", options)
    logger.info("sync_finished", **result.to_log_format())
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from crmsync.core.error_classifier import ClassifiedError
from crmsync.core.exceptions import SyncValidationError
from crmsync.core.typing import utc_now

__all__ = [
    "SyncMode",
    "ExecutionMode",
    "SyncOptions",
    "SyncResult",
    "MAX_ERROR_ITEMS",
]

# Record failures kept on a result; the counters are always complete
MAX_ERROR_ITEMS = 100


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"  # most recently modified first, bounded page count
    FULL = "full"  # oldest first, stable pagination over the whole dataset

    @property
    def sort_order(self) -> str:
        if self is SyncMode.FULL:
            return "add_time ASC"
        return "update_time DESC"


class ExecutionMode(str, Enum):
    SYNC = "sync"  # caller blocks; rate-limit waits sleep
    ASYNC = "async"  # queued; rate-limit waits defer the task instead


class SyncOptions(BaseModel):
    """Options for one sync run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    limit: int = Field(default=500, ge=1, le=500)
    mode: SyncMode = SyncMode.INCREMENTAL
    force: bool = False
    execution: ExecutionMode = ExecutionMode.SYNC
    # None: the driver applies SYNC_RUN_TIMEOUT
    timeout: Optional[float] = Field(default=None, ge=60)
    max_retries: int = Field(default=3, ge=1, le=10)
    memory_threshold: float = Field(default=80.0, ge=50, le=95)
    max_pages: Optional[int] = Field(default=None, ge=1)
    start_cursor: Union[int, str, None] = None
    context: str = "sync"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def parse(cls, options: Union["SyncOptions", Mapping[str, Any], None]) -> "SyncOptions":
        """Validate raw options; raises SyncValidationError."""
        if options is None:
            return cls()
        if isinstance(options, SyncOptions):
            return options
        try:
            return cls.model_validate(dict(options))
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise SyncValidationError(f"Invalid sync options: {'; '.join(errors)}", errors) from e
        except (TypeError, ValueError) as e:
            raise SyncValidationError(f"Invalid sync options: {e}") from e

    @property
    def is_full(self) -> bool:
        return self.mode is SyncMode.FULL

    @property
    def is_async(self) -> bool:
        return self.execution is ExecutionMode.ASYNC

    @classmethod
    def for_command(cls, limit: int = 500, full: bool = False, force: bool = False) -> "SyncOptions":
        return cls(
            limit=limit,
            mode=SyncMode.FULL if full else SyncMode.INCREMENTAL,
            force=force,
            execution=ExecutionMode.SYNC,
            context="command",
        )

    @classmethod
    def for_scheduler(cls, force: bool = True) -> "SyncOptions":
        # Scheduled runs are always incremental
        return cls(limit=500, mode=SyncMode.INCREMENTAL, force=force, execution=ExecutionMode.ASYNC, context="scheduler")

    @classmethod
    def for_job(cls, **overrides: Any) -> "SyncOptions":
        values: Dict[str, Any] = dict(execution=ExecutionMode.ASYNC, context="job")
        values.update(overrides)
        return cls.parse(values)

    @classmethod
    def for_webhook(cls, webhook_data: Optional[Mapping[str, Any]] = None) -> "SyncOptions":
        return cls(
            limit=1,
            force=True,
            execution=ExecutionMode.ASYNC,
            context="webhook",
            metadata={"webhook_data": dict(webhook_data or {})},
        )

    @classmethod
    def for_testing(cls, **overrides: Any) -> "SyncOptions":
        values: Dict[str, Any] = dict(limit=10, force=True, execution=ExecutionMode.SYNC, context="test")
        values.update(overrides)
        return cls.parse(values)


@dataclass(frozen=True)
class SyncResult:
    """
    Outcome of one sync run or webhook application.

    Attributes:
        entity_type: CRM entity type
        success: False when the run failed or was deferred
        synced: Records created locally
        updated: Records updated locally
        skipped: Records skipped (no id, unchanged, unsupported, absent on delete)
        errors: Records that failed after their retry budget
        memory_snapshot / rate_snapshot / health_snapshot: component state at completion
        error: Classified run-level error, or the last record error
        deferred: Run stopped early to be retried later (rate budget, unhealthy API)
        retry_after: Recommended delay before the retry, seconds
        error_items: First MAX_ERROR_ITEMS record failures
        metadata: Run details (pages, fetch calls, stop reason, attempt number, ...)
        context: "command", "scheduler", "job", "webhook", ...
    """

    entity_type: str
    success: bool = True
    synced: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime = field(default_factory=utc_now)
    memory_snapshot: Dict[str, Any] = field(default_factory=dict)
    rate_snapshot: Dict[str, Any] = field(default_factory=dict)
    health_snapshot: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ClassifiedError] = None
    error_message: Optional[str] = None
    deferred: bool = False
    retry_after: Optional[float] = None
    error_items: Tuple[Dict[str, Any], ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    context: str = "sync"

    @classmethod
    def failure(
        cls,
        entity_type: str,
        error: ClassifiedError,
        started_at: Optional[datetime] = None,
        **kwargs: Any,
    ) -> "SyncResult":
        return cls(
            entity_type=entity_type,
            success=False,
            error=error,
            error_message=error.message,
            started_at=started_at or utc_now(),
            **kwargs,
        )

    @property
    def total_processed(self) -> int:
        return self.synced + self.updated + self.skipped + self.errors

    @property
    def execution_time(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return (self.synced + self.updated) / self.total_processed * 100

    @property
    def error_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.errors / self.total_processed * 100

    @property
    def processing_speed(self) -> float:
        """Records per second."""
        if self.execution_time == 0:
            return 0.0
        return self.total_processed / self.execution_time

    @property
    def has_errors(self) -> bool:
        return self.errors > 0

    def summary(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "entity_type": self.entity_type,
            "totals": {
                "synced": self.synced,
                "updated": self.updated,
                "skipped": self.skipped,
                "errors": self.errors,
                "total_processed": self.total_processed,
            },
            "rates": {
                "success_rate": round(self.success_rate, 2),
                "error_rate": round(self.error_rate, 2),
                "processing_speed": round(self.processing_speed, 2),
            },
            "timing": {
                "started_at": self.started_at.isoformat(),
                "completed_at": self.completed_at.isoformat(),
                "execution_time": round(self.execution_time, 3),
            },
            "context": self.context,
            "deferred": self.deferred,
            "has_errors": self.has_errors,
        }

    def to_log_format(self) -> Dict[str, Any]:
        """Flat fields for a structured log line."""
        log: Dict[str, Any] = {
            "success": self.success,
            "entity_type": self.entity_type,
            "synced": self.synced,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "total_processed": self.total_processed,
            "execution_time": round(self.execution_time, 3),
            "success_rate": round(self.success_rate, 2),
            "processing_speed": round(self.processing_speed, 2),
            "context": self.context,
        }
        if self.deferred:
            log["deferred"] = True
            log["retry_after"] = self.retry_after
        if self.error is not None:
            log["error_kind"] = self.error.kind.value
        if self.error_message:
            log["error_message"] = self.error_message
        return log

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form, used for task summaries and the operator API."""
        return {
            **self.summary(),
            "error": self.error.to_dict() if self.error else None,
            "error_message": self.error_message,
            "retry_after": self.retry_after,
            "error_items": list(self.error_items),
            "memory_snapshot": self.memory_snapshot,
            "rate_snapshot": self.rate_snapshot,
            "health_snapshot": self.health_snapshot,
            "metadata": self.metadata,
        }

    def merge(self, other: "SyncResult") -> "SyncResult":
        """Combine two sub-runs of the same entity type."""
        if self.entity_type != other.entity_type:
            raise ValueError(
                f"Cannot merge results for different entity types ({self.entity_type!r}, {other.entity_type!r})"
            )
        return replace(
            self,
            success=self.success and other.success,
            synced=self.synced + other.synced,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            started_at=min(self.started_at, other.started_at),
            completed_at=max(self.completed_at, other.completed_at),
            memory_snapshot={**self.memory_snapshot, **other.memory_snapshot},
            rate_snapshot={**self.rate_snapshot, **other.rate_snapshot},
            health_snapshot={**self.health_snapshot, **other.health_snapshot},
            error=other.error or self.error,
            error_message=other.error_message or self.error_message,
            deferred=self.deferred or other.deferred,
            retry_after=other.retry_after if other.retry_after is not None else self.retry_after,
            error_items=(self.error_items + other.error_items)[:MAX_ERROR_ITEMS],
            metadata={**self.metadata, **other.metadata},
        )

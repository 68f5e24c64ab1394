"""
Per-record processing shared by the sync driver and the webhook processor.

Every record goes to the repository's upsert. A failure is classified;
retryable failures are retried inline within the classifier's budget,
anything else is tallied as an error and processing moves on to the next
record. One bad record never aborts a page.

A retry that must not block raises RecordsInterrupted instead of sleeping:
a rate limit when the caller defers rate limits (queued runs), or a wait
that would cross the caller's deadline.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from crmsync.core.error_classifier import ClassifiedError, ErrorClassifier, ErrorKind
from crmsync.core.logging_config import get_logger
from crmsync.core.typing import utc_now
from crmsync.services.collaborators import EntityRepository, UpsertOutcome, record_id
from crmsync.services.sync_types import MAX_ERROR_ITEMS

logger = get_logger(__name__)

__all__ = ["RecordTally", "RecordProcessor", "RecordsInterrupted"]


class RecordsInterrupted(Exception):
    """
    A record retry was cut short.

    `reason` is "deferred" or "timeout"; `processed` is the number of records
    of the page finished before the interrupted one, so the page can be
    re-entered at that record.
    """

    def __init__(self, reason: str, error: ClassifiedError, retry_after: float, remote_id: Any = None):
        super().__init__(f"{reason}: {error.message}")
        self.reason = reason
        self.error = error
        self.retry_after = retry_after
        self.remote_id = remote_id
        self.processed = 0
@dataclass
class RecordTally:
    """Mutable counters for one run; frozen into a SyncResult at the end."""

    synced: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_items: List[Dict[str, Any]] = field(default_factory=list)
    last_error: Optional[ClassifiedError] = None
    retries: int = 0

    def add_error(self, remote_id: Any, error: ClassifiedError, attempts: int) -> None:
        self.errors += 1
        self.last_error = error
        if len(self.error_items) < MAX_ERROR_ITEMS:
            self.error_items.append(
                {
                    "id": remote_id,
                    "kind": error.kind.value,
                    "error": error.message[:500],
                    "attempts": attempts,
                }
            )

    def counts(self) -> Dict[str, int]:
        return {"synced": self.synced, "updated": self.updated, "skipped": self.skipped, "errors": self.errors}


class RecordProcessor:
    def __init__(
        self,
        repository: EntityRepository,
        classifier: ErrorClassifier,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.classifier = classifier
        self._sleep = sleep
        self._clock = clock

    def process_record(
        self,
        entity_type: str,
        record: Mapping[str, Any],
        tally: RecordTally,
        operation: str = "sync",
        max_retries: Optional[int] = None,
        deadline: Optional[datetime] = None,
        defer_rate_limits: bool = False,
    ) -> Optional[UpsertOutcome]:
        """
        Upsert one record, retrying retryable failures inline.

        Raises:
            RecordsInterrupted: when a retry would defer a rate limit or
                cross `deadline`; the record is left unprocessed
        """
        remote_id = record_id(record)
        if remote_id is None:
            tally.skipped += 1
            logger.debug("record_skipped", reason="missing id")
            return UpsertOutcome.SKIPPED

        context: Dict[str, Any] = {"operation": operation, "entity_type": entity_type, "id": remote_id}
        if max_retries is not None:
            context["max_retries"] = max_retries

        attempt = 1
        while True:
            try:
                outcome = UpsertOutcome(self.repository.upsert(entity_type, record))
                break
            except Exception as e:
                error = self.classifier.classify(e, context)
                if not self.classifier.should_retry(error, attempt):
                    logger.warning(
                        "record_failed",
                        id=remote_id,
                        error_kind=error.kind.value,
                        error=error.message,
                        attempts=attempt,
                    )
                    tally.add_error(remote_id, error, attempt)
                    return None
                delay = self.classifier.retry_delay(error, attempt)
                if defer_rate_limits and error.kind is ErrorKind.RATE_LIMIT:
                    logger.info("record_rate_limited", id=remote_id, retry_after=round(delay, 2))
                    raise RecordsInterrupted("deferred", error, delay, remote_id)
                if deadline is not None and self._clock() + timedelta(seconds=delay) > deadline:
                    logger.warning("record_retry_past_deadline", id=remote_id, delay=round(delay, 2))
                    raise RecordsInterrupted("timeout", error, delay, remote_id)
                logger.info(
                    "record_retry",
                    id=remote_id,
                    error_kind=error.kind.value,
                    attempt=attempt,
                    delay=round(delay, 2),
                )
                tally.retries += 1
                self._sleep(delay)
                attempt += 1

        if outcome is UpsertOutcome.CREATED:
            tally.synced += 1
        elif outcome is UpsertOutcome.UPDATED:
            tally.updated += 1
        else:
            tally.skipped += 1
        return outcome

    def process_page(
        self,
        entity_type: str,
        records: Iterable[Mapping[str, Any]],
        tally: RecordTally,
        operation: str = "sync",
        max_retries: Optional[int] = None,
        deadline: Optional[datetime] = None,
        defer_rate_limits: bool = False,
    ) -> RecordTally:
        for index, record in enumerate(records):
            try:
                self.process_record(
                    entity_type,
                    record,
                    tally,
                    operation=operation,
                    max_retries=max_retries,
                    deadline=deadline,
                    defer_rate_limits=defer_rate_limits,
                )
            except RecordsInterrupted as e:
                e.processed = index
                raise
        return tally

"""
Paginated sync driver for one entity type.

    Init -> FetchPage -> RateCheck -> Process -> AdaptBatch -> (more pages? FetchPage : Done) -> Result

- Init validates options and the entity type, and may skip a non-forced run
  while the upstream health probe reports UNHEALTHY.
- FetchPage checks the "sync" circuit and spends rate budget before every
  call. Retryable failures are retried at the page boundary; a rate limit in
  async execution defers the whole run instead of sleeping.
- Process hands every record to RecordProcessor (per-record isolation).
- AdaptBatch asks the memory governor for the size of the next page; the
  size never changes mid-page. Critical memory aborts the run before the
  next fetch, so it never fails a run whose last page is already done.

The run ends when the client returns no next cursor, the page cap is hit,
the run timeout elapses, memory goes critical, or the circuit opens.
Every outcome is returned as a SyncResult; nothing is raised to the caller.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from crmsync.core.context import sync_context
from crmsync.core.entities import SYNCABLE_ENTITY_TYPES, normalize_entity_type
from crmsync.core.error_classifier import ClassifiedError, ErrorClassifier, ErrorKind
from crmsync.core.errors import capture_message
from crmsync.core.exceptions import CrmApiError, MemoryCriticalError, SyncValidationError
from crmsync.core.health_probe import HealthProbe, HealthStatus
from crmsync.core.logging_config import get_logger
from crmsync.core.memory import BatchPlan, MemoryGovernor
from crmsync.core.rate_limit import RateLimiter
from crmsync.core.typing import utc_now
from crmsync.services.collaborators import CrmClient, Cursor, FetchedPage
from crmsync.services.record_processor import RecordProcessor, RecordsInterrupted, RecordTally
from crmsync.services.sync_types import SyncOptions, SyncResult

logger = get_logger(__name__)

__all__ = ["SyncDriver"]

OPERATION = "sync"


class _RunStopped(Exception):
    """Internal: ends the page loop early with a reason."""

    def __init__(
        self,
        reason: str,
        error: Optional[ClassifiedError] = None,
        retry_after: Optional[float] = None,
        message: Optional[str] = None,
    ):
        super().__init__(message or reason)
        self.reason = reason
        self.error = error
        self.retry_after = retry_after
        self.message = message or (error.message if error else reason)


@dataclass
class _RunState:
    plan: BatchPlan
    cursor: Cursor
    pages: int = 0
    fetch_calls: int = 0
    attempt_number: int = 1
    stop_reason: Optional[str] = None
    resume_offset: Optional[int] = None


def _error_headers(exc: BaseException) -> Dict[str, str]:
    if isinstance(exc, CrmApiError):
        return exc.headers
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "headers", None) is not None:
        return {k.lower(): v for k, v in response.headers.items()}
    return {}


class SyncDriver:
    def __init__(
        self,
        client: CrmClient,
        processor: RecordProcessor,
        rate_limiter: RateLimiter,
        classifier: ErrorClassifier,
        memory: MemoryGovernor,
        health: Optional[HealthProbe] = None,
        incremental_max_pages: int = 20,
        full_max_pages: int = 1000,
        skip_when_unhealthy: bool = True,
        run_timeout: float = 3600,
        entity_types: Iterable[str] = SYNCABLE_ENTITY_TYPES,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.processor = processor
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.memory = memory
        self.health = health
        self.incremental_max_pages = incremental_max_pages
        self.full_max_pages = full_max_pages
        self.skip_when_unhealthy = skip_when_unhealthy
        self.run_timeout = run_timeout
        self.entity_types = frozenset(entity_types)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        entity_type: str,
        options: Union[SyncOptions, Mapping[str, Any], None] = None,
    ) -> SyncResult:
        started_at = self._clock()
        normalized = normalize_entity_type(entity_type) or str(entity_type)

        with sync_context(entity_type=normalized) as run_id:
            try:
                opts = self._init(normalized, options)
            except SyncValidationError as e:
                error = self.classifier.classify(e, {"operation": OPERATION})
                logger.warning("sync_rejected", error=error.message)
                return SyncResult.failure(
                    normalized,
                    error,
                    started_at=started_at,
                    completed_at=self._clock(),
                    metadata={"sync_run_id": run_id, "stop_reason": "invalid_options"},
                )

            skipped = self._skip_if_unhealthy(normalized, opts, started_at, run_id)
            if skipped is not None:
                return skipped

            return self._run(normalized, opts, started_at, run_id)

    def _init(self, entity_type: str, options: Union[SyncOptions, Mapping[str, Any], None]) -> SyncOptions:
        if entity_type not in self.entity_types:
            raise SyncValidationError(f"Unknown entity type {entity_type!r}")
        return SyncOptions.parse(options)

    def _skip_if_unhealthy(
        self, entity_type: str, opts: SyncOptions, started_at: datetime, run_id: str
    ) -> Optional[SyncResult]:
        if opts.force or not self.skip_when_unhealthy or self.health is None or not self.health.enabled:
            return None
        if self.health.status() is not HealthStatus.UNHEALTHY:
            return None

        logger.warning("sync_skipped_upstream_unhealthy", consecutive_failures=self.health.consecutive_failures)
        return SyncResult(
            entity_type=entity_type,
            success=False,
            started_at=started_at,
            completed_at=self._clock(),
            health_snapshot=self.health.stats(),
            error_message="Upstream API is unhealthy; run skipped",
            deferred=True,
            retry_after=float(self.health.cache_ttl),
            metadata={"sync_run_id": run_id, "stop_reason": "upstream_unhealthy"},
            context=opts.context,
        )

    def _timeout(self, opts: SyncOptions) -> float:
        return opts.timeout if opts.timeout is not None else self.run_timeout

    def _max_pages(self, opts: SyncOptions) -> int:
        if opts.max_pages is not None:
            return opts.max_pages
        return self.full_max_pages if opts.is_full else self.incremental_max_pages

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    def _run(self, entity_type: str, opts: SyncOptions, started_at: datetime, run_id: str) -> SyncResult:
        state = _RunState(plan=self.memory.initial_plan(opts.limit), cursor=opts.start_cursor)
        tally = RecordTally()
        timeout = self._timeout(opts)
        deadline = started_at + timedelta(seconds=timeout)
        max_pages = self._max_pages(opts)

        logger.info(
            "sync_started",
            mode=opts.mode.value,
            execution=opts.execution.value,
            limit=opts.limit,
            max_pages=max_pages,
            timeout=timeout,
            context=opts.context,
        )

        stopped: Optional[_RunStopped] = None
        try:
            while True:
                if state.pages >= max_pages:
                    state.stop_reason = "page_cap"
                    logger.info("sync_page_cap_reached", pages=state.pages)
                    break
                if self._clock() >= deadline:
                    raise _RunStopped("timeout", message=f"Sync run exceeded {timeout:.0f}s")

                page = self._fetch_page(entity_type, opts, state, deadline, timeout)
                has_more = bool(page.records) and page.next_cursor not in (None, "")

                self._process_page(entity_type, opts, state, page, tally, deadline, timeout)
                logger.info(
                    "sync_page_processed",
                    page=state.pages,
                    records=len(page.records),
                    page_size=state.plan.current_size,
                    **tally.counts(),
                )

                if not has_more:
                    state.stop_reason = "completed"
                    break

                state.cursor = page.next_cursor
                self._adapt_batch(opts, state)
        except _RunStopped as e:
            stopped = e
            state.stop_reason = e.reason

        return self._finish(entity_type, opts, state, tally, started_at, run_id, stopped)

    def _fetch_page(
        self, entity_type: str, opts: SyncOptions, state: _RunState, deadline: datetime, timeout: float
    ) -> FetchedPage:
        """One page, retried at the page boundary. Raises _RunStopped."""
        context = {"operation": OPERATION, "entity_type": entity_type, "max_retries": opts.max_retries}
        attempt = 1
        while True:
            try:
                self.classifier.check_circuit(OPERATION)
                self.rate_limiter.consume(entity_type)
                state.fetch_calls += 1
                page = FetchedPage(
                    *self.client.fetch(entity_type, state.plan.current_size, state.cursor, opts.mode.sort_order)
                )
            except Exception as e:
                error = self.classifier.classify(e, context)
                if error.subtype == "circuit_open":
                    raise _RunStopped("circuit_open", error=error, retry_after=error.retry_after)

                if error.kind is ErrorKind.RATE_LIMIT:
                    advertised = self.rate_limiter.apply_response_headers(entity_type, _error_headers(e))
                    wait = self.rate_limiter.wait_duration(
                        attempt, advertised if advertised is not None else error.retry_after
                    )
                    if opts.is_async:
                        raise _RunStopped("deferred", error=error, retry_after=wait)
                elif error.kind is not ErrorKind.VALIDATION:
                    self.classifier.record_failure(error)
                    wait = None
                else:
                    wait = None

                if not self.classifier.should_retry(error, attempt):
                    raise _RunStopped("retries_exhausted", error=error, retry_after=error.retry_after)

                if wait is None:
                    wait = self.classifier.retry_delay(error, attempt)
                if self._clock() + timedelta(seconds=wait) > deadline:
                    raise _RunStopped(
                        "timeout",
                        error=error,
                        retry_after=wait,
                        message=f"Sync run would exceed {timeout:.0f}s waiting {wait:.0f}s to retry",
                    )

                logger.warning(
                    "sync_fetch_retry",
                    page=state.pages + 1,
                    attempt=attempt,
                    error_kind=error.kind.value,
                    error=error.message,
                    wait=round(wait, 2),
                )
                self._sleep(wait)
                attempt += 1
                continue

            self.rate_limiter.apply_response_headers(entity_type, page.headers)
            self.classifier.record_success(OPERATION)
            state.pages += 1
            state.attempt_number = max(state.attempt_number, attempt)
            return page

    def _process_page(
        self,
        entity_type: str,
        opts: SyncOptions,
        state: _RunState,
        page: FetchedPage,
        tally: RecordTally,
        deadline: datetime,
        timeout: float,
    ) -> None:
        """Hand the page to the processor. Raises _RunStopped when a record retry cannot block."""
        try:
            self.processor.process_page(
                entity_type,
                page.records,
                tally,
                operation=OPERATION,
                max_retries=opts.max_retries,
                deadline=deadline,
                defer_rate_limits=opts.is_async,
            )
        except RecordsInterrupted as e:
            # The page is re-entered from its own cursor; upserts are idempotent
            state.resume_offset = e.processed
            message = None
            if e.reason == "timeout":
                message = (
                    f"Sync run would exceed {timeout:.0f}s waiting {e.retry_after:.0f}s "
                    f"to retry record {e.remote_id}"
                )
            raise _RunStopped(e.reason, error=e.error, retry_after=e.retry_after, message=message)

    def _adapt_batch(self, opts: SyncOptions, state: _RunState) -> None:
        sample = self.memory.sample()
        try:
            self.memory.check_critical(sample, state.plan.current_size)
        except MemoryCriticalError as e:
            error = self.classifier.classify(e, {"operation": OPERATION})
            raise _RunStopped("memory_critical", error=error, retry_after=error.retry_after)

        if self.memory.should_force_gc(state.pages, sample):
            self.memory.force_gc()

        state.plan = self.memory.plan_next_batch(
            state.plan,
            sample,
            requested_limit=opts.limit,
            threshold_percent=opts.memory_threshold,
        )

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _snapshot(self, name: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return fn()
        except Exception as e:
            logger.warning("sync_snapshot_failed", component=name, error=str(e))
            return {"error": str(e)}

    def _finish(
        self,
        entity_type: str,
        opts: SyncOptions,
        state: _RunState,
        tally: RecordTally,
        started_at: datetime,
        run_id: str,
        stopped: Optional[_RunStopped],
    ) -> SyncResult:
        deferred = stopped is not None and stopped.reason == "deferred"
        error = stopped.error if stopped else None

        result = SyncResult(
            entity_type=entity_type,
            success=stopped is None,
            synced=tally.synced,
            updated=tally.updated,
            skipped=tally.skipped,
            errors=tally.errors,
            started_at=started_at,
            completed_at=self._clock(),
            memory_snapshot=self._snapshot("memory", self.memory.stats),
            rate_snapshot=self._snapshot("rate", lambda: self.rate_limiter.endpoint_status(entity_type)),
            health_snapshot=self._snapshot("health", self.health.stats) if self.health else {},
            error=error,
            error_message=stopped.message if stopped else None,
            deferred=deferred,
            retry_after=stopped.retry_after if stopped else None,
            error_items=tuple(tally.error_items),
            metadata={
                "sync_run_id": run_id,
                "mode": opts.mode.value,
                "execution": opts.execution.value,
                "pages": state.pages,
                "fetch_calls": state.fetch_calls,
                "attempt_number": state.attempt_number,
                "final_batch_size": state.plan.current_size,
                "next_cursor": state.cursor if state.stop_reason != "completed" else None,
                "stop_reason": state.stop_reason,
                "resume_record_offset": state.resume_offset,
                "record_retries": tally.retries,
            },
            context=opts.context,
        )

        if result.success:
            logger.info("sync_completed", **result.to_log_format())
        elif deferred:
            logger.warning("sync_deferred", **result.to_log_format())
        else:
            logger.error("sync_failed", stop_reason=state.stop_reason, **result.to_log_format())

        if error is not None and error.needs_operator:
            capture_message(
                "sync_requires_operator",
                level="error",
                context={"entity_type": entity_type, "error_kind": error.kind.value, "error": error.message},
            )
        return result

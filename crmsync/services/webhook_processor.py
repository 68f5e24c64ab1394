"""
Applies CRM webhook events to the local store.

    added / updated  -> one-record page through RecordProcessor
    deleted          -> repository.delete (absent record is a no-op)
    merged           -> migrate links, upsert the survivor, delete the merged record
    unknown          -> treated as updated, or rejected (WEBHOOK_UNKNOWN_EVENTS)

Updates and deletes are also fed to the MergeDetector; a merge inferred
from them migrates links the same way an explicit merge does.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from crmsync.core.context import sync_context
from crmsync.core.entities import ENTITY_TYPES
from crmsync.core.error_classifier import ErrorClassifier, ErrorKind
from crmsync.core.errors import capture_message
from crmsync.core.exceptions import SyncValidationError
from crmsync.core.logging_config import get_logger
from crmsync.core.rate_limit import RateLimiter
from crmsync.core.typing import utc_now
from crmsync.services.collaborators import DeleteOutcome, EntityRepository
from crmsync.services.merge_detection import MergeDetector, MergeEvent, MergeSource
from crmsync.services.merge_migrator import MergeRelationMigrator, MergeStrategy
from crmsync.services.record_processor import RecordProcessor, RecordTally
from crmsync.services.sync_types import SyncResult
from crmsync.services.webhook_events import WebhookAction, WebhookEvent, field_changes, parse_webhook

logger = get_logger(__name__)

__all__ = ["WebhookProcessor"]

OPERATION = "webhook"


class WebhookProcessor:
    def __init__(
        self,
        processor: RecordProcessor,
        repository: EntityRepository,
        classifier: ErrorClassifier,
        rate_limiter: Optional[RateLimiter] = None,
        migrator: Optional[MergeRelationMigrator] = None,
        detector: Optional[MergeDetector] = None,
        auto_sync: bool = True,
        unknown_events: str = "update",
        auto_migrate: bool = True,
        strategy: Union[MergeStrategy, str] = MergeStrategy.KEEP_BOTH,
        entity_types: Iterable[str] = ENTITY_TYPES,
        clock: Callable[[], datetime] = utc_now,
    ):
        if unknown_events not in ("update", "reject"):
            raise ValueError(f"unknown_events must be 'update' or 'reject', got {unknown_events!r}")
        self.processor = processor
        self.repository = repository
        self.classifier = classifier
        self.rate_limiter = rate_limiter
        self.migrator = migrator
        self.detector = detector
        self.auto_sync = auto_sync
        self.unknown_events = unknown_events
        self.auto_migrate = auto_migrate
        self.strategy = MergeStrategy(strategy)
        self.entity_types = frozenset(entity_types)
        self._clock = clock

    def apply(self, event: Union[WebhookEvent, Mapping[str, Any]]) -> SyncResult:
        """Apply one webhook event. Never raises; failures come back as a failed result."""
        started_at = self._clock()

        if not isinstance(event, WebhookEvent):
            try:
                event = parse_webhook(event, received_at=started_at)
            except SyncValidationError as e:
                error = self.classifier.classify(e, {"operation": OPERATION})
                logger.warning("webhook_rejected", error=error.message)
                return SyncResult.failure(
                    "unknown", error, started_at=started_at, completed_at=self._clock(), context="webhook"
                )

        with sync_context(entity_type=event.entity_type, correlation_id=event.correlation_id):
            return self._apply(event, started_at)

    def _skipped(self, event: WebhookEvent, started_at: datetime, reason: str) -> SyncResult:
        logger.info("webhook_skipped", reason=reason, action=event.raw_action, entity_id=event.entity_id)
        return SyncResult(
            entity_type=event.entity_type,
            skipped=1,
            started_at=started_at,
            completed_at=self._clock(),
            metadata={**event.to_dict(), "processed": False, "reason": reason},
            context="webhook",
        )

    def _apply(self, event: WebhookEvent, started_at: datetime) -> SyncResult:
        if not self.auto_sync:
            return self._skipped(event, started_at, "auto_sync_disabled")
        if event.entity_type not in self.entity_types:
            return self._skipped(event, started_at, "unsupported_entity_type")

        action = event.action
        if action is WebhookAction.UNKNOWN:
            if self.unknown_events == "reject":
                error = self.classifier.classify(
                    SyncValidationError(f"Unsupported webhook action {event.raw_action!r}"),
                    {"operation": OPERATION},
                )
                logger.warning("webhook_unknown_action_rejected", action=event.raw_action)
                return SyncResult.failure(
                    event.entity_type,
                    error,
                    started_at=started_at,
                    completed_at=self._clock(),
                    metadata=event.to_dict(),
                    context="webhook",
                )
            logger.warning("webhook_unknown_action_as_update", action=event.raw_action, entity_id=event.entity_id)
            action = WebhookAction.UPDATED

        tally = RecordTally()
        metadata: Dict[str, Any] = {**event.to_dict(), "processed": True, "applied_as": action.value}

        try:
            self.classifier.check_circuit(OPERATION)

            if action in (WebhookAction.ADDED, WebhookAction.UPDATED):
                self._upsert(event, tally)
                changes = field_changes(event.current, event.previous)
                if changes:
                    metadata["changed_fields"] = changes
            elif action is WebhookAction.DELETED:
                metadata["deleted"] = self._delete(event.entity_type, event.entity_id, tally)
            else:
                merged_id, surviving_id = event.merge_ids
                if merged_id is None:
                    raise SyncValidationError("Merge webhook has no merged record id")
                merge = MergeEvent(event.entity_type, merged_id, surviving_id, MergeSource.EXPLICIT, event.correlation_id)
                metadata["merge"] = self._handle_merge(merge)
                self._upsert(event, tally)
                metadata["deleted"] = self._delete(event.entity_type, merged_id, tally)

            if self.detector is not None and action in (WebhookAction.UPDATED, WebhookAction.DELETED):
                detected = self.detector.track(event)
                if detected is not None:
                    metadata["heuristic_merge"] = self._handle_merge(detected)

            self.classifier.record_success(OPERATION)
        except Exception as e:
            error = self.classifier.classify(e, {"operation": OPERATION})
            if error.kind is not ErrorKind.VALIDATION and error.subtype != "circuit_open":
                self.classifier.record_failure(error)
            logger.error(
                "webhook_failed",
                action=event.raw_action,
                entity_id=event.entity_id,
                error_kind=error.kind.value,
                error=error.message,
            )
            if error.needs_operator:
                capture_message(
                    "webhook_requires_operator",
                    level="error",
                    context={"entity_type": event.entity_type, "error_kind": error.kind.value, "error": error.message},
                )
            return SyncResult.failure(
                event.entity_type,
                error,
                started_at=started_at,
                synced=tally.synced,
                updated=tally.updated,
                skipped=tally.skipped,
                errors=tally.errors,
                completed_at=self._clock(),
                retry_after=error.retry_after,
                rate_snapshot=self._rate_snapshot(event.entity_type),
                error_items=tuple(tally.error_items),
                metadata=metadata,
                context="webhook",
            )

        result = SyncResult(
            entity_type=event.entity_type,
            success=tally.errors == 0,
            synced=tally.synced,
            updated=tally.updated,
            skipped=tally.skipped,
            errors=tally.errors,
            started_at=started_at,
            completed_at=self._clock(),
            rate_snapshot=self._rate_snapshot(event.entity_type),
            error=tally.last_error,
            error_message=tally.last_error.message if tally.last_error else None,
            retry_after=tally.last_error.retry_after if tally.last_error else None,
            error_items=tuple(tally.error_items),
            metadata=metadata,
            context="webhook",
        )
        logger.info("webhook_applied", applied_as=action.value, **result.to_log_format())
        return result

    def _upsert(self, event: WebhookEvent, tally: RecordTally) -> None:
        self.processor.process_page(event.entity_type, [event.current], tally, operation=OPERATION)

    def _delete(self, entity_type: str, remote_id: Any, tally: RecordTally) -> bool:
        outcome = DeleteOutcome(self.repository.delete(entity_type, remote_id))
        if outcome is DeleteOutcome.NOT_FOUND:
            tally.skipped += 1
            logger.info("webhook_delete_not_found", entity_id=remote_id)
            return False
        logger.info("webhook_record_deleted", entity_id=remote_id)
        return True

    def _handle_merge(self, merge: MergeEvent) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "merged_id": merge.merged_id,
            "surviving_id": merge.surviving_id,
            "detected_via": merge.detected_via.value,
            "strategy": self.strategy.value,
        }
        if not self.auto_migrate or self.migrator is None:
            info["migration"] = None
            logger.info("merge_migration_disabled", merged_id=merge.merged_id, surviving_id=merge.surviving_id)
            return info

        migration = self.migrator.migrate(merge.entity_type, merge.merged_id, merge.surviving_id, self.strategy)
        info["migration"] = migration.to_dict()
        return info

    def _rate_snapshot(self, entity_type: str) -> Dict[str, Any]:
        if self.rate_limiter is None:
            return {}
        try:
            return self.rate_limiter.endpoint_status(entity_type)
        except Exception as e:
            logger.warning("webhook_rate_snapshot_failed", error=str(e))
            return {"error": str(e)}

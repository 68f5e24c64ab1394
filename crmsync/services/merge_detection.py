"""
Heuristic merge detection.

Some CRM merges arrive as plain webhooks instead of an explicit "merged"
event: the surviving record is updated and the absorbed record deleted,
all under one correlation id. MergeDetector buffers events per correlation
id for a short window and runs the pure `detect_merge()` over the buffer
after every new event.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from cachetools import TTLCache

from crmsync.core.logging_config import get_logger
from crmsync.services.webhook_events import WebhookAction, WebhookEvent

logger = get_logger(__name__)

__all__ = ["MergeSource", "MergeEvent", "TrackedEvent", "detect_merge", "MergeDetector"]


class MergeSource(str, Enum):
    EXPLICIT = "explicit"
    HEURISTIC = "heuristic"


@dataclass(frozen=True)
class MergeEvent:
    entity_type: str
    merged_id: Any
    surviving_id: Any
    detected_via: MergeSource = MergeSource.EXPLICIT
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class TrackedEvent:
    action: WebhookAction
    entity_type: str
    entity_id: Any
    at: float


def detect_merge(events: Sequence[TrackedEvent]) -> Optional[MergeEvent]:
    """
    Find an update-then-delete merge pattern.

    Within one entity type exactly one record must be deleted, and at least
    one other record must have been updated before that delete. The first
    such record survives.
    """
    by_type: Dict[str, List[TrackedEvent]] = {}
    for event in events:
        by_type.setdefault(event.entity_type, []).append(event)

    for entity_type, typed in by_type.items():
        deleted_ids: List[str] = []
        for event in typed:
            if event.action is WebhookAction.DELETED and str(event.entity_id) not in deleted_ids:
                deleted_ids.append(str(event.entity_id))
        if len(deleted_ids) != 1:
            continue

        delete_index = next(
            i for i, e in enumerate(typed) if e.action is WebhookAction.DELETED
        )
        merged = typed[delete_index]
        for event in typed[:delete_index]:
            if event.action is WebhookAction.UPDATED and str(event.entity_id) not in deleted_ids:
                return MergeEvent(
                    entity_type=entity_type,
                    merged_id=merged.entity_id,
                    surviving_id=event.entity_id,
                    detected_via=MergeSource.HEURISTIC,
                )
    return None


class MergeDetector:
    """Windowed buffer of webhook events keyed by correlation id."""

    def __init__(
        self,
        window: float = 30,
        enabled: bool = True,
        maxsize: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.enabled = enabled
        self._timer = timer
        self._buffers: TTLCache = TTLCache(maxsize=maxsize, ttl=window, timer=timer)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any, timer: Callable[[], float] = time.monotonic) -> "MergeDetector":
        return cls(
            window=settings.MERGE_DETECTION_WINDOW,
            enabled=settings.MERGE_DETECTION_ENABLED,
            timer=timer,
        )

    def track(self, event: WebhookEvent) -> Optional[MergeEvent]:
        """Buffer one event; return a merge once the pattern completes."""
        if not self.enabled or not event.correlation_id:
            return None
        if event.action not in (WebhookAction.UPDATED, WebhookAction.DELETED):
            return None

        now = self._timer()
        with self._lock:
            buffered = [e for e in self._buffers.get(event.correlation_id, []) if now - e.at <= self.window]
            buffered.append(TrackedEvent(event.action, event.entity_type, event.entity_id, now))

            merge = detect_merge(buffered)
            if merge is None:
                self._buffers[event.correlation_id] = buffered
                return None
            self._buffers.pop(event.correlation_id, None)

        merge = MergeEvent(
            entity_type=merge.entity_type,
            merged_id=merge.merged_id,
            surviving_id=merge.surviving_id,
            detected_via=MergeSource.HEURISTIC,
            correlation_id=event.correlation_id,
        )
        logger.info(
            "merge_detected",
            correlation_id=event.correlation_id,
            entity_type=merge.entity_type,
            merged_id=merge.merged_id,
            surviving_id=merge.surviving_id,
        )
        return merge

    def pending(self) -> int:
        """Correlation ids currently buffered."""
        with self._lock:
            return len(self._buffers)

    def clear(self, correlation_id: Optional[str] = None) -> None:
        with self._lock:
            if correlation_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(correlation_id, None)

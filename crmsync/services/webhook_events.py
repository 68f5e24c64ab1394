"""
Webhook payload parsing.

Two payload formats are accepted:

    v1: {"meta": {"action": "updated", "object": "deal", "id": 5, ...},
         "current": {...}, "previous": {...}}
    v2: {"meta": {"version": "2.0", "action": "change", "entity": "deal", "entity_id": "5", ...},
         "data": {...}, "previous": {...}}

Both become a WebhookEvent with a plural entity type and a WebhookAction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from crmsync.core.entities import normalize_entity_type
from crmsync.core.exceptions import SyncValidationError
from crmsync.core.typing import utc_now

__all__ = ["WebhookAction", "WebhookEvent", "parse_webhook", "field_changes"]


class WebhookAction(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"
    MERGED = "merged"
    UNKNOWN = "unknown"


ACTION_MAP = {
    "added": WebhookAction.ADDED,
    "create": WebhookAction.ADDED,
    "updated": WebhookAction.UPDATED,
    "change": WebhookAction.UPDATED,
    "deleted": WebhookAction.DELETED,
    "delete": WebhookAction.DELETED,
    "merged": WebhookAction.MERGED,
}

# Bookkeeping fields that change on every write
IGNORED_CHANGE_FIELDS = frozenset({"update_time", "last_activity_date", "last_activity_id"})


@dataclass(frozen=True)
class WebhookEvent:
    action: WebhookAction
    entity_type: str
    entity_id: Any
    current: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, Any] = field(default_factory=dict)
    raw_action: Optional[str] = None
    raw_object: Optional[str] = None
    correlation_id: Optional[str] = None
    version: str = "1.0"
    received_at: datetime = field(default_factory=utc_now)

    @property
    def merge_ids(self) -> "tuple[Any, Any]":
        """(merged_id, surviving_id) for a merge event."""
        surviving_id = self.current.get("id", self.entity_id)
        merged_id = self.previous.get("id") or self.current.get("merge_what_id")
        return merged_id, surviving_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "raw_action": self.raw_action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": self.correlation_id,
            "version": self.version,
        }


def _same_id(a: Any, b: Any) -> bool:
    return str(a) == str(b)


def parse_webhook(payload: Mapping[str, Any], received_at: Optional[datetime] = None) -> WebhookEvent:
    """
    Parse a raw webhook payload.

    Raises:
        SyncValidationError: when the payload is not a webhook or its ids disagree
    """
    if not isinstance(payload, Mapping):
        raise SyncValidationError("Webhook payload must be an object")
    meta = payload.get("meta")
    if not isinstance(meta, Mapping):
        raise SyncValidationError("Webhook payload has no meta block")

    version = str(meta.get("version") or "1.0")
    if version.startswith("2"):
        raw_object = meta.get("entity") or meta.get("object")
        entity_id = meta.get("entity_id") or meta.get("id")
        current = payload.get("data") or payload.get("current") or {}
    else:
        raw_object = meta.get("object") or meta.get("entity")
        entity_id = meta.get("id") or meta.get("entity_id")
        current = payload.get("current") or payload.get("data") or {}
    previous = payload.get("previous") or {}

    raw_action = meta.get("action")
    if not raw_object:
        raise SyncValidationError("Webhook meta has no entity type")
    if not raw_action:
        raise SyncValidationError("Webhook meta has no action")
    if not isinstance(current, Mapping) or not isinstance(previous, Mapping):
        raise SyncValidationError("Webhook record payload must be an object")

    action = ACTION_MAP.get(str(raw_action).lower(), WebhookAction.UNKNOWN)

    if entity_id is None:
        entity_id = current.get("id", previous.get("id"))
    if entity_id is None:
        raise SyncValidationError("Webhook has no entity id")

    # A merge reports the surviving record in meta; deletes carry no current record
    payload_id = current.get("id")
    if payload_id is not None and action is not WebhookAction.MERGED and not _same_id(payload_id, entity_id):
        raise SyncValidationError(f"Webhook id mismatch: meta {entity_id!r}, payload {payload_id!r}")

    return WebhookEvent(
        action=action,
        entity_type=normalize_entity_type(str(raw_object)) or str(raw_object),
        entity_id=entity_id,
        current=dict(current),
        previous=dict(previous),
        raw_action=str(raw_action),
        raw_object=str(raw_object),
        correlation_id=meta.get("correlation_id"),
        version=version,
        received_at=received_at or utc_now(),
    )


def field_changes(current: Mapping[str, Any], previous: Mapping[str, Any]) -> List[str]:
    """Names of fields whose value differs between two snapshots of a record."""
    if not previous:
        return []
    keys = set(current) | set(previous)
    return sorted(
        k for k in keys if k not in IGNORED_CHANGE_FIELDS and current.get(k) != previous.get(k)
    )

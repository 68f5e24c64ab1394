"""
Interfaces the sync core consumes.

The CRM client owns wire-level request building and authentication; the
entity repository owns the on-disk schema for synced records. Both are
supplied by the host application (see COLLABORATORS_FACTORY).
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Protocol, Union

__all__ = [
    "Cursor",
    "FetchedPage",
    "UpsertOutcome",
    "DeleteOutcome",
    "CrmClient",
    "EntityRepository",
    "record_id",
]

Cursor = Union[int, str, None]


class FetchedPage(NamedTuple):
    records: List[Dict[str, Any]]
    next_cursor: Cursor
    headers: Mapping[str, str]


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class DeleteOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"


class CrmClient(Protocol):
    def fetch(self, entity_type: str, page_size: int, cursor: Cursor, sort_mode: str) -> FetchedPage:
        """
        One page of `entity_type`.

        `next_cursor` is None on the last page. Raises CrmApiError (or an
        httpx exception) on failure. The client bounds each call with its own
        timeout (an httpx client timeout, for example); the driver only
        enforces the run-level deadline.
        """
        ...

    def ping(self) -> Any:
        """Cheapest authenticated call available, used by the health probe."""
        ...


class EntityRepository(Protocol):
    def upsert(self, entity_type: str, record: Mapping[str, Any]) -> Union[UpsertOutcome, str]: ...

    def delete(self, entity_type: str, remote_id: Any) -> Union[DeleteOutcome, str]: ...


def record_id(record: Optional[Mapping[str, Any]]) -> Optional[Any]:
    """Remote id of a record, or None when it has none."""
    if not record:
        return None
    value = record.get("id")
    if value is None or value == "":
        return None
    return value

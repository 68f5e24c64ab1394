"""
Entity link model.

Associates a host-application record (the "linkable" side, e.g. an Order)
with a remote CRM entity. The merge migrator rewrites `entity_id` when the
CRM merges two entities; it never creates or deletes the linkable side.

Usage:
    link = EntityLink(
        linkable_type="Order",
        linkable_id="123",
        entity_type="organizations",
        entity_id=6,
        is_primary=True,
    )
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, Index, JSON

from crmsync.core.typing import utc_now


class LinkSyncStatus(str, Enum):
    """Sync status of a link."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class EntityLink(SQLModel, table=True):
    """
    Link between a local record and a CRM entity.

    Attributes:
        linkable_type: Host model name ("Order", "Customer")
        linkable_id: Host record key
        entity_type: CRM entity type ("deals", "organizations", ...)
        entity_id: CRM entity id
        is_primary: Whether this is the owner's primary link for the entity type
        is_active: Soft-disable flag
        sync_status: Last known sync status
        link_metadata: Free-form JSON (merge provenance is stored here)
    """

    __tablename__ = "entity_links"

    id: Optional[int] = Field(default=None, primary_key=True)
    linkable_type: str = Field(max_length=255)
    linkable_id: str = Field(max_length=255)
    entity_type: str = Field(max_length=64)
    entity_id: int
    is_primary: bool = Field(default=False)
    is_active: bool = Field(default=True)
    sync_status: LinkSyncStatus = Field(default=LinkSyncStatus.SYNCED)
    link_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        # Migrator lookup: all links to one CRM entity
        Index("ix_entity_links_entity", "entity_type", "entity_id"),
        # Conflict lookup: owner + entity
        Index("ix_entity_links_owner", "linkable_type", "linkable_id", "entity_type"),
    )

    @property
    def linkable_ref(self) -> str:
        return f"{self.linkable_type}#{self.linkable_id}"


__all__ = ["EntityLink", "LinkSyncStatus"]

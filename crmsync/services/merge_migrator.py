"""
Merge relation migration.

When the CRM merges entity `merged_id` into `surviving_id`, every entity
link that points at the merged entity is re-pointed at the survivor. If
the same owner already links to the survivor the configured strategy
decides what happens:

    keep_both       move the merged link, never primary         -> migrated
    keep_surviving  drop the merged link                        -> skipped
    keep_merged     move the merged link, drop the existing one -> migrated

Each link is migrated in its own transaction; one failure is counted and
the rest continue. Running the migration twice is a no-op the second time.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from crmsync.core.logging_config import get_logger
from crmsync.core.typing import utc_now
from crmsync.models.entity_link import EntityLink

logger = get_logger(__name__)

__all__ = ["MergeStrategy", "MigrationResult", "MergeRelationMigrator"]


class MergeStrategy(str, Enum):
    KEEP_BOTH = "keep_both"
    KEEP_SURVIVING = "keep_surviving"
    KEEP_MERGED = "keep_merged"


@dataclass
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    error_items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.migrated + self.skipped + self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migrated": self.migrated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "error_items": list(self.error_items),
        }


class MergeRelationMigrator:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self._clock = clock

    def migrate(
        self,
        entity_type: str,
        merged_id: Any,
        surviving_id: Any,
        strategy: Union[MergeStrategy, str] = MergeStrategy.KEEP_BOTH,
    ) -> MigrationResult:
        """
        Re-point links from `merged_id` to `surviving_id`.

        Raises:
            ValueError: for an unknown strategy or non-numeric ids
        """
        strategy = MergeStrategy(strategy)
        merged_id, surviving_id = int(merged_id), int(surviving_id)
        result = MigrationResult()
        if merged_id == surviving_id:
            return result

        with Session(self.engine) as session:
            link_ids = session.exec(
                select(EntityLink.id).where(
                    EntityLink.entity_type == entity_type,
                    EntityLink.entity_id == merged_id,
                )
            ).all()

        for link_id in link_ids:
            with Session(self.engine) as session:
                try:
                    self._migrate_link(session, link_id, entity_type, merged_id, surviving_id, strategy, result)
                    session.commit()
                except Exception as e:
                    session.rollback()
                    result.errors += 1
                    result.error_items.append({"link_id": link_id, "error": str(e)[:500]})
                    logger.warning(
                        "merge_link_migration_failed",
                        link_id=link_id,
                        entity_type=entity_type,
                        merged_id=merged_id,
                        error=str(e),
                    )

        logger.info(
            "merge_relations_migrated",
            entity_type=entity_type,
            merged_id=merged_id,
            surviving_id=surviving_id,
            strategy=strategy.value,
            migrated=result.migrated,
            skipped=result.skipped,
            conflicts=result.conflicts,
            errors=result.errors,
        )
        return result

    def _migrate_link(
        self,
        session: Session,
        link_id: int,
        entity_type: str,
        merged_id: int,
        surviving_id: int,
        strategy: MergeStrategy,
        result: MigrationResult,
    ) -> None:
        link = session.get(EntityLink, link_id)
        if link is None or link.entity_id != merged_id:
            # Moved by a concurrent migration
            return

        existing = session.exec(
            select(EntityLink).where(
                EntityLink.entity_type == entity_type,
                EntityLink.entity_id == surviving_id,
                EntityLink.linkable_type == link.linkable_type,
                EntityLink.linkable_id == link.linkable_id,
            )
        ).first()

        if existing is None:
            self._repoint(session, link, merged_id, surviving_id, strategy)
            result.migrated += 1
            return

        result.conflicts += 1
        if strategy is MergeStrategy.KEEP_BOTH:
            link.is_primary = False
            self._repoint(session, link, merged_id, surviving_id, strategy)
            result.migrated += 1
        elif strategy is MergeStrategy.KEEP_SURVIVING:
            session.delete(link)
            result.skipped += 1
        else:
            link.is_primary = link.is_primary or existing.is_primary
            session.delete(existing)
            session.flush()
            self._repoint(session, link, merged_id, surviving_id, strategy)
            result.migrated += 1

        logger.debug(
            "merge_link_conflict",
            owner=link.linkable_ref,
            strategy=strategy.value,
        )

    def _repoint(
        self,
        session: Session,
        link: EntityLink,
        merged_id: int,
        surviving_id: int,
        strategy: MergeStrategy,
    ) -> None:
        now = self._clock()
        link.entity_id = surviving_id
        # New dict so the JSON column is flagged dirty
        link.link_metadata = {
            **(link.link_metadata or {}),
            "migrated_from": merged_id,
            "migrated_at": now.isoformat(),
            "merge_strategy": strategy.value,
        }
        link.updated_at = now
        session.add(link)

    def links_for(self, entity_type: str, entity_id: Any) -> List[EntityLink]:
        """Active and inactive links to one CRM entity."""
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(EntityLink).where(
                        EntityLink.entity_type == entity_type,
                        EntityLink.entity_id == int(entity_id),
                    )
                ).all()
            )

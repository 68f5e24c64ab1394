"""
Tests for merge relation migration.

Tests cover:
1. Re-pointing links from the merged entity to the survivor
2. Conflict strategies: keep_both, keep_surviving, keep_merged
3. Idempotency
4. Per-link failure isolation
"""

from unittest.mock import patch

import pytest

from crmsync.models import EntityLink
from crmsync.services.merge_migrator import MergeRelationMigrator, MergeStrategy


@pytest.fixture
def migrator(test_engine, clock):
    return MergeRelationMigrator(test_engine, clock=clock)


def add_link(session, entity_id, linkable_id="123", is_primary=False, entity_type="organizations"):
    link = EntityLink(
        linkable_type="Order",
        linkable_id=linkable_id,
        entity_type=entity_type,
        entity_id=entity_id,
        is_primary=is_primary,
    )
    session.add(link)
    session.commit()
    session.refresh(link)
    return link


class TestMigration:
    """Links without conflicts move to the survivor."""

    def test_links_are_repointed(self, migrator, test_session):
        add_link(test_session, 7, linkable_id="1", is_primary=True)
        add_link(test_session, 7, linkable_id="2")

        result = migrator.migrate("organizations", 7, 6)

        assert result.migrated == 2
        assert result.conflicts == 0
        assert migrator.links_for("organizations", 7) == []
        moved = migrator.links_for("organizations", 6)
        assert {link.linkable_id for link in moved} == {"1", "2"}
        # No conflict, so the primary flag is kept
        assert [link.is_primary for link in moved if link.linkable_id == "1"] == [True]

    def test_provenance_is_recorded(self, migrator, test_session, clock):
        add_link(test_session, 7)

        migrator.migrate("organizations", 7, 6)

        (link,) = migrator.links_for("organizations", 6)
        assert link.link_metadata["migrated_from"] == 7
        assert link.link_metadata["merge_strategy"] == "keep_both"
        assert link.link_metadata["migrated_at"] == clock().isoformat()

    def test_other_entity_types_are_untouched(self, migrator, test_session):
        add_link(test_session, 7, entity_type="persons")

        result = migrator.migrate("organizations", 7, 6)

        assert result.total == 0
        assert len(migrator.links_for("persons", 7)) == 1

    def test_ids_may_be_strings(self, migrator, test_session):
        add_link(test_session, 7)

        assert migrator.migrate("organizations", "7", "6").migrated == 1

    def test_same_ids_are_a_no_op(self, migrator, test_session):
        add_link(test_session, 7)

        assert migrator.migrate("organizations", 7, 7).total == 0

    @pytest.mark.parametrize("merged, surviving, strategy", [("x", 6, "keep_both"), (7, 6, "keep_all")])
    def test_invalid_arguments(self, migrator, merged, surviving, strategy):
        with pytest.raises(ValueError):
            migrator.migrate("organizations", merged, surviving, strategy)


class TestConflicts:
    """The owner already links to the surviving entity."""

    @pytest.fixture
    def both_linked(self, test_session):
        add_link(test_session, 7, is_primary=True)
        add_link(test_session, 6, is_primary=True)

    def test_keep_both(self, migrator, both_linked):
        result = migrator.migrate("organizations", 7, 6, MergeStrategy.KEEP_BOTH)

        assert result.migrated == 1
        assert result.conflicts == 1
        links = migrator.links_for("organizations", 6)
        assert len(links) == 2
        assert sorted(link.is_primary for link in links) == [False, True]
        assert migrator.links_for("organizations", 7) == []

    def test_keep_both_is_idempotent(self, migrator, both_linked):
        migrator.migrate("organizations", 7, 6, "keep_both")

        second = migrator.migrate("organizations", 7, 6, "keep_both")

        assert second.total == 0
        assert len(migrator.links_for("organizations", 6)) == 2

    def test_keep_surviving(self, migrator, both_linked):
        result = migrator.migrate("organizations", 7, 6, "keep_surviving")

        assert result.skipped == 1
        assert result.migrated == 0
        (link,) = migrator.links_for("organizations", 6)
        assert "migrated_from" not in link.link_metadata
        assert migrator.links_for("organizations", 7) == []

    def test_keep_merged(self, migrator, test_session):
        add_link(test_session, 7)
        add_link(test_session, 6, is_primary=True)

        result = migrator.migrate("organizations", 7, 6, "keep_merged")

        assert result.migrated == 1
        (link,) = migrator.links_for("organizations", 6)
        assert link.link_metadata["migrated_from"] == 7
        # The dropped link's primary flag carries over
        assert link.is_primary is True


class TestFailureIsolation:
    """One failing link does not stop the others."""

    def test_failed_link_is_counted(self, migrator, test_session):
        add_link(test_session, 7, linkable_id="1")
        add_link(test_session, 7, linkable_id="2")
        repoint = migrator._repoint

        def flaky(session, link, *args):
            if link.linkable_id == "1":
                raise RuntimeError("constraint violated")
            return repoint(session, link, *args)

        with patch.object(migrator, "_repoint", side_effect=flaky):
            result = migrator.migrate("organizations", 7, 6)

        assert result.migrated == 1
        assert result.errors == 1
        assert "constraint violated" in result.error_items[0]["error"]
        assert [link.linkable_id for link in migrator.links_for("organizations", 7)] == ["1"]

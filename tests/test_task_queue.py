"""
Comprehensive unit tests for task_queue service.

Tests cover:
1. enqueue_task - creating tasks, deduplication, priority handling
2. claim_next_task - task claiming, ordering, filtering, run_after
3. complete_task - marking tasks as completed
4. fail_task - retries, backoff and dead-lettering
5. defer_task - requeue without spending an attempt
6. reset_stale_tasks / cleanup_old_tasks - recovery and retention
7. get_queue_stats / list_dead_letter / retry_dead_letter
"""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from crmsync.core.typing import utc_now
from crmsync.models.sync_task import SyncTask, TaskKind, TaskStatus
from crmsync.services.task_queue import (
    claim_next_task,
    cleanup_old_tasks,
    complete_task,
    defer_task,
    enqueue_task,
    fail_task,
    get_queue_stats,
    list_dead_letter,
    reset_stale_tasks,
    retry_dead_letter,
)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TestEnqueueTask:
    """Tests for enqueue_task function."""

    def test_enqueue_creates_new_task(self, test_session: Session):
        """Test that enqueue_task creates a new pending task."""
        task = enqueue_task(test_session, TaskKind.SYNC, "deals", payload={"limit": 100})

        assert task.id is not None
        assert task.kind == TaskKind.SYNC
        assert task.entity_type == "deals"
        assert task.payload == {"limit": 100}
        assert task.status == TaskStatus.PENDING
        assert task.priority == 0
        assert task.max_attempts == 3
        assert task.attempts == 0

    def test_sync_tasks_are_deduplicated(self, test_session: Session):
        """Test that a second pending sync for the same entity type returns the first."""
        first = enqueue_task(test_session, TaskKind.SYNC, "deals")
        second = enqueue_task(test_session, TaskKind.SYNC, "deals")

        assert second.id == first.id
        tasks = list(test_session.exec(select(SyncTask)).all())
        assert len(tasks) == 1

    def test_different_entity_types_are_separate(self, test_session: Session):
        """Test that deduplication is per entity type."""
        deals = enqueue_task(test_session, TaskKind.SYNC, "deals")
        persons = enqueue_task(test_session, TaskKind.SYNC, "persons")

        assert deals.id != persons.id

    def test_webhook_tasks_are_never_deduplicated(self, test_session: Session):
        """Test that every webhook event gets its own task."""
        first = enqueue_task(test_session, TaskKind.WEBHOOK, "deals", payload={"meta": {"id": 1}})
        second = enqueue_task(test_session, TaskKind.WEBHOOK, "deals", payload={"meta": {"id": 2}})

        assert first.id != second.id

    def test_enqueue_updates_priority_if_higher(self, test_session: Session):
        """Test that a duplicate with higher priority raises the pending task's priority."""
        task = enqueue_task(test_session, TaskKind.SYNC, "deals", priority=1)
        again = enqueue_task(test_session, TaskKind.SYNC, "deals", priority=5)

        assert again.id == task.id
        assert again.priority == 5

    def test_enqueue_does_not_lower_priority(self, test_session: Session):
        """Test that a duplicate with lower priority leaves the task alone."""
        enqueue_task(test_session, TaskKind.SYNC, "deals", priority=5)
        again = enqueue_task(test_session, TaskKind.SYNC, "deals", priority=1)

        assert again.priority == 5


class TestClaimNextTask:
    """Tests for claim_next_task function."""

    def test_claim_returns_highest_priority_task(self, test_session: Session):
        """Test that the most urgent task is claimed first."""
        enqueue_task(test_session, TaskKind.SYNC, "deals", priority=1)
        urgent = enqueue_task(test_session, TaskKind.SYNC, "persons", priority=10)

        claimed = claim_next_task(test_session)

        assert claimed.id == urgent.id

    def test_claim_returns_oldest_task_when_same_priority(self, test_session: Session):
        """Test FIFO order within one priority."""
        first = enqueue_task(test_session, TaskKind.SYNC, "deals")
        enqueue_task(test_session, TaskKind.SYNC, "persons")

        assert claim_next_task(test_session).id == first.id

    def test_claim_sets_status_and_increments_attempts(self, test_session: Session):
        """Test that claiming marks the task in progress."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")

        claimed = claim_next_task(test_session)

        assert claimed.status == TaskStatus.IN_PROGRESS
        assert claimed.attempts == 1
        assert claimed.started_at is not None

    def test_claim_returns_none_when_empty(self, test_session: Session):
        """Test that an empty queue yields None."""
        assert claim_next_task(test_session) is None

    def test_claim_skips_in_progress_tasks(self, test_session: Session):
        """Test that a claimed task is not handed out twice."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claim_next_task(test_session)

        assert claim_next_task(test_session) is None

    def test_claim_filters_by_kind(self, test_session: Session):
        """Test that workers can claim only one kind of task."""
        enqueue_task(test_session, TaskKind.SYNC, "deals", priority=10)
        webhook = enqueue_task(test_session, TaskKind.WEBHOOK, "deals")

        assert claim_next_task(test_session, kind=TaskKind.WEBHOOK).id == webhook.id

    def test_claim_respects_run_after(self, test_session: Session):
        """Test that a task scheduled for later is not claimable yet."""
        later = utc_now() + timedelta(minutes=5)
        enqueue_task(test_session, TaskKind.SYNC, "deals", run_after=later)

        assert claim_next_task(test_session) is None
        assert claim_next_task(test_session, now=later + timedelta(seconds=1)) is not None


class TestCompleteTask:
    """Tests for complete_task function."""

    def test_complete_sets_status_and_summary(self, test_session: Session):
        """Test that completion stores the result summary."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)

        done = complete_task(test_session, claimed.id, {"totals": {"synced": 3}})

        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at is not None
        assert done.result_summary == {"totals": {"synced": 3}}

    def test_complete_clears_previous_error(self, test_session: Session):
        """Test that a successful retry clears the last error."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)
        fail_task(test_session, claimed.id, "boom", error_kind="server_error")
        claimed = claim_next_task(test_session)

        done = complete_task(test_session, claimed.id)

        assert done.last_error is None
        assert done.error_kind is None

    def test_complete_returns_none_for_invalid_id(self, test_session: Session):
        """Test that an unknown id is ignored."""
        assert complete_task(test_session, 99999) is None


class TestFailTask:
    """Tests for fail_task function."""

    def test_retryable_failure_returns_to_pending(self, test_session: Session):
        """Test that a task with attempts left goes back to the queue."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)

        failed = fail_task(test_session, claimed.id, "Server error", error_kind="server_error")

        assert failed.status == TaskStatus.PENDING
        assert failed.started_at is None
        assert failed.last_error == "Server error"
        assert failed.error_kind == "server_error"

    def test_retry_after_delays_next_claim(self, test_session: Session):
        """Test that a retry delay pushes run_after into the future."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)
        before = utc_now()

        failed = fail_task(test_session, claimed.id, "busy", retry_after=60)

        assert as_utc(failed.run_after) >= before + timedelta(seconds=60)
        assert claim_next_task(test_session) is None

    def test_non_retryable_failure_is_dead_lettered(self, test_session: Session):
        """Test that an auth failure skips the remaining attempts."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)

        failed = fail_task(test_session, claimed.id, "Unauthorized", error_kind="auth", retryable=False)

        assert failed.status == TaskStatus.FAILED
        assert failed.attempts == 1
        assert failed.completed_at is not None

    def test_exhausted_attempts_are_dead_lettered(self, test_session: Session):
        """Test that the last attempt dead-letters the task."""
        enqueue_task(test_session, TaskKind.SYNC, "deals", max_attempts=2)
        for _ in range(2):
            claimed = claim_next_task(test_session)
            failed = fail_task(test_session, claimed.id, "still broken")

        assert failed.status == TaskStatus.FAILED
        assert failed.attempts == 2

    def test_fail_truncates_long_error_message(self, test_session: Session):
        """Test that stored errors are bounded."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)

        failed = fail_task(test_session, claimed.id, "x" * 5000)

        assert len(failed.last_error) == 1000

    def test_fail_returns_none_for_invalid_id(self, test_session: Session):
        """Test that an unknown id is ignored."""
        assert fail_task(test_session, 99999, "error") is None


class TestDeferTask:
    """Tests for defer_task function."""

    def test_defer_does_not_spend_an_attempt(self, test_session: Session):
        """Test that a deferral gives the attempt back."""
        enqueue_task(test_session, TaskKind.SYNC, "deals", max_attempts=1)
        claimed = claim_next_task(test_session)

        deferred = defer_task(test_session, claimed.id, retry_after=120, reason="Rate budget exhausted")

        assert deferred.status == TaskStatus.PENDING
        assert deferred.attempts == 0
        assert deferred.last_error == "Rate budget exhausted"
        assert claim_next_task(test_session) is None
        assert claim_next_task(test_session, now=utc_now() + timedelta(seconds=121)) is not None

    def test_defer_returns_none_for_invalid_id(self, test_session: Session):
        """Test that an unknown id is ignored."""
        assert defer_task(test_session, 99999, retry_after=10) is None


class TestResetStaleTasks:
    """Tests for reset_stale_tasks function."""

    def test_reset_stale_tasks_resets_old_in_progress(self, test_session: Session):
        """Test that tasks stuck in progress go back to pending."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(test_session)

        # Manually set started_at to simulate a crashed worker (45 minutes ago)
        claimed.started_at = utc_now() - timedelta(minutes=45)
        test_session.add(claimed)
        test_session.commit()

        assert reset_stale_tasks(test_session, timeout_minutes=30) == {"reset": 1}

        test_session.refresh(claimed)
        assert claimed.status == TaskStatus.PENDING
        assert claimed.started_at is None
        assert "timed out" in claimed.last_error

    def test_reset_stale_tasks_ignores_recent(self, test_session: Session):
        """Test that a running task is left alone."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        claim_next_task(test_session)

        assert reset_stale_tasks(test_session, timeout_minutes=30) == {"reset": 0}


class TestCleanupOldTasks:
    """Tests for cleanup_old_tasks function."""

    def test_old_finished_tasks_are_deleted(self, test_session: Session):
        """Test that completed and dead-lettered tasks past retention are removed."""
        old = utc_now() - timedelta(days=10)
        test_session.add(SyncTask(entity_type="deals", status=TaskStatus.COMPLETED, completed_at=old))
        test_session.add(SyncTask(entity_type="persons", status=TaskStatus.FAILED, updated_at=old))
        test_session.add(SyncTask(entity_type="notes", status=TaskStatus.COMPLETED, completed_at=utc_now()))
        test_session.add(SyncTask(entity_type="files", status=TaskStatus.PENDING, updated_at=old))
        test_session.commit()

        assert cleanup_old_tasks(test_session, days_to_keep=7) == {"completed_deleted": 1, "failed_deleted": 1}
        remaining = {task.entity_type for task in test_session.exec(select(SyncTask)).all()}
        assert remaining == {"notes", "files"}


class TestQueueStats:
    """Tests for get_queue_stats function."""

    def test_get_stats_returns_counts_by_status(self, test_session: Session):
        """Test per-status counts."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        enqueue_task(test_session, TaskKind.SYNC, "persons")
        enqueue_task(test_session, TaskKind.WEBHOOK, "deals")
        claim_next_task(test_session)

        stats = get_queue_stats(test_session)

        assert stats == {"pending": 2, "in_progress": 1, "completed": 0, "failed": 0}

    def test_get_stats_with_kind_filter(self, test_session: Session):
        """Test counts restricted to one kind."""
        enqueue_task(test_session, TaskKind.SYNC, "deals")
        enqueue_task(test_session, TaskKind.WEBHOOK, "deals")

        assert get_queue_stats(test_session, kind=TaskKind.WEBHOOK)["pending"] == 1

    def test_get_stats_empty_queue(self, test_session: Session):
        """Test that every status is reported even when empty."""
        assert set(get_queue_stats(test_session).values()) == {0}


class TestDeadLetter:
    """Tests for the dead-letter helpers."""

    def _dead_letter(self, session: Session, entity_type: str = "deals") -> SyncTask:
        enqueue_task(session, TaskKind.SYNC, entity_type)
        claimed = claim_next_task(session)
        return fail_task(session, claimed.id, "Forbidden", error_kind="auth", retryable=False)

    def test_list_dead_letter(self, test_session: Session):
        """Test that only failed tasks are listed."""
        dead = self._dead_letter(test_session)
        enqueue_task(test_session, TaskKind.SYNC, "persons")

        listed = list_dead_letter(test_session)

        assert [task.id for task in listed] == [dead.id]

    def test_retry_dead_letter_resets_attempts(self, test_session: Session):
        """Test that a re-queued task gets a fresh attempt budget."""
        dead = self._dead_letter(test_session)

        requeued = retry_dead_letter(test_session, dead.id)

        assert requeued.status == TaskStatus.PENDING
        assert requeued.attempts == 0
        assert requeued.completed_at is None
        assert claim_next_task(test_session).id == dead.id

    def test_retry_dead_letter_ignores_live_tasks(self, test_session: Session):
        """Test that pending tasks cannot be 'retried'."""
        task = enqueue_task(test_session, TaskKind.SYNC, "deals")

        assert retry_dead_letter(test_session, task.id) is None

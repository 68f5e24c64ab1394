from .shared_counter import SharedCounter
from .entity_link import EntityLink, LinkSyncStatus
from .sync_task import SyncTask, TaskKind, TaskStatus

__all__ = [
    "SharedCounter",
    "EntityLink",
    "LinkSyncStatus",
    "SyncTask",
    "TaskKind",
    "TaskStatus",
]

#!/usr/bin/env python3
"""
Run a sync inline, or queue it for the workers.

Usage:
    python scripts/sync_entities.py deals                    # Incremental, inline
    python scripts/sync_entities.py deals persons --full     # Full sync of two types
    python scripts/sync_entities.py deals --limit 100 --force
    python scripts/sync_entities.py deals --queue            # Hand off to run_sync_worker.py
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from crmsync.core.config import settings  # noqa: E402
from crmsync.core.exceptions import SyncValidationError  # noqa: E402
from crmsync.core.logging_config import configure_logging  # noqa: E402
from crmsync.db import create_db_and_tables  # noqa: E402
from crmsync.services.container import build_services, load_collaborators  # noqa: E402
from crmsync.services.execution import enqueue_sync, run_inline  # noqa: E402
from crmsync.services.sync_types import SyncOptions  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync CRM entities into the local store")
    parser.add_argument("entity_types", nargs="+", help="Entity types, e.g. deals persons")
    parser.add_argument("--limit", type=int, default=settings.SYNC_DEFAULT_LIMIT, help="Page size (1-500)")
    parser.add_argument("--full", action="store_true", help="Full sync (oldest first, all pages)")
    parser.add_argument("--force", action="store_true", help="Run even if the API is unhealthy")
    parser.add_argument("--queue", action="store_true", help="Queue the runs instead of running inline")
    parser.add_argument("--factory", default=settings.COLLABORATORS_FACTORY, help="'module:callable' for collaborators")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)
    create_db_and_tables()

    try:
        options = SyncOptions.for_command(limit=args.limit, full=args.full, force=args.force)
    except ValueError as e:
        print(f"Invalid options: {e}")
        return 2

    if args.queue:
        from crmsync.db import engine

        with Session(engine) as session:
            for entity_type in args.entity_types:
                try:
                    task = enqueue_sync(session, entity_type, options)
                except SyncValidationError as e:
                    print(f"{entity_type}: rejected ({e})")
                    continue
                print(f"{entity_type}: queued as task {task.id}")
        return 0

    client, repository = load_collaborators(args.factory)
    services = build_services(client, repository, settings)

    exit_code = 0
    for entity_type in args.entity_types:
        result = run_inline(services, entity_type, options)
        print(
            f"{entity_type}: {'ok' if result.success else 'FAILED'} "
            f"synced={result.synced} updated={result.updated} skipped={result.skipped} "
            f"errors={result.errors} in {result.execution_time:.1f}s"
        )
        if result.error_message:
            print(f"  {result.error_message}")
        if not result.success:
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())

"""
Shared counter store.

Rate budgets and circuit-breaker state must be shared by every worker that
talks to the CRM, so they live behind this small interface instead of in
module-level singletons:

    increment(key, amount, ttl)                 -> new value (atomic)
    increment_if_within(key, amount, ceiling)   -> new value, or None if it would exceed
    get(key) / set_with_ttl(key, value, ttl)    -> JSON values
    compare_and_set(key, expected, new, ttl)    -> bool
    get_count / set_count / time_to_live / delete / delete_prefix

Two implementations:
    SqlCounterStore     - the sync_shared_counters table (multi-worker)
    MemoryCounterStore  - cachetools TLRUCache behind a lock (single process, tests)
"""

import json
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from cachetools import TLRUCache
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from crmsync.core.logging_config import get_logger
from crmsync.core.typing import as_utc, col, utc_now
from crmsync.models.shared_counter import SharedCounter

logger = get_logger(__name__)

__all__ = [
    "CounterStore",
    "SqlCounterStore",
    "MemoryCounterStore",
]


def _encode(value: Any) -> str:
    # Canonical form so compare_and_set can compare encoded text
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class CounterStore(Protocol):
    """Shared atomic key-value store for counters and small state records."""

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int: ...

    def increment_if_within(
        self, key: str, amount: int, ceiling: int, ttl: Optional[float] = None
    ) -> Optional[int]: ...

    def get_count(self, key: str) -> int: ...

    def set_count(self, key: str, count: int, ttl: Optional[float] = None) -> None: ...

    def get(self, key: str) -> Any: ...

    def set_with_ttl(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: Optional[float] = None) -> bool: ...

    def time_to_live(self, key: str) -> Optional[float]: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...


class SqlCounterStore:
    """
    Counter store backed by the sync_shared_counters table.

    Increments are single UPDATE statements (`counter = counter + :amount`),
    so concurrent workers never lose updates; the conditional increment adds
    `counter + :amount <= :ceiling` to the WHERE clause, which makes the
    budget check and the spend one atomic step. Rows are created on first
    use; a concurrent creator losing the primary-key race retries as an
    update.

    TTLs apply when a row is created (or explicitly set); an expired row is
    treated as absent and replaced on the next write.
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self._clock = clock

    def _expiry(self, now: datetime, ttl: Optional[float]) -> Optional[datetime]:
        return now + timedelta(seconds=ttl) if ttl is not None else None

    def _purge_expired(self, session: Session, key: str, now: datetime) -> None:
        session.execute(
            delete(SharedCounter).where(
                col(SharedCounter.key) == key,
                col(SharedCounter.expires_at).is_not(None),
                col(SharedCounter.expires_at) <= now,
            )
        )

    def _live_row(self, session: Session, key: str) -> Optional[SharedCounter]:
        row = session.exec(select(SharedCounter).where(col(SharedCounter.key) == key)).first()
        if row is None:
            return None
        if row.expires_at is not None and as_utc(row.expires_at) <= self._clock():
            return None
        return row

    def _insert(self, session: Session, row: SharedCounter) -> bool:
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        for _ in range(3):
            with Session(self.engine) as session:
                now = self._clock()
                self._purge_expired(session, key, now)
                result = session.execute(
                    update(SharedCounter)
                    .where(col(SharedCounter.key) == key)
                    .values(counter=SharedCounter.counter + amount, updated_at=now)
                )
                if result.rowcount:
                    value = session.exec(
                        select(SharedCounter.counter).where(col(SharedCounter.key) == key)
                    ).one()
                    session.commit()
                    return int(value)

                row = SharedCounter(key=key, counter=amount, expires_at=self._expiry(now, ttl), updated_at=now)
                if self._insert(session, row):
                    return amount

        raise RuntimeError(f"Could not increment shared counter {key!r}")

    def increment_if_within(
        self, key: str, amount: int, ceiling: int, ttl: Optional[float] = None
    ) -> Optional[int]:
        for _ in range(3):
            with Session(self.engine) as session:
                now = self._clock()
                self._purge_expired(session, key, now)
                result = session.execute(
                    update(SharedCounter)
                    .where(
                        col(SharedCounter.key) == key,
                        SharedCounter.counter + amount <= ceiling,
                    )
                    .values(counter=SharedCounter.counter + amount, updated_at=now)
                )
                if result.rowcount:
                    value = session.exec(
                        select(SharedCounter.counter).where(col(SharedCounter.key) == key)
                    ).one()
                    session.commit()
                    return int(value)

                exists = session.exec(
                    select(SharedCounter.key).where(col(SharedCounter.key) == key)
                ).first()
                if exists is not None:
                    session.commit()
                    return None  # row exists, spend would cross the ceiling
                if amount > ceiling:
                    session.commit()
                    return None

                row = SharedCounter(key=key, counter=amount, expires_at=self._expiry(now, ttl), updated_at=now)
                if self._insert(session, row):
                    return amount

        raise RuntimeError(f"Could not increment shared counter {key!r}")

    def get_count(self, key: str) -> int:
        with Session(self.engine) as session:
            row = self._live_row(session, key)
            return row.counter if row else 0

    def set_count(self, key: str, count: int, ttl: Optional[float] = None) -> None:
        self._upsert(key, ttl, counter=count)

    def get(self, key: str) -> Any:
        with Session(self.engine) as session:
            row = self._live_row(session, key)
            if row is None or row.value is None:
                return None
            return json.loads(row.value)

    def set_with_ttl(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._upsert(key, ttl, value=_encode(value))

    def _upsert(self, key: str, ttl: Optional[float], **values: Any) -> None:
        for _ in range(3):
            with Session(self.engine) as session:
                now = self._clock()
                expires_at = self._expiry(now, ttl)
                result = session.execute(
                    update(SharedCounter)
                    .where(col(SharedCounter.key) == key)
                    .values(expires_at=expires_at, updated_at=now, **values)
                )
                if result.rowcount:
                    session.commit()
                    return
                if self._insert(session, SharedCounter(key=key, expires_at=expires_at, updated_at=now, **values)):
                    return

        raise RuntimeError(f"Could not write shared value {key!r}")

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: Optional[float] = None) -> bool:
        with Session(self.engine) as session:
            now = self._clock()
            self._purge_expired(session, key, now)
            new_row = dict(value=_encode(new), expires_at=self._expiry(now, ttl), updated_at=now)

            if expected is None:
                existing = session.exec(select(SharedCounter).where(col(SharedCounter.key) == key)).first()
                if existing is not None:
                    if existing.value is not None:
                        session.commit()
                        return False
                    # counter-only row: claim its value slot
                    result = session.execute(
                        update(SharedCounter)
                        .where(col(SharedCounter.key) == key, col(SharedCounter.value).is_(None))
                        .values(**new_row)
                    )
                    session.commit()
                    return bool(result.rowcount)
                return self._insert(session, SharedCounter(key=key, **new_row))

            result = session.execute(
                update(SharedCounter)
                .where(col(SharedCounter.key) == key, col(SharedCounter.value) == _encode(expected))
                .values(**new_row)
            )
            session.commit()
            return bool(result.rowcount)

    def time_to_live(self, key: str) -> Optional[float]:
        with Session(self.engine) as session:
            row = self._live_row(session, key)
            if row is None or row.expires_at is None:
                return None
            return max(0.0, (as_utc(row.expires_at) - self._clock()).total_seconds())

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            session.execute(delete(SharedCounter).where(col(SharedCounter.key) == key))
            session.commit()

    def delete_prefix(self, prefix: str) -> int:
        with Session(self.engine) as session:
            result = session.execute(
                delete(SharedCounter).where(col(SharedCounter.key).startswith(prefix, autoescape=True))
            )
            session.commit()
            return result.rowcount or 0


@dataclass
class _Entry:
    counter: int = 0
    value: Optional[str] = None
    expires_at: float = math.inf


class MemoryCounterStore:
    """
    In-process counter store.

    Same semantics as SqlCounterStore for a single process: a TLRUCache with
    per-entry expiry, every operation under one lock.
    """

    def __init__(self, maxsize: int = 100_000, timer: Callable[[], float] = time.monotonic):
        self._timer = timer
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, _now: entry.expires_at,
            timer=timer,
        )
        self._lock = threading.Lock()

    def _expiry(self, ttl: Optional[float]) -> float:
        return self._timer() + ttl if ttl is not None else math.inf

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._cache[key] = _Entry(counter=amount, expires_at=self._expiry(ttl))
                return amount
            entry.counter += amount
            return entry.counter

    def increment_if_within(
        self, key: str, amount: int, ceiling: int, ttl: Optional[float] = None
    ) -> Optional[int]:
        with self._lock:
            entry = self._cache.get(key)
            current = entry.counter if entry else 0
            if current + amount > ceiling:
                return None
            if entry is None:
                self._cache[key] = _Entry(counter=amount, expires_at=self._expiry(ttl))
                return amount
            entry.counter += amount
            return entry.counter

    def get_count(self, key: str) -> int:
        with self._lock:
            entry = self._cache.get(key)
            return entry.counter if entry else 0

    def set_count(self, key: str, count: int, ttl: Optional[float] = None) -> None:
        with self._lock:
            entry = self._cache.get(key)
            value = entry.value if entry else None
            self._cache[key] = _Entry(counter=count, value=value, expires_at=self._expiry(ttl))

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.value is None:
                return None
            return json.loads(entry.value)

    def set_with_ttl(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            entry = self._cache.get(key)
            counter = entry.counter if entry else 0
            self._cache[key] = _Entry(counter=counter, value=_encode(value), expires_at=self._expiry(ttl))

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: Optional[float] = None) -> bool:
        with self._lock:
            entry = self._cache.get(key)
            current = entry.value if entry else None
            wanted = _encode(expected) if expected is not None else None
            if current != wanted:
                return False
            counter = entry.counter if entry else 0
            self._cache[key] = _Entry(counter=counter, value=_encode(new), expires_at=self._expiry(ttl))
            return True

    def time_to_live(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.expires_at == math.inf:
                return None
            return max(0.0, entry.expires_at - self._timer())

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if k.startswith(prefix)]
            for k in keys:
                self._cache.pop(k, None)
            return len(keys)

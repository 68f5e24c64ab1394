"""
Shared counter / state record.

Backs the shared atomic store used by the rate limiter and the circuit
breakers, so budgets and circuit states are shared by every worker and
survive restarts.

A row carries either an integer counter (rate budget consumption, failure
streaks) or a JSON-encoded value (circuit state), plus an optional expiry.
Expired rows are treated as absent.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from crmsync.core.typing import utc_now


class SharedCounter(SQLModel, table=True):
    """Persisted counter or state value keyed by name."""

    __tablename__ = "sync_shared_counters"

    key: str = Field(primary_key=True, max_length=255)  # e.g. "rate_budget:deals"
    counter: int = Field(default=0)
    value: Optional[str] = Field(default=None)  # JSON text
    expires_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (
        Index("ix_sync_shared_counters_expires", "expires_at"),
    )


__all__ = ["SharedCounter"]

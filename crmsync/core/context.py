"""
Run context for log correlation.

A sync run or webhook application binds its identifiers once; every log
line emitted while it is active carries them (structlog merge_contextvars),
and Sentry events get them as extra context.

Usage:
    with sync_context(entity_type="deals") as run_id:
        logger.info("sync_started")  # includes sync_run_id and entity_type
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
import uuid

import structlog

__all__ = [
    "generate_run_id",
    "get_run_id",
    "get_correlation_id",
    "get_entity_type",
    "sync_context",
    "get_context_dict",
]

_run_id: ContextVar[Optional[str]] = ContextVar("sync_run_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_entity_type: ContextVar[Optional[str]] = ContextVar("entity_type", default=None)


def generate_run_id() -> str:
    """
    Generate a new run ID.

    Format: run_{16 hex chars}
    """
    return f"run_{uuid.uuid4().hex[:16]}"


def get_run_id() -> Optional[str]:
    return _run_id.get()


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def get_entity_type() -> Optional[str]:
    return _entity_type.get()


@contextmanager
def sync_context(
    entity_type: Optional[str] = None,
    correlation_id: Optional[str] = None,
    run_id: Optional[str] = None,
) -> Iterator[str]:
    """Bind run identifiers for the duration of one sync run or webhook."""
    run_id = run_id or generate_run_id()
    tokens = [
        (_run_id, _run_id.set(run_id)),
        (_correlation_id, _correlation_id.set(correlation_id)),
        (_entity_type, _entity_type.set(entity_type)),
    ]
    bound = {"sync_run_id": run_id}
    if correlation_id:
        bound["correlation_id"] = correlation_id
    if entity_type:
        bound["entity_type"] = entity_type
    structlog.contextvars.bind_contextvars(**bound)
    try:
        yield run_id
    finally:
        structlog.contextvars.unbind_contextvars(*bound.keys())
        for var, token in reversed(tokens):
            var.reset(token)


def get_context_dict() -> dict:
    """
    Get all context values as dict.

    Useful for passing to error tracking (Sentry) as extra context.
    """
    ctx = {}
    if run_id := _run_id.get():
        ctx["sync_run_id"] = run_id
    if correlation_id := _correlation_id.get():
        ctx["correlation_id"] = correlation_id
    if entity_type := _entity_type.get():
        ctx["entity_type"] = entity_type
    return ctx

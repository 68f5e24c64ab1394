"""
Error reporting with optional Sentry integration.

Sync and webhook failures are already returned as structured results; this
module is for the things an operator must see: Auth/Quota failures, dead
lettered tasks, circuit transitions, and crashes in background jobs.

Usage:
    capture_exception(exc, context={"entity_type": "deals"})
    capture_message("circuit_opened", level="warning", context={"operation": "sync"})

    with ErrorHandler("scheduled_health_probe"):
        probe.check()
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
import logging
import os

import structlog

from crmsync.core.context import get_run_id, get_correlation_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
]

_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("sentry_disabled", reason="no DSN provided")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release or os.environ.get("CRMSYNC_RELEASE"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("sentry_init_failed", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("sentry_initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag events with the active sync run / webhook correlation id."""
    run_id = get_run_id()
    if run_id:
        event.setdefault("tags", {})["sync_run_id"] = run_id

    correlation_id = get_correlation_id()
    if correlation_id:
        event.setdefault("tags", {})["correlation_id"] = correlation_id

    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error("exception_captured", exc_info=exc, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        import sentry_sdk

        with sentry_sdk.push_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("sentry_send_failed", error=str(e))
        return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Used for circuit state changes, Auth/Quota failures that need an
    operator, and dead-lettered tasks.
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        import sentry_sdk

        with sentry_sdk.push_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            scope.level = level
            return sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("sentry_send_failed", error=str(e))
        return None


class ErrorHandler:
    """
    Context manager that captures and (by default) suppresses errors.

    Wraps background work (scheduler jobs, worker iterations) so that one
    failure is reported instead of killing the loop.

    Args:
        operation: Name of the operation (for grouping in Sentry)
        context: Additional context dict
        capture: Whether to send to Sentry (default: True)
        reraise: Whether to re-raise exception (default: False)
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False

        if self.capture:
            self.event_id = capture_exception(
                exc_val,
                context={"operation": self.operation, **self.context},
                fingerprint=[self.operation, type(exc_val).__name__],
            )
        else:
            logger.warning("operation_failed", operation=self.operation, error=str(exc_val))

        return not self.reraise

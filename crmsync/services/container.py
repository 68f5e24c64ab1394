"""
Service wiring and the operator operations.

`build_services()` assembles every component from Settings around the
host application's CRM client and entity repository. The resulting
SyncServices is what the API, the scheduler and the worker share:

    services = build_services(client, repository)
    result = services.run_sync("deals", {"limit": 200})
    services.apply_webhook_event(payload)
    services.get_rate_status()
    services.reset("circuits")
"""

import importlib
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from sqlalchemy.engine import Engine
from sqlmodel import Session

from crmsync.core.circuit_breaker import CircuitBreakerRegistry
from crmsync.core.config import Settings, settings as default_settings
from crmsync.core.error_classifier import ErrorClassifier
from crmsync.core.health_check import HealthCheck
from crmsync.core.health_probe import HealthProbe
from crmsync.core.logging_config import get_logger
from crmsync.core.memory import MemoryGovernor
from crmsync.core.rate_limit import RateLimiter
from crmsync.core.typing import utc_now
from crmsync.services.collaborators import CrmClient, EntityRepository
from crmsync.services.counter_store import CounterStore, SqlCounterStore
from crmsync.services.merge_detection import MergeDetector
from crmsync.services.merge_migrator import MergeRelationMigrator
from crmsync.services.record_processor import RecordProcessor
from crmsync.services.sync_driver import SyncDriver
from crmsync.services.sync_types import SyncOptions, SyncResult
from crmsync.services.webhook_events import WebhookEvent
from crmsync.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

__all__ = [
    "RESET_COMPONENTS",
    "SyncServices",
    "build_services",
    "load_collaborators",
    "configure_services",
    "get_services",
]

RESET_COMPONENTS = ("rate", "circuits", "memory", "health", "merge_detection", "all")


@dataclass
class SyncServices:
    settings: Settings
    engine: Engine
    store: CounterStore
    rate_limiter: RateLimiter
    breakers: CircuitBreakerRegistry
    classifier: ErrorClassifier
    memory: MemoryGovernor
    health: HealthProbe
    processor: RecordProcessor
    driver: SyncDriver
    migrator: MergeRelationMigrator
    detector: MergeDetector
    webhooks: WebhookProcessor

    def run_sync(
        self,
        entity_type: str,
        options: Union[SyncOptions, Mapping[str, Any], None] = None,
    ) -> SyncResult:
        return self.driver.run(entity_type, options)

    def apply_webhook_event(self, event: Union[WebhookEvent, Mapping[str, Any]]) -> SyncResult:
        return self.webhooks.apply(event)

    def get_rate_status(self, endpoint_class: Optional[str] = None) -> Dict[str, Any]:
        return self.rate_limiter.status(endpoint_class)

    def get_circuit_status(self) -> Dict[str, Dict[str, Any]]:
        return self.classifier.circuit_status()

    def get_memory_stats(self) -> Dict[str, Any]:
        return self.memory.stats()

    def get_health_status(self) -> Dict[str, Any]:
        """Cached upstream verdict plus probe history."""
        return {**self.health.stats(), "status": self.health.status().value}

    def health_report(self, session: Optional[Session] = None) -> Dict[str, Any]:
        return HealthCheck(self).check_overall_health(session)

    def reset(self, component: str) -> Dict[str, Any]:
        """
        Operator reset of one stateful component.

        Raises:
            ValueError: for an unknown component name
        """
        if component not in RESET_COMPONENTS:
            raise ValueError(f"Unknown component {component!r}; expected one of {', '.join(RESET_COMPONENTS)}")

        targets = RESET_COMPONENTS[:-1] if component == "all" else (component,)
        for target in targets:
            if target == "rate":
                self.rate_limiter.reset()
            elif target == "circuits":
                self.classifier.reset()
            elif target == "memory":
                self.memory.reset()
            elif target == "health":
                self.health.reset()
            elif target == "merge_detection":
                self.detector.clear()

        logger.warning("component_reset", components=list(targets))
        return {"reset": list(targets)}


def build_services(
    client: CrmClient,
    repository: EntityRepository,
    settings: Settings = default_settings,
    engine: Optional[Engine] = None,
    store: Optional[CounterStore] = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
    memory_sampler: Optional[Callable[[], Tuple[int, int]]] = None,
    rng: Callable[[], float] = random.random,
) -> SyncServices:
    if engine is None:
        from crmsync.db import engine as default_engine

        engine = default_engine
    if store is None:
        store = SqlCounterStore(engine, clock=clock)

    rate_limiter = RateLimiter.from_settings(store, settings, clock=clock)
    breakers = CircuitBreakerRegistry(
        store,
        failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_BREAKER_TIMEOUT,
        clock=clock,
    )
    classifier = ErrorClassifier(breakers, max_retries=settings.MAX_RETRY_ATTEMPTS, rng=rng)
    memory_overrides: Dict[str, Any] = {"clock": clock}
    if memory_sampler is not None:
        memory_overrides["sampler"] = memory_sampler
    memory = MemoryGovernor.from_settings(settings, **memory_overrides)
    health = HealthProbe.from_settings(client.ping, settings, clock=clock)
    processor = RecordProcessor(repository, classifier, sleep=sleep, clock=clock)

    driver = SyncDriver(
        client,
        processor,
        rate_limiter,
        classifier,
        memory,
        health,
        incremental_max_pages=settings.SYNC_INCREMENTAL_MAX_PAGES,
        full_max_pages=settings.SYNC_FULL_MAX_PAGES,
        skip_when_unhealthy=settings.SYNC_SKIP_WHEN_UNHEALTHY,
        run_timeout=settings.SYNC_RUN_TIMEOUT,
        clock=clock,
        sleep=sleep,
    )
    migrator = MergeRelationMigrator(engine, clock=clock)
    detector = MergeDetector.from_settings(settings)
    webhooks = WebhookProcessor(
        processor,
        repository,
        classifier,
        rate_limiter=rate_limiter,
        migrator=migrator,
        detector=detector,
        auto_sync=settings.WEBHOOK_AUTO_SYNC,
        unknown_events=settings.WEBHOOK_UNKNOWN_EVENTS,
        auto_migrate=settings.MERGE_AUTO_MIGRATE,
        strategy=settings.MERGE_STRATEGY,
        clock=clock,
    )

    return SyncServices(
        settings=settings,
        engine=engine,
        store=store,
        rate_limiter=rate_limiter,
        breakers=breakers,
        classifier=classifier,
        memory=memory,
        health=health,
        processor=processor,
        driver=driver,
        migrator=migrator,
        detector=detector,
        webhooks=webhooks,
    )


def load_collaborators(factory_path: str) -> Tuple[CrmClient, EntityRepository]:
    """
    Import "package.module:callable" and call it for (client, repository).

    Raises:
        ValueError: when the path is empty or malformed
    """
    if not factory_path or ":" not in factory_path:
        raise ValueError("COLLABORATORS_FACTORY must look like 'package.module:callable'")
    module_name, attr = factory_path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    client, repository = factory()
    return client, repository


_services: Optional[SyncServices] = None


def configure_services(services: Optional[SyncServices]) -> None:
    global _services
    _services = services


def get_services() -> SyncServices:
    """FastAPI dependency; raises RuntimeError before configure_services()."""
    if _services is None:
        raise RuntimeError("Sync services are not configured")
    return _services

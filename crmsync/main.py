import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crmsync.api import operations, webhooks
from crmsync.core.circuit_breaker import set_notification_callback
from crmsync.core.config import settings
from crmsync.core.errors import capture_message, init_sentry
from crmsync.core.logging_config import configure_logging
from crmsync.core.scheduler import scheduler, start_scheduler
from crmsync.db import create_db_and_tables
from crmsync.services.container import build_services, configure_services, load_collaborators

logger = logging.getLogger(__name__)


def _notify_circuit_change(name: str, old_state: str, new_state: str) -> None:
    level = "warning" if new_state == "open" else "info"
    capture_message(
        "circuit_state_changed",
        level=level,
        context={"operation": name, "old_state": old_state, "new_state": new_state},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    init_sentry(
        settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )
    create_db_and_tables()

    # Startup
    logger.info("=" * 50)
    logger.info(f"{settings.PROJECT_NAME} API Starting")
    logger.info(f"Collaborators: {settings.COLLABORATORS_FACTORY or 'NOT CONFIGURED'}")
    logger.info("=" * 50)

    started_scheduler = False
    if settings.COLLABORATORS_FACTORY:
        client, repository = load_collaborators(settings.COLLABORATORS_FACTORY)
        services = build_services(client, repository, settings)
        configure_services(services)
        set_notification_callback(_notify_circuit_change)

        if settings.RUN_SCHEDULER:
            start_scheduler(services)
            started_scheduler = True
        else:
            logger.info("RUN_SCHEDULER is false - skipping scheduler startup in this process.")
    else:
        logger.warning("COLLABORATORS_FACTORY is not set - operator endpoints return 503.")

    try:
        yield
    finally:
        if started_scheduler:
            scheduler.shutdown(wait=False)
        set_notification_callback(None)
        configure_services(None)


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.include_router(operations.router, prefix=f"{settings.API_V1_STR}/operations", tags=["operations"])
app.include_router(webhooks.router, prefix=settings.API_V1_STR, tags=["webhooks"])


@app.get("/health")
def health():
    """Basic liveness check; the operations report covers the components."""
    return {"status": "healthy"}

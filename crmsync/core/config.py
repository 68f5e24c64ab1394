from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "CRM Sync"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database (shared counters, entity links, task queue)
    DATABASE_URL: str = "sqlite:///./crmsync.db"

    # Error tracking
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Operator endpoints (empty = no token check)
    OPERATIONS_API_TOKEN: str = ""

    # "module:callable" returning (crm_client, entity_repository)
    COLLABORATORS_FACTORY: str = ""
    RUN_SCHEDULER: bool = True

    # Rate limiting (daily token budget per endpoint class)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DAILY_BUDGET: int = 10000
    RATE_LIMIT_ENDPOINT_BUDGETS: Dict[str, int] = {}
    RATE_LIMIT_TOKEN_COSTS: Dict[str, int] = {"files": 2}
    RATE_LIMIT_BASE_DELAY: float = 1.0
    RATE_LIMIT_MAX_DELAY: float = 16.0
    RATE_LIMIT_JITTER: bool = True
    RATE_LIMIT_JITTER_FRACTION: float = 0.2
    RATE_LIMIT_APPROACHING_PERCENT: float = 80.0

    # Error classification / circuit breaker
    MAX_RETRY_ATTEMPTS: int = 3
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT: int = 300  # seconds

    # Memory governor
    MEMORY_THRESHOLD_PERCENT: float = 80.0
    MEMORY_ALERT_PERCENT: float = 85.0
    MEMORY_CRITICAL_PERCENT: float = 95.0
    MEMORY_MIN_BATCH_SIZE: int = 10
    MEMORY_MAX_BATCH_SIZE: int = 500
    MEMORY_LIMIT_MB: int = 0  # 0 = detect (cgroup limit, then physical memory)
    MEMORY_HISTORY_SIZE: int = 100

    # Upstream health probe
    HEALTH_ENABLED: bool = True
    HEALTH_FAILURE_THRESHOLD: int = 3
    HEALTH_DEGRADATION_THRESHOLD_MS: float = 1000.0
    HEALTH_CACHE_TTL: int = 60
    HEALTH_CHECK_INTERVAL: int = 300
    HEALTH_HISTORY_SIZE: int = 50
    HEALTH_LATENCY_WINDOW: int = 5

    # Sync driver
    SYNC_DEFAULT_LIMIT: int = 500
    SYNC_INCREMENTAL_MAX_PAGES: int = 20
    SYNC_FULL_MAX_PAGES: int = 1000
    SYNC_RUN_TIMEOUT: int = 3600  # seconds
    SYNC_SKIP_WHEN_UNHEALTHY: bool = True
    SYNC_SCHEDULE_ENABLED: bool = False
    SYNC_SCHEDULE_MINUTES: int = 60
    SYNC_SCHEDULED_ENTITIES: List[str] = [
        "deals", "persons", "organizations", "activities", "products",
    ]

    # Webhooks and merges
    WEBHOOK_AUTO_SYNC: bool = True
    WEBHOOK_UNKNOWN_EVENTS: str = "update"  # "update" or "reject"
    MERGE_DETECTION_ENABLED: bool = True
    MERGE_DETECTION_WINDOW: int = 30  # seconds
    MERGE_AUTO_MIGRATE: bool = True
    MERGE_STRATEGY: str = "keep_both"

    # Task queue
    TASK_MAX_ATTEMPTS: int = 3
    TASK_STALE_MINUTES: int = 30
    TASK_RETENTION_DAYS: int = 7

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()

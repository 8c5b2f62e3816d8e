"""
Service configuration from environment variables using Pydantic BaseSettings.

All configuration values are loaded from environment variables at startup.
No hardcoded URLs, VAPID keys, or service tokens.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-06: Add polling engine and dispatcher windows (STORY-104)
- 2026-10-09: Add subscription / push failure policies (STORY-107)
- 2026-10-11: Add outbox and worker settings (STORY-109)

TODO:
- None
"""

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings

SubscriptionPolicy = Literal["single_watch", "multi_watch"]
PushFailurePolicy = Literal["one_shot", "retry_transient"]


class Settings(BaseSettings):
    """ChargeWatch settings loaded from environment variables.

    Attributes:
        DATABASE_URL: PostgreSQL connection string (asyncpg).
        REDIS_URL: Redis connection string for the snapshot cache.
        SERVICE_TOKENS: Comma-separated token:client pairs allowed to call
            service-only endpoints (ingestion, sweep, dispatch, outbox).
        CACHE_TTL_S: Snapshot cache TTL in seconds.
        SNAPSHOT_COOLDOWN_MINUTES: Throttle window for unchanged snapshots.
        NOTIFY_DEDUP_WINDOW_S: Per-subscription notification cooldown.
        DEBOUNCE_THRESHOLD: Consecutive target observations before dispatch.
        TASK_TTL_HOURS: Lifetime of a polling task.
        TASK_MAX_POLLS: Maximum sweeps a polling task may consume.
        SWEEP_BATCH_SIZE: Maximum tasks claimed by one sweep.
        DISPATCH_STALE_S: Age after which a dispatching task is reclaimed.
        SUBSCRIPTION_POLICY: single_watch deactivates an endpoint's other
            watches on subscribe; multi_watch leaves them alone.
        PUSH_FAILURE_POLICY: one_shot consumes a subscription on any send
            attempt; retry_transient keeps it after transient failures.
        PUSH_MAX_DELIVERY_FAILURES: Transient failures tolerated under
            retry_transient before the subscription is deactivated.
        REACTIVE_DISPATCH_ENABLED: Enqueue outbox jobs when a stored snapshot
            flips a port from occupied to available.
        OUTBOX_BATCH_SIZE: Jobs claimed per outbox drain.
        OUTBOX_MAX_ATTEMPTS: Attempts before an outbox job is marked failed.
        OUTBOX_MAX_BACKOFF_S: Cap for the outbox retry backoff.
        VAPID_PRIVATE_KEY: VAPID private key used to sign push requests.
        VAPID_PUBLIC_KEY: VAPID public key (served to browsers).
        VAPID_SUBJECT: VAPID "sub" claim.
        PUSH_TIMEOUT_S: Timeout for a single push send.
        FRESHNESS_MAX_AGE_MINUTES: Max snapshot age for a healthy scraper.
        WORKER_INTERVAL_S: Seconds between worker iterations.
        LOG_LEVEL: Root log level name.
    """

    DATABASE_URL: str
    REDIS_URL: str
    SERVICE_TOKENS: str
    CACHE_TTL_S: int = 30

    SNAPSHOT_COOLDOWN_MINUTES: int = 5
    NOTIFY_DEDUP_WINDOW_S: int = 300
    DEBOUNCE_THRESHOLD: int = 2
    TASK_TTL_HOURS: int = 24
    TASK_MAX_POLLS: int = 1440
    SWEEP_BATCH_SIZE: int = 200
    DISPATCH_STALE_S: int = 600

    SUBSCRIPTION_POLICY: SubscriptionPolicy = "single_watch"
    PUSH_FAILURE_POLICY: PushFailurePolicy = "one_shot"
    PUSH_MAX_DELIVERY_FAILURES: int = 3

    REACTIVE_DISPATCH_ENABLED: bool = True
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_MAX_BACKOFF_S: int = 300

    VAPID_PRIVATE_KEY: str = ""
    VAPID_PUBLIC_KEY: str = ""
    VAPID_SUBJECT: str = "mailto:noreply@example.com"
    PUSH_TIMEOUT_S: float = 10.0

    FRESHNESS_MAX_AGE_MINUTES: int = 15
    WORKER_INTERVAL_S: int = 60
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator(
        "SNAPSHOT_COOLDOWN_MINUTES",
        "NOTIFY_DEDUP_WINDOW_S",
        "DEBOUNCE_THRESHOLD",
        "TASK_TTL_HOURS",
        "TASK_MAX_POLLS",
        "SWEEP_BATCH_SIZE",
        "DISPATCH_STALE_S",
        "PUSH_MAX_DELIVERY_FAILURES",
        "OUTBOX_BATCH_SIZE",
        "OUTBOX_MAX_ATTEMPTS",
        "OUTBOX_MAX_BACKOFF_S",
        "WORKER_INTERVAL_S",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        """Validate that windows, thresholds and batch sizes are >= 1."""
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @field_validator("PUSH_TIMEOUT_S")
    @classmethod
    def push_timeout_must_be_positive(cls, v: float) -> float:
        """Validate that push sends are bounded by a positive timeout."""
        if v <= 0:
            raise ValueError("PUSH_TIMEOUT_S must be > 0")
        return v


def get_settings() -> Settings:
    """Create and return a Settings instance.

    Returns:
        Settings: Validated configuration from environment variables.
    """
    return Settings()

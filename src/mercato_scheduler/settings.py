"""Scheduler settings.

All runtime knobs come from the environment (``SCHEDULER_*``) or a ``.env``
file, validated by pydantic-settings at startup.

Fields
──────
queue_strategy      : ``local`` (polling runner) or ``async`` (Celery + Redis)
database_url        : SQLAlchemy URL of the schedule store
redis_url           : Redis holding the repeatable registrations
broker_url          : Celery broker (defaults to ``redis_url``)
poll_interval_ms    : Local runner cycle period
batch_size          : Max due schedules handled per local cycle
sync_batch_size     : Rows read per page during reconciliation
execution_queue     : Celery queue for fired schedule executions
worker_concurrency  : Max simultaneous executions per worker
lock_ttl_seconds    : Expiry of lock rows on databases without advisory locks
enabled_features    : Comma-separated features granted to every scope

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QueueStrategy = Literal["local", "async"]


class SchedulerSettings(BaseSettings):
    """Settings for the scheduling engine."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Strategy ─────────────────────────────────────────────────
    queue_strategy: QueueStrategy = Field(
        default="local",
        validation_alias=AliasChoices("SCHEDULER_QUEUE_STRATEGY", "QUEUE_STRATEGY"),
    )

    # ── Connections ──────────────────────────────────────────────
    database_url: str = "sqlite:///mercato_scheduler.db"
    redis_url: str = "redis://localhost:6379/0"
    broker_url: str | None = None
    result_backend: str | None = None

    # ── Local runner ─────────────────────────────────────────────
    poll_interval_ms: int = Field(default=30_000, gt=0)
    batch_size: int = Field(default=100, gt=0)
    lock_ttl_seconds: int = Field(default=300, gt=0)

    # ── Distributed runner ───────────────────────────────────────
    execution_queue: str = "scheduler-execution"
    worker_concurrency: int = Field(default=5, gt=0)
    sync_batch_size: int = Field(default=500, gt=0)
    registry_prefix: str = "mercato:scheduler"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Entitlements ─────────────────────────────────────────────
    enabled_features: str = ""

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def effective_broker_url(self) -> str:
        return self.broker_url or self.redis_url

    @property
    def is_distributed(self) -> bool:
        return self.queue_strategy == "async"

    @property
    def feature_set(self) -> frozenset[str]:
        return frozenset(
            item.strip() for item in self.enabled_features.split(",") if item.strip()
        )


@lru_cache(maxsize=1)
def get_settings() -> SchedulerSettings:
    """Return the process-wide settings instance."""
    return SchedulerSettings()

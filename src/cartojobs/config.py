from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from cartojobs.jobs.families import TaskFamily


@dataclass(frozen=True)
class FamilySettings:
    """Tuning for one task family's queue and workers."""

    max_attempts: int
    visibility_timeout: float
    handler_timeout: float
    concurrency: int


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CARTOJOBS_", env_file=".env", extra="ignore")

    # API server
    host: str = "0.0.0.0"  # nosec B104 - intentional for container deployments
    port: int = 8080

    # Instance ID for worker identification in logs
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Broker
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    broker_backend: str = "redis"  # redis or memory
    key_prefix: str = "cartojobs"

    # Retention
    job_ttl: int = 86400 * 7  # 7 days
    result_ttl: int = 86400  # 24 hours

    # Polling
    poll_interval: float = 1.0

    # Backoff between retries
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.1
    retry_unclassified: bool = True

    # Import family
    import_max_attempts: int = 3
    import_visibility_timeout: float = 300.0
    import_handler_timeout: float = 240.0
    import_concurrency: int = 1

    # Export family (rendering is slow)
    export_max_attempts: int = 3
    export_visibility_timeout: float = 900.0
    export_handler_timeout: float = 840.0
    export_concurrency: int = 1

    # AI family (expensive upstream calls, retry less)
    ai_max_attempts: int = 2
    ai_visibility_timeout: float = 180.0
    ai_handler_timeout: float = 150.0
    ai_concurrency: int = 2

    # Observability
    enable_metrics: bool = True
    log_level: str = "INFO"
    log_json: bool = True

    def family(self, family: TaskFamily) -> FamilySettings:
        """Settings block for a task family (``import``, ``export``, ``ai``)."""
        prefix = family.value
        return FamilySettings(
            max_attempts=getattr(self, f"{prefix}_max_attempts"),
            visibility_timeout=getattr(self, f"{prefix}_visibility_timeout"),
            handler_timeout=getattr(self, f"{prefix}_handler_timeout"),
            concurrency=getattr(self, f"{prefix}_concurrency"),
        )


"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class StoreConfig(BaseModel):
    """Job store location and lock handling."""

    path: str = Field(default="queue.db", description="SQLite database file")
    busy_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Seconds SQLite waits on a write lock before raising"
    )
    lock_retries: int = Field(
        default=3, ge=1, description="Attempts per store operation on lock contention"
    )


class QueueConfig(BaseModel):
    """Retry policy for new jobs."""

    max_attempts: int = Field(
        default=3, ge=1, description="Claims allowed before a failing job becomes terminal"
    )


class WorkerConfig(BaseModel):
    """Per-invocation processor budget."""

    max_jobs: Optional[int] = Field(
        default=None, ge=0, description="Jobs claimed per invocation (None = until queue empty)"
    )
    max_seconds: Optional[float] = Field(
        default=240.0, gt=0.0, description="No new claim starts after this many seconds"
    )
    job_timeout_s: float = Field(
        default=300.0, gt=0.0, description="Wall-clock ceiling for a single render"
    )
    concurrency: int = Field(default=1, ge=1, le=32, description="Parallel claim loops")
    render_callable: str = Field(
        default="quote_reel.render:dry_run",
        description="Render operation as 'module:function'",
    )


class ReclaimerConfig(BaseModel):
    """Stale claim detection."""

    stale_timeout_s: float = Field(
        default=1800.0, gt=0.0, description="Claims older than this are presumed orphaned"
    )


class RetentionConfig(BaseModel):
    """Operator cleanup thresholds (never applied by the queue itself)."""

    completed_days: float = Field(default=1.0, gt=0.0, description="Keep completed jobs this long")
    failed_days: float = Field(default=7.0, gt=0.0, description="Keep failed jobs this long")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class QuoteReelConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    reclaimer: ReclaimerConfig = Field(default_factory=ReclaimerConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def stale_timeout_exceeds_job_timeout(self) -> "QuoteReelConfig":
        """A live render must never look stale to the reclaimer."""
        if self.reclaimer.stale_timeout_s <= self.worker.job_timeout_s:
            raise ValueError(
                f"reclaimer.stale_timeout_s ({self.reclaimer.stale_timeout_s}) must exceed "
                f"worker.job_timeout_s ({self.worker.job_timeout_s})"
            )
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "QuoteReelConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "QuoteReelConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["store"]["path"] = cli_args["db"]
        if "max_attempts" in cli_args:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if "max_jobs" in cli_args:
            config_dict["worker"]["max_jobs"] = cli_args["max_jobs"]
        if "max_seconds" in cli_args:
            config_dict["worker"]["max_seconds"] = cli_args["max_seconds"]
        if "job_timeout" in cli_args:
            config_dict["worker"]["job_timeout_s"] = cli_args["job_timeout"]
        if "concurrency" in cli_args:
            config_dict["worker"]["concurrency"] = cli_args["concurrency"]
        if "render" in cli_args:
            config_dict["worker"]["render_callable"] = cli_args["render"]
        if "stale_timeout" in cli_args:
            config_dict["reclaimer"]["stale_timeout_s"] = cli_args["stale_timeout"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return QuoteReelConfig.from_dict(config_dict)

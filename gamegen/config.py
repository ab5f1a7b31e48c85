"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
for the generation queue that loads from environment variables with
sensible defaults.
"""

import os
from typing import Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """
    Queue configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===== Worker Pool =====
    QUEUE_MAX_CONCURRENCY: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum number of jobs processed at the same time"
    )

    STAGE_TIMEOUT_SECONDS: float = Field(
        default=300.0,
        gt=0,
        description="Default timeout for a single pipeline stage (5 minutes)"
    )

    INTAKE_POLL_SECONDS: float | None = Field(
        default=None,
        description="Poll the job store for queued jobs written by other producers (disabled when unset)"
    )

    # ===== Retries =====
    GENERATION_RETRIES: int = Field(
        default=2,
        ge=0,
        le=10,
        description="How many fresh jobs may be spawned for a job that failed with a retryable error"
    )

    RETRY_BACKOFF_SECONDS: float = Field(
        default=30.0,
        ge=0,
        description="Delay before the first retry; doubles with every further attempt (0 retries at once)"
    )

    RETRY_ON_TIMEOUT: bool = Field(
        default=True,
        description="Treat stage timeouts as retryable failures"
    )

    @field_validator('RETRY_ON_TIMEOUT', mode='before')
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    # ===== Job Records =====
    JOB_LOG_RETENTION: int = Field(
        default=200,
        ge=1,
        description="Number of log lines kept per job (oldest are dropped)"
    )

    STATUS_LOG_TAIL: int = Field(
        default=20,
        ge=0,
        description="Number of trailing log lines returned by status queries"
    )

    EVENT_BUFFER_SIZE: int = Field(
        default=256,
        ge=1,
        description="Per-subscriber buffer for progress events (oldest dropped on overflow)"
    )

    # ===== Storage =====
    JOB_BACKEND: Literal["memory", "sqlite", "redis"] = Field(
        default="memory",
        description="Persistence backend for job records"
    )

    JOB_DB_PATH: str = Field(
        default="generation_jobs.db",
        description="SQLite database file for job records"
    )

    STORAGE_PATH: str | None = Field(
        default=None,
        description="Persistent volume mount; the job database is placed inside it when set"
    )

    REDIS_URL: str | None = Field(
        default=None,
        description="Redis connection URL for the redis job backend"
    )

    REDIS_KEY_PREFIX: str = Field(
        default="gamegen:jobs",
        description="Key namespace for job records stored in Redis"
    )

    # ===== Generation =====
    GENERATION_PROVIDER: str | None = Field(
        default=None,
        description="Import path 'module:factory' of the generation provider used by the standalone worker"
    )

    # ===== Logging =====
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    LOG_BUFFER_SIZE: int = Field(
        default=1000,
        ge=1,
        description="Number of entries kept in the in-memory log buffer"
    )

    @property
    def job_db_path(self) -> str:
        """Get the job DB path, using persistent storage if available."""
        if self.STORAGE_PATH:
            return os.path.join(self.STORAGE_PATH, os.path.basename(self.JOB_DB_PATH))
        return self.JOB_DB_PATH

    @property
    def redis_configured(self) -> bool:
        """Check if a Redis URL is available."""
        return bool(self.REDIS_URL)


config = AppConfig()

"""Tests for environment-driven configuration."""

import pytest
from pydantic import ValidationError

from gamegen.config import AppConfig


def test_defaults(monkeypatch):
    for name in ("QUEUE_MAX_CONCURRENCY", "STAGE_TIMEOUT_SECONDS", "GENERATION_RETRIES", "JOB_BACKEND",
                 "RETRY_BACKOFF_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    settings = AppConfig(_env_file=None)
    assert settings.QUEUE_MAX_CONCURRENCY == 3
    assert settings.STAGE_TIMEOUT_SECONDS == 300.0
    assert settings.GENERATION_RETRIES == 2
    assert settings.RETRY_BACKOFF_SECONDS == 30.0
    assert settings.JOB_BACKEND == "memory"
    assert settings.INTAKE_POLL_SECONDS is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("QUEUE_MAX_CONCURRENCY", "5")
    monkeypatch.setenv("job_backend", "sqlite")
    settings = AppConfig(_env_file=None)
    assert settings.QUEUE_MAX_CONCURRENCY == 5
    assert settings.JOB_BACKEND == "sqlite"


@pytest.mark.parametrize("raw,expected", [
    ("true", True), ("1", True), ("On", True), ("false", False), ("0", False), ("nope", False),
])
def test_retry_on_timeout_parsing(monkeypatch, raw, expected):
    monkeypatch.setenv("RETRY_ON_TIMEOUT", raw)
    assert AppConfig(_env_file=None).RETRY_ON_TIMEOUT is expected


def test_rejects_out_of_range_values():
    with pytest.raises(ValidationError):
        AppConfig(_env_file=None, QUEUE_MAX_CONCURRENCY=0)
    with pytest.raises(ValidationError):
        AppConfig(_env_file=None, JOB_BACKEND="postgres")
    with pytest.raises(ValidationError):
        AppConfig(_env_file=None, RETRY_BACKOFF_SECONDS=-1)


def test_job_db_path_uses_storage_volume():
    assert AppConfig(_env_file=None, JOB_DB_PATH="jobs.db").job_db_path == "jobs.db"
    settings = AppConfig(_env_file=None, JOB_DB_PATH="data/jobs.db", STORAGE_PATH="/mnt/volume")
    assert settings.job_db_path == "/mnt/volume/jobs.db"


def test_redis_configured():
    assert not AppConfig(_env_file=None, REDIS_URL=None).redis_configured
    assert AppConfig(_env_file=None, REDIS_URL="redis://localhost:6379").redis_configured


def test_retry_settings_reach_the_scheduler():
    from gamegen.jobs import PipelineRegistry, build_controller

    settings = AppConfig(
        _env_file=None, GENERATION_RETRIES=3, RETRY_BACKOFF_SECONDS=12.5, RETRY_ON_TIMEOUT=False
    )
    policy = build_controller(PipelineRegistry(), settings=settings).scheduler.retry_policy
    assert (policy.max_retries, policy.backoff_seconds, policy.retry_on_timeout) == (3, 12.5, False)
    assert policy.delay_for(2) == 25.0

    no_retries = settings.model_copy(update={"GENERATION_RETRIES": 0})
    assert build_controller(PipelineRegistry(), settings=no_retries).scheduler.retry_policy is None

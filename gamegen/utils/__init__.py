"""Utility modules for gamegen."""

from gamegen.utils.logging import (
    get_log_buffer,
    configure_logging,
    LogLevel,
    LogEntry,
    LogBuffer,
    AppLogger,
    QUEUE_SOURCES,
    queue_logger,
    worker_logger,
    pipeline_logger,
    store_logger,
    event_logger,
)

__all__ = [
    "get_log_buffer",
    "configure_logging",
    "LogLevel",
    "LogEntry",
    "LogBuffer",
    "AppLogger",
    "QUEUE_SOURCES",
    "queue_logger",
    "worker_logger",
    "pipeline_logger",
    "store_logger",
    "event_logger",
]

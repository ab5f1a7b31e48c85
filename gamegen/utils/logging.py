"""
Logging for the generation queue.

Each message goes to Python logging and into a bounded in-memory record
of queue activity. The queue controller reads that record for its health
report: recent job failures and per-component warning/error totals,
without external log aggregation.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return getattr(logging, self.name)


@dataclass(frozen=True)
class LogEntry:
    """One message, tagged with the component and job it concerns."""
    level: LogLevel
    message: str
    source: str = "system"
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "source": self.source,
            "job_id": self.job_id,
            "message": self.message,
            "metadata": self.metadata,
        }


class LogBuffer:
    """
    Recent queue activity, newest entries kept.

    Stage executors may log from worker threads, so all access goes
    through a lock. Totals per (source, level) cover the whole process
    lifetime, not just what still fits in the buffer.
    """

    def __init__(self, max_size: int = 1000):
        self._entries: deque = deque(maxlen=max_size)
        self._totals: Counter = Counter()
        self._lock = Lock()

    def add(self, entry: LogEntry):
        with self._lock:
            self._entries.append(entry)
            self._totals[(entry.source, entry.level)] += 1

    def recent(
        self,
        limit: int = 100,
        *,
        min_level: Optional[LogLevel] = None,
        sources: Optional[Iterable[str]] = None,
        job_id: Optional[str] = None
    ) -> List[LogEntry]:
        """Newest first, filtered by severity floor, component and job."""
        with self._lock:
            entries = list(self._entries)

        wanted = set(sources) if sources is not None else None
        floor = min_level.severity if min_level else 0
        matches = []
        for entry in reversed(entries):
            if entry.level.severity < floor:
                continue
            if wanted is not None and entry.source not in wanted:
                continue
            if job_id is not None and entry.job_id != job_id:
                continue
            matches.append(entry)
            if len(matches) == limit:
                break
        return matches

    def totals(self, sources: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, int]]:
        """source -> {level: count} since the process started"""
        wanted = set(sources) if sources is not None else None
        with self._lock:
            items = list(self._totals.items())

        result: Dict[str, Dict[str, int]] = {}
        for (source, level), count in items:
            if wanted is None or source in wanted:
                result.setdefault(source, {})[level.value] = count
        return result

    def resize(self, max_size: int):
        """Change the capacity, keeping the newest entries."""
        with self._lock:
            self._entries = deque(self._entries, maxlen=max_size)


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


class AppLogger:
    """
    Component logger writing to Python logging and the activity buffer.

    Pass ``job_id=...`` to tie a message to a job; other keyword
    arguments are kept as structured metadata.
    """

    def __init__(self, source: str, buffer: Optional[LogBuffer] = None):
        self.source = source
        self._buffer = buffer
        self._logger = logging.getLogger(f"gamegen.{source}")

    @property
    def buffer(self) -> LogBuffer:
        return self._buffer or _log_buffer

    def _log(self, level: LogLevel, message: str, metadata: Dict[str, Any]):
        job_id = metadata.pop("job_id", None)
        self.buffer.add(LogEntry(level, message, self.source, job_id, metadata))

        context = f" [job {job_id}]" if job_id else ""
        extra_msg = f" | {metadata}" if metadata else ""
        self._logger.log(level.severity, f"{message}{context}{extra_msg}")

    def debug(self, message: str, **metadata):
        self._log(LogLevel.DEBUG, message, metadata)

    def info(self, message: str, **metadata):
        self._log(LogLevel.INFO, message, metadata)

    def warning(self, message: str, **metadata):
        self._log(LogLevel.WARNING, message, metadata)

    def error(self, message: str, **metadata):
        self._log(LogLevel.ERROR, message, metadata)


def configure_logging(level: str = "INFO", buffer_size: Optional[int] = None):
    """Set up root logging for standalone processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if buffer_size:
        _log_buffer.resize(buffer_size)


# Loggers for the queue components; QUEUE_SOURCES lists their names
queue_logger = AppLogger("job_queue")
worker_logger = AppLogger("worker")
pipeline_logger = AppLogger("pipeline")
store_logger = AppLogger("job_store")
event_logger = AppLogger("progress")

QUEUE_SOURCES = ("job_queue", "worker", "pipeline", "job_store", "progress")

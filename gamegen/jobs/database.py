"""
Persistence backends for generation job records.

The JobStore wraps one of these. Backends only need per-key
get/put/delete plus listing by state; locking lives in the store.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

import aiosqlite

from gamegen.jobs.errors import QueueUnavailable
from gamegen.jobs.models import JobRecord, JobState


class JobBackend(ABC):
    """Abstract storage for job records (memory, SQLite, Redis)."""

    # Exception types that mean "storage is unavailable"
    unavailable_errors: Tuple[Type[BaseException], ...] = ()

    async def connect(self):
        """Open connections / create schema. No-op by default."""

    async def close(self):
        """Release connections. No-op by default."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def put(self, job: JobRecord):
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def list(
        self,
        state: Optional[JobState] = None,
        limit: Optional[int] = 50,
        offset: int = 0
    ) -> List[JobRecord]:
        """Jobs ordered by creation time (FIFO)."""
        ...

    @abstractmethod
    async def count_by_state(self) -> Dict[JobState, int]:
        ...


class MemoryJobBackend(JobBackend):
    """In-process dict backend. Records are copied in and out."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}

    async def get(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def put(self, job: JobRecord):
        self._jobs[job.id] = job.model_copy(deep=True)

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def list(
        self,
        state: Optional[JobState] = None,
        limit: Optional[int] = 50,
        offset: int = 0
    ) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: j.created_at)
        end = None if limit is None else offset + limit
        return [j.model_copy(deep=True) for j in jobs[offset:end]]

    async def count_by_state(self) -> Dict[JobState, int]:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return counts


_COLUMNS = (
    "job_id, kind, state, payload, progress, current_step, stage_index, logs, "
    "result, error_message, cancel_requested, attempt, retry_of, run_after, "
    "created_at, updated_at, started_at, completed_at"
)


class SQLiteJobBackend(JobBackend):
    """Handles job record storage in SQLite via aiosqlite"""

    unavailable_errors = (aiosqlite.Error, OSError)

    def __init__(self, db_path: str = "generation_jobs.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to database and create tables if needed"""
        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if db_dir and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        await self._create_tables()

    async def _create_tables(self):
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS generation_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT UNIQUE NOT NULL,
                kind TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'queued',

                -- Input data (JSON)
                payload TEXT,

                -- Progress tracking
                progress INTEGER DEFAULT 0,
                current_step TEXT,
                stage_index INTEGER,
                logs TEXT NOT NULL DEFAULT '[]',
                cancel_requested INTEGER DEFAULT 0,

                -- Output data (JSON result on completion, message on failure)
                result TEXT,
                error_message TEXT,

                -- Retry lineage
                attempt INTEGER DEFAULT 1,
                retry_of TEXT,
                run_after TEXT,

                -- Timestamps
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_state
            ON generation_jobs(state, created_at)
        """)

        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise QueueUnavailable(f"Job database {self.db_path} is not connected")
        return self._conn

    @staticmethod
    def _row_to_job(row) -> JobRecord:
        return JobRecord.from_dict({
            "id": row[0],
            "kind": row[1],
            "state": row[2],
            "payload": json.loads(row[3]) if row[3] else None,
            "progress": row[4],
            "current_step": row[5],
            "stage_index": row[6],
            "logs": json.loads(row[7]) if row[7] else [],
            "result": json.loads(row[8]) if row[8] else None,
            "error": row[9],
            "cancel_requested": bool(row[10]),
            "attempt": row[11],
            "retry_of": row[12],
            "run_after": row[13],
            "created_at": row[14],
            "updated_at": row[15],
            "started_at": row[16],
            "completed_at": row[17],
        })

    async def get(self, job_id: str) -> Optional[JobRecord]:
        cursor = await self.conn.execute(
            f"SELECT {_COLUMNS} FROM generation_jobs WHERE job_id = ?",
            (job_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def put(self, job: JobRecord):
        data = job.to_dict()
        await self.conn.execute(f"""
            INSERT INTO generation_jobs ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                state = excluded.state,
                progress = excluded.progress,
                current_step = excluded.current_step,
                stage_index = excluded.stage_index,
                logs = excluded.logs,
                result = excluded.result,
                error_message = excluded.error_message,
                cancel_requested = excluded.cancel_requested,
                run_after = excluded.run_after,
                updated_at = excluded.updated_at,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
        """, (
            data["id"],
            data["kind"],
            data["state"],
            json.dumps(data["payload"]) if data["payload"] is not None else None,
            data["progress"],
            data["current_step"],
            data["stage_index"],
            json.dumps(data["logs"]),
            json.dumps(data["result"]) if data["result"] is not None else None,
            data["error"],
            int(data["cancel_requested"]),
            data["attempt"],
            data["retry_of"],
            data["run_after"],
            data["created_at"],
            data["updated_at"],
            data["started_at"],
            data["completed_at"],
        ))
        await self.conn.commit()

    async def delete(self, job_id: str) -> bool:
        cursor = await self.conn.execute(
            "DELETE FROM generation_jobs WHERE job_id = ?", (job_id,)
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def list(
        self,
        state: Optional[JobState] = None,
        limit: Optional[int] = 50,
        offset: int = 0
    ) -> List[JobRecord]:
        """Get jobs ordered by creation time (FIFO), optionally by state"""
        where = "WHERE state = ?" if state else ""
        params: list = [state.value] if state else []
        params.extend([-1 if limit is None else limit, offset])

        cursor = await self.conn.execute(f"""
            SELECT {_COLUMNS}
            FROM generation_jobs
            {where}
            ORDER BY id ASC
            LIMIT ? OFFSET ?
        """, params)

        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def count_by_state(self) -> Dict[JobState, int]:
        cursor = await self.conn.execute(
            "SELECT state, COUNT(*) FROM generation_jobs GROUP BY state"
        )
        counts = {state: 0 for state in JobState}
        for state, count in await cursor.fetchall():
            counts[JobState(state)] = count
        return counts

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None

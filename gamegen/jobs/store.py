"""
Job store: the only component that persists job state.

Writes to one job are serialized by a per-job asyncio lock; jobs never
share a lock, and reads take none.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from gamegen.jobs.database import JobBackend, MemoryJobBackend
from gamegen.jobs.errors import DuplicateJob, JobNotFound, QueueUnavailable
from gamegen.jobs.models import JobRecord, JobState
from gamegen.utils.logging import store_logger as logger

T = TypeVar("T")

Mutator = Callable[[JobRecord], None]


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class JobStore:
    """
    Atomic access to job records on top of a JobBackend.

    Usage:
        store = JobStore(SQLiteJobBackend("jobs.db"))
        await store.connect()

        await store.create(JobRecord(kind="game_generation", payload={...}))
        job = await store.update(job_id, lambda j: j.append_log("hello"))
    """

    def __init__(self, backend: Optional[JobBackend] = None):
        self.backend = backend or MemoryJobBackend()
        self._locks: Dict[str, _KeyLock] = {}

    async def connect(self):
        await self._call("connect", self.backend.connect())

    async def close(self):
        await self._call("close", self.backend.close())

    async def _call(self, action: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except self.backend.unavailable_errors as e:
            logger.error(f"Job store {action} failed", error=str(e))
            raise QueueUnavailable(f"Job store unavailable during {action}: {e}") from e

    @asynccontextmanager
    async def _job_lock(self, job_id: str):
        entry = self._locks.get(job_id)
        if entry is None:
            entry = self._locks[job_id] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[job_id]

    async def create(self, job: JobRecord) -> JobRecord:
        """Store a new record; refuses ids that already exist."""
        async with self._job_lock(job.id):
            if await self._call("create", self.backend.get(job.id)) is not None:
                raise DuplicateJob(job.id)
            await self._call("create", self.backend.put(job))
        return job.model_copy(deep=True)

    async def put(self, job: JobRecord):
        async with self._job_lock(job.id):
            await self._call("put", self.backend.put(job))

    async def get(self, job_id: str) -> JobRecord:
        job = await self._call("get", self.backend.get(job_id))
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def update(self, job_id: str, mutator: Mutator) -> JobRecord:
        """
        Apply ``mutator`` to the stored record and persist it.

        The mutator works on a private copy; if it raises, nothing is
        written and the exception propagates.
        """
        async with self._job_lock(job_id):
            job = await self._call("update", self.backend.get(job_id))
            if job is None:
                raise JobNotFound(job_id)
            mutator(job)
            await self._call("update", self.backend.put(job))
        return job

    async def delete(self, job_id: str):
        async with self._job_lock(job_id):
            deleted = await self._call("delete", self.backend.delete(job_id))
        if not deleted:
            raise JobNotFound(job_id)

    async def list(
        self,
        state: Optional[JobState] = None,
        limit: Optional[int] = 50,
        offset: int = 0
    ) -> List[JobRecord]:
        return await self._call("list", self.backend.list(state, limit, offset))

    async def list_ids(self, state: JobState) -> List[str]:
        jobs = await self.list(state, limit=None)
        return [job.id for job in jobs]

    async def count_by_state(self) -> Dict[JobState, int]:
        return await self._call("count", self.backend.count_by_state())

"""
Redis storage for generation job records.

Each job is one JSON string; one sorted set per state (scored by
creation time) gives FIFO listing and cheap counts.
"""

import json
from typing import Dict, List, Optional

from redis import RedisError
from redis.asyncio import Redis

from gamegen.jobs.database import JobBackend
from gamegen.jobs.errors import QueueUnavailable
from gamegen.jobs.models import JobRecord, JobState
from gamegen.utils.logging import store_logger as logger


class RedisJobBackend(JobBackend):
    """Job records in Redis (Upstash via rediss:// or a local server)."""

    unavailable_errors = (RedisError, OSError)

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = "gamegen:jobs",
        client: Optional[Redis] = None
    ):
        if client is None and not redis_url:
            raise ValueError(
                "REDIS_URL is required for the redis job backend. "
                "Set up Upstash Redis or local Redis and configure REDIS_URL."
            )
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    async def connect(self):
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=10,
                socket_connect_timeout=10,
                retry_on_timeout=True,
                health_check_interval=30,
            )

        try:
            await self._client.ping()
        except RedisError as e:
            raise QueueUnavailable(f"Failed to connect to Redis: {e}") from e

        host = self.redis_url.split('@')[-1] if self.redis_url and '@' in self.redis_url else 'localhost'
        logger.info("Redis job backend connected", host=host)

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise QueueUnavailable("Redis job backend is not connected")
        return self._client

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:{job_id}"

    def _state_key(self, state: JobState) -> str:
        return f"{self.prefix}:state:{state.value}"

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raw = await self.client.get(self._job_key(job_id))
        return JobRecord.from_dict(json.loads(raw)) if raw else None

    async def put(self, job: JobRecord):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), json.dumps(job.to_dict()))
            for state in JobState:
                if state != job.state:
                    pipe.zrem(self._state_key(state), job.id)
            pipe.zadd(self._state_key(job.state), {job.id: job.created_at.timestamp()})
            await pipe.execute()

    async def delete(self, job_id: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(job_id))
            for state in JobState:
                pipe.zrem(self._state_key(state), job_id)
            results = await pipe.execute()
        return bool(results[0])

    async def _ids_in(self, state: JobState) -> List[tuple]:
        return await self.client.zrange(self._state_key(state), 0, -1, withscores=True)

    async def list(
        self,
        state: Optional[JobState] = None,
        limit: Optional[int] = 50,
        offset: int = 0
    ) -> List[JobRecord]:
        if limit == 0:
            return []
        if state is not None:
            stop = -1 if limit is None else offset + limit - 1
            ids = await self.client.zrange(self._state_key(state), offset, stop)
        else:
            scored = []
            for s in JobState:
                scored.extend(await self._ids_in(s))
            scored.sort(key=lambda item: item[1])
            end = None if limit is None else offset + limit
            ids = [job_id for job_id, _ in scored[offset:end]]

        if not ids:
            return []
        raws = await self.client.mget([self._job_key(job_id) for job_id in ids])
        return [JobRecord.from_dict(json.loads(raw)) for raw in raws if raw]

    async def count_by_state(self) -> Dict[JobState, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            for state in JobState:
                pipe.zcard(self._state_key(state))
            counts = await pipe.execute()
        return dict(zip(JobState, counts))

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

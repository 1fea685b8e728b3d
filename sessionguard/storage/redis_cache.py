from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis

from sessionguard.logging import get_logger
from sessionguard.storage.keys import (
    JOBS_DEAD,
    JOBS_PROCESSING,
    JOBS_SCHEDULED,
    banned_user_key,
    session_key,
    user_sessions_key,
)
from sessionguard.storage.models import LEASE_EXPIRED, Job, LiveSession, to_unix

logger = get_logger(__name__)


def _connect(redis_url: str, socket_timeout: float) -> aioredis.Redis:
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


class RedisSessionCache:
    """Live session records, per-user index and ban markers in Redis.

    ``sess:{sid}`` is a hash that expires at the session's absolute expiry,
    ``user_sess:{uid}`` a sorted set scored by creation time (no TTL; stale
    members are removed by the expiry job) and ``banned_user:{uid}`` a
    persistent flag.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or _connect(redis_url, socket_timeout)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def create_session(self, live: LiveSession) -> None:
        """Write the live record, its expiry and the index entry in one MULTI."""
        key = session_key(live.session_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(key, mapping=live.to_fields())
        pipe.expireat(key, to_unix(live.expires_at))
        pipe.zadd(
            user_sessions_key(live.user_id),
            {live.session_id: live.created_at.timestamp()},
        )
        await pipe.execute()

    async def get_live_session(self, session_id: str) -> Optional[LiveSession]:
        fields = await self.client.hgetall(session_key(session_id))
        if not fields or "user_id" not in fields:
            return None
        return LiveSession.from_fields(session_id, fields)

    async def get_live_sessions(self, session_ids: Sequence[str]) -> List[LiveSession]:
        if not session_ids:
            return []
        pipe = self.client.pipeline(transaction=False)
        for session_id in session_ids:
            pipe.hgetall(session_key(session_id))
        results = await pipe.execute()
        live: List[LiveSession] = []
        for session_id, fields in zip(session_ids, results):
            if fields and "user_id" in fields:
                live.append(LiveSession.from_fields(session_id, fields))
        return live

    async def count_user_sessions(self, user_id: str) -> int:
        return int(await self.client.zcard(user_sessions_key(user_id)))

    async def oldest_user_session(self, user_id: str) -> Optional[str]:
        members = await self.client.zrange(user_sessions_key(user_id), 0, 0)
        return members[0] if members else None

    async def list_user_session_ids(self, user_id: str) -> List[str]:
        return list(await self.client.zrange(user_sessions_key(user_id), 0, -1))

    async def remove_session(self, user_id: str, session_id: str) -> None:
        """Delete the live record and its index entry in one MULTI."""
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(session_key(session_id))
        pipe.zrem(user_sessions_key(user_id), session_id)
        await pipe.execute()

    async def set_ban_marker(self, user_id: str) -> None:
        await self.client.set(banned_user_key(user_id), "1")

    async def clear_ban_marker(self, user_id: str) -> None:
        await self.client.delete(banned_user_key(user_id))

    async def is_banned(self, user_id: str) -> bool:
        return bool(await self.client.exists(banned_user_key(user_id)))

    async def close(self) -> None:
        await self.client.aclose()


class RedisJobQueue:
    """At-least-once delayed job queue on two sorted sets.

    Claiming moves due jobs from ``jobs:scheduled`` to ``jobs:processing``
    scored by a lease deadline. Leases that run out are moved back before
    the next claim with ``attempts`` bumped, so a crashed worker's jobs are
    delivered again until the worker gives up on them. Members that do not
    decode as jobs go straight to ``jobs:dead``.
    """

    _CLAIM_SCRIPT = """
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local lease_until = tonumber(ARGV[3])
local lease_error = ARGV[4]

-- An expired lease counts as a failed attempt
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
for _, member in ipairs(expired) do
  redis.call('ZREM', KEYS[2], member)
  local ok, job = pcall(cjson.decode, member)
  if ok and type(job) == 'table' then
    job['attempts'] = (tonumber(job['attempts']) or 0) + 1
    job['last_error'] = lease_error
    redis.call('ZADD', KEYS[1], now, cjson.encode(job))
  else
    redis.call('LPUSH', KEYS[3], member)
  end
end

local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now, 'LIMIT', 0, limit)
for _, member in ipairs(due) do
  redis.call('ZREM', KEYS[1], member)
  redis.call('ZADD', KEYS[2], lease_until, member)
end
return due
"""

    def __init__(
        self,
        redis_url: str,
        *,
        lease_seconds: int = 60,
        socket_timeout: float = RedisSessionCache.DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.lease_seconds = lease_seconds
        self.client = client or _connect(redis_url, socket_timeout)
        self._claim = self.client.register_script(self._CLAIM_SCRIPT)

    async def push(self, job: Job) -> None:
        await self.client.zadd(JOBS_SCHEDULED, {job.to_json(): job.run_at})

    async def claim_due(self, now: datetime, limit: int) -> List[Job]:
        ts = now.timestamp()
        members = await self._claim(
            keys=[JOBS_SCHEDULED, JOBS_PROCESSING, JOBS_DEAD],
            args=[ts, limit, ts + self.lease_seconds, LEASE_EXPIRED],
        )
        jobs: List[Job] = []
        unreadable: List[str] = []
        for member in members or []:
            try:
                jobs.append(Job.from_json(member))
            except (ValueError, KeyError, TypeError):
                unreadable.append(member)
        if unreadable:
            pipe = self.client.pipeline(transaction=True)
            for member in unreadable:
                pipe.zrem(JOBS_PROCESSING, member)
                pipe.lpush(JOBS_DEAD, member)
            await pipe.execute()
            logger.warning("job_members_unreadable", count=len(unreadable))
        return jobs

    async def ack(self, job: Job) -> None:
        await self.client.zrem(JOBS_PROCESSING, job.raw or job.to_json())

    async def reschedule(self, job: Job, retry: Job) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(JOBS_PROCESSING, job.raw or job.to_json())
        pipe.zadd(JOBS_SCHEDULED, {retry.to_json(): retry.run_at})
        await pipe.execute()

    async def bury(self, job: Job, dead: Job) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(JOBS_PROCESSING, job.raw or job.to_json())
        pipe.lpush(JOBS_DEAD, dead.to_json())
        await pipe.execute()

    async def counts(self) -> Dict[str, int]:
        pipe = self.client.pipeline(transaction=False)
        pipe.zcard(JOBS_SCHEDULED)
        pipe.zcard(JOBS_PROCESSING)
        pipe.llen(JOBS_DEAD)
        scheduled, processing, dead = await pipe.execute()
        return {"scheduled": scheduled, "processing": processing, "dead": dead}

    async def close(self) -> None:
        await self.client.aclose()

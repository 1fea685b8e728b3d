from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from sessionguard.logging import get_logger
from sessionguard.storage.models import Job

logger = get_logger(__name__)

JOB_SESSION_EXPIRE = "session:expire"
JOB_LOGIN_AUDIT = "login:audit"


class SessionExpirePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    user_id: str


class LoginAuditPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str
    user_id: Optional[str] = None
    username: str
    success: bool
    reason: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    occurred_at: datetime


class JobBackend(Protocol):
    async def push(self, job: Job) -> None: ...

    async def claim_due(self, now: datetime, limit: int) -> List[Job]: ...

    async def ack(self, job: Job) -> None: ...

    async def reschedule(self, job: Job, retry: Job) -> None: ...

    async def bury(self, job: Job, dead: Job) -> None: ...

    async def counts(self) -> Dict[str, int]: ...

    async def close(self) -> None: ...


class JobScheduler:
    """Schedules and hands out deferred jobs; delivery is at least once."""

    def __init__(
        self,
        backend: JobBackend,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def schedule_at(
        self, job_type: str, payload: BaseModel | Dict[str, Any], when: datetime
    ) -> str:
        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            payload=_dump(payload),
            run_at=when.timestamp(),
        )
        await self.backend.push(job)
        logger.debug("job_scheduled", job_id=job.id, job_type=job_type, run_at=job.run_at)
        return job.id

    async def enqueue(self, job_type: str, payload: BaseModel | Dict[str, Any]) -> str:
        return await self.schedule_at(job_type, payload, self._clock())

    async def claim_due(self, limit: int, now: Optional[datetime] = None) -> List[Job]:
        return await self.backend.claim_due(now or self._clock(), limit)

    async def ack(self, job: Job) -> None:
        await self.backend.ack(job)

    async def retry(self, job: Job, when: datetime, error: str) -> None:
        retry = Job(
            id=job.id,
            type=job.type,
            payload=job.payload,
            run_at=when.timestamp(),
            attempts=job.attempts + 1,
            last_error=error,
        )
        await self.backend.reschedule(job, retry)

    async def dead_letter(self, job: Job, error: str) -> None:
        dead = Job(
            id=job.id,
            type=job.type,
            payload=job.payload,
            run_at=job.run_at,
            attempts=job.attempts + 1,
            last_error=error,
        )
        await self.backend.bury(job, dead)
        logger.error(
            "job_dead_lettered",
            job_id=job.id,
            job_type=job.type,
            attempts=dead.attempts,
            error=error,
        )

    async def counts(self) -> Dict[str, int]:
        return await self.backend.counts()

    async def close(self) -> None:
        await self.backend.close()


def _dump(payload: BaseModel | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)

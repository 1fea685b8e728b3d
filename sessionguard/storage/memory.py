from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    LEASE_EXPIRED,
    Job,
    LiveSession,
    LoginEvent,
    SessionRecord,
    User,
)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process ledger used for tests and ``USE_MEMORY_STORE`` deployments.

    Mirrors :class:`~sessionguard.storage.postgres.PostgresStore` method for
    method; all mutation happens under one re-entrant lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.login_events: Dict[str, LoginEvent] = {}
        self._data_lock = threading.RLock()

    def ensure_schema(self) -> None:
        return None

    def verify_schema(self) -> None:
        return None

    # users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", field="username")
            user = User(
                id=user_id or str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return user
        return None

    def set_user_banned(self, user_id: str, banned: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_banned = banned
            return True

    # session ledger ----------------------------------------------------

    def create_session_record(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.id in self.sessions:
                raise ConstraintViolation("session already exists", field="id")
            self.sessions[record.id] = record
            return record

    def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session_record(
        self,
        session_id: str,
        actor: str,
        at: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            record = self.sessions.get(session_id)
            if not record or record.revoked_at is not None:
                return False
            if user_id is not None and record.user_id != user_id:
                return False
            record.revoked_at = at or _utcnow()
            record.revoked_by = actor
            return True

    def list_session_records(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            records = [r for r in self.sessions.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at)

    # login audit -------------------------------------------------------

    def record_login_event(self, event: LoginEvent) -> bool:
        with self._data_lock:
            if event.id in self.login_events:
                return False
            self.login_events[event.id] = event
            return True

    def list_login_events(
        self,
        *,
        username: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[LoginEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.login_events.values()
                if (username is None or e.username == username)
                and (user_id is None or e.user_id == user_id)
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]


class MemorySessionCache:
    """In-process stand-in for :class:`RedisSessionCache`.

    Expiry of live records is evaluated lazily against ``clock`` so tests can
    move time forward; the per-user index never expires on its own, matching
    the Redis layout.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _utcnow
        self._records: Dict[str, LiveSession] = {}
        self._index: Dict[str, Dict[str, float]] = {}
        self._banned: set[str] = set()
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _live(self, session_id: str) -> Optional[LiveSession]:
        record = self._records.get(session_id)
        if record and record.expires_at <= self._clock():
            self._records.pop(session_id, None)
            return None
        return record

    async def create_session(self, live: LiveSession) -> None:
        with self._lock:
            self._records[live.session_id] = live
            self._index.setdefault(live.user_id, {})[live.session_id] = (
                live.created_at.timestamp()
            )

    async def get_live_session(self, session_id: str) -> Optional[LiveSession]:
        with self._lock:
            return self._live(session_id)

    async def get_live_sessions(self, session_ids: Sequence[str]) -> List[LiveSession]:
        with self._lock:
            found = (self._live(sid) for sid in session_ids)
            return [record for record in found if record]

    def _ordered(self, user_id: str) -> List[str]:
        members = self._index.get(user_id, {})
        return [sid for sid, _ in sorted(members.items(), key=lambda kv: (kv[1], kv[0]))]

    async def count_user_sessions(self, user_id: str) -> int:
        with self._lock:
            return len(self._index.get(user_id, {}))

    async def oldest_user_session(self, user_id: str) -> Optional[str]:
        with self._lock:
            ordered = self._ordered(user_id)
            return ordered[0] if ordered else None

    async def list_user_session_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return self._ordered(user_id)

    async def remove_session(self, user_id: str, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)
            members = self._index.get(user_id)
            if members is not None:
                members.pop(session_id, None)
                if not members:
                    self._index.pop(user_id, None)

    async def set_ban_marker(self, user_id: str) -> None:
        with self._lock:
            self._banned.add(user_id)

    async def clear_ban_marker(self, user_id: str) -> None:
        with self._lock:
            self._banned.discard(user_id)

    async def is_banned(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._banned

    async def close(self) -> None:
        return None


class MemoryJobQueue:
    """In-process backend with the same claim/lease semantics as RedisJobQueue."""

    def __init__(self, *, lease_seconds: int = 60) -> None:
        self.lease_seconds = lease_seconds
        self.scheduled: Dict[str, Job] = {}
        self.processing: Dict[str, tuple[Job, float]] = {}
        self.dead: List[Job] = []
        self._lock = threading.RLock()

    async def push(self, job: Job) -> None:
        with self._lock:
            self.scheduled[job.id] = job

    async def claim_due(self, now: datetime, limit: int) -> List[Job]:
        ts = now.timestamp()
        with self._lock:
            for job_id, (job, lease_until) in list(self.processing.items()):
                if lease_until <= ts:
                    # An expired lease counts as a failed attempt
                    self.processing.pop(job_id)
                    self.scheduled[job_id] = Job(
                        id=job.id,
                        type=job.type,
                        payload=job.payload,
                        run_at=ts,
                        attempts=job.attempts + 1,
                        last_error=LEASE_EXPIRED,
                    )
            due = sorted(
                (job for job in self.scheduled.values() if job.run_at <= ts),
                key=lambda job: job.run_at,
            )[:limit]
            for job in due:
                self.scheduled.pop(job.id)
                self.processing[job.id] = (job, ts + self.lease_seconds)
            return due

    async def ack(self, job: Job) -> None:
        with self._lock:
            self.processing.pop(job.id, None)

    async def reschedule(self, job: Job, retry: Job) -> None:
        with self._lock:
            self.processing.pop(job.id, None)
            self.scheduled[retry.id] = retry

    async def bury(self, job: Job, dead: Job) -> None:
        with self._lock:
            self.processing.pop(job.id, None)
            self.dead.append(dead)

    async def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "scheduled": len(self.scheduled),
                "processing": len(self.processing),
                "dead": len(self.dead),
            }

    def pending(self, job_type: Optional[str] = None) -> List[Job]:
        with self._lock:
            jobs = list(self.scheduled.values())
        if job_type:
            jobs = [job for job in jobs if job.type == job_type]
        return sorted(jobs, key=lambda job: job.run_at)

    async def close(self) -> None:
        return None

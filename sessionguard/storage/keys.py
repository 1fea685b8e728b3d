"""Fast-store key layout shared by the Redis and in-memory session caches."""

from __future__ import annotations

SESSION_PREFIX = "sess:"
USER_SESSIONS_PREFIX = "user_sess:"
BANNED_USER_PREFIX = "banned_user:"

JOBS_SCHEDULED = "jobs:scheduled"
JOBS_PROCESSING = "jobs:processing"
JOBS_DEAD = "jobs:dead"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_PREFIX}{user_id}"


def banned_user_key(user_id: str) -> str:
    return f"{BANNED_USER_PREFIX}{user_id}"

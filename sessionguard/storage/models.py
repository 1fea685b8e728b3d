from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix(value: str | int | float) -> datetime:
    return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)


def to_unix(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


@dataclass
class ClientMeta:
    """Client context captured at login; opaque to the engine."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    is_banned: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class LiveSession:
    """Fast-store record whose existence makes a session valid.

    Serialized as a flat string hash; timestamps are unix seconds.
    """

    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_fields(self) -> Dict[str, str]:
        return {
            "user_id": self.user_id,
            "created_at": str(to_unix(self.created_at)),
            "expires_at": str(to_unix(self.expires_at)),
            "ip": self.ip or "",
            "user_agent": self.user_agent or "",
        }

    @classmethod
    def from_fields(cls, session_id: str, fields: Dict[str, str]) -> "LiveSession":
        return cls(
            session_id=session_id,
            user_id=fields["user_id"],
            created_at=from_unix(fields.get("created_at") or 0),
            expires_at=from_unix(fields.get("expires_at") or 0),
            ip=fields.get("ip") or None,
            user_agent=fields.get("user_agent") or None,
        )


@dataclass
class SessionRecord:
    """Durable ledger row for one session; revoked at most once."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class LoginEvent:
    id: str
    username: str
    success: bool
    reason: str
    user_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


LEASE_EXPIRED = "lease expired"


@dataclass
class Job:
    """Queued unit of deferred work. ``raw`` is the exact serialized member
    the queue holds, needed to remove the entry once handled."""

    id: str
    type: str
    payload: Dict[str, Any]
    run_at: float
    attempts: int = 0
    last_error: Optional[str] = None
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "type": self.type,
                "payload": self.payload,
                "run_at": self.run_at,
                "attempts": self.attempts,
                "last_error": self.last_error,
            },
            separators=(",", ":"),
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload") or {},
            run_at=float(data.get("run_at") or 0),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
            raw=raw,
        )

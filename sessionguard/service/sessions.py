"""Session lifecycle: login under a per-user cap, validity, revocation and bans.

Two stores are involved. The fast store holds the live record whose presence
is what makes a session valid; the ledger keeps durable history. Writes go to
the fast store first and the ledger second, and a ledger failure never undoes
a fast-store write. Steps run through ``_best_effort`` are logged and reported
as :class:`StepOutcome` on the result instead of failing the call; steps run
through ``_mandatory`` raise :class:`InternalError`.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from sessionguard.config import SessionPolicy
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    InternalError,
    NotFoundError,
    SessionInvalidError,
)
from sessionguard.service.jobs import (
    JOB_LOGIN_AUDIT,
    JOB_SESSION_EXPIRE,
    JobScheduler,
    LoginAuditPayload,
    SessionExpirePayload,
)
from sessionguard.service.passwords import CredentialVerifier
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.models import (
    ClientMeta,
    LiveSession,
    LoginEvent,
    SessionRecord,
    User,
)

logger = get_logger(__name__)

T = TypeVar("T")

ACTOR_USER = "user"
ACTOR_ADMIN_KICK = "admin:kick"
ACTOR_SYSTEM_LIMIT = "system:limit"
ACTOR_SYSTEM_EXPIRE = "system:expire"

REASON_OK = "ok"
REASON_USER_NOT_FOUND = "user_not_found"
REASON_WRONG_PASSWORD = "wrong_password"
REASON_BANNED = "user_banned"
REASON_BANNED_MARKER = "user_banned_marker"
REASON_INTERNAL = "internal_error"

EXPIRE_DONE = "expired"
EXPIRE_ALREADY_HANDLED = "already_handled"


class LoginFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    USER_BANNED = "user_banned"


@dataclass
class StepOutcome:
    step: str
    ok: bool = True
    error: Optional[str] = None


@dataclass
class LoginResult:
    ok: bool
    failure: Optional[LoginFailure] = None
    user: Optional[User] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    token: Optional[str] = None
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def degraded(self) -> List[StepOutcome]:
        return [step for step in self.steps if not step.ok]


@dataclass
class Revocation:
    session_id: str
    actor: str
    ledger_revoked: bool = False
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def degraded(self) -> List[StepOutcome]:
        return [step for step in self.steps if not step.ok]


@dataclass
class KickReport:
    user_id: str
    kicked: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: str
    expires_at: datetime


class SessionCache(Protocol):
    async def create_session(self, live: LiveSession) -> None: ...

    async def get_live_session(self, session_id: str) -> Optional[LiveSession]: ...

    async def get_live_sessions(self, session_ids: List[str]) -> List[LiveSession]: ...

    async def count_user_sessions(self, user_id: str) -> int: ...

    async def oldest_user_session(self, user_id: str) -> Optional[str]: ...

    async def list_user_session_ids(self, user_id: str) -> List[str]: ...

    async def remove_session(self, user_id: str, session_id: str) -> None: ...

    async def set_ban_marker(self, user_id: str) -> None: ...

    async def clear_ban_marker(self, user_id: str) -> None: ...

    async def is_banned(self, user_id: str) -> bool: ...


class SessionLedger(Protocol):
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def set_user_banned(self, user_id: str, banned: bool) -> bool: ...

    def create_session_record(self, record: SessionRecord) -> SessionRecord: ...

    def revoke_session_record(
        self,
        session_id: str,
        actor: str,
        at: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
    ) -> bool: ...

    def record_login_event(self, event: LoginEvent) -> bool: ...


class SessionEngine:
    """Orchestrates session state across the fast store and the ledger.

    Holds no locks of its own; atomicity of grouped fast-store writes comes
    from the cache's transactions. Every public coroutine accepts ``timeout``
    in seconds; when it runs out the operation is cancelled where it stands
    and writes already issued stay in place.
    """

    def __init__(
        self,
        store: SessionLedger,
        cache: SessionCache,
        scheduler: JobScheduler,
        verifier: CredentialVerifier,
        codec: TokenCodec,
        policy: SessionPolicy | None = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.scheduler = scheduler
        self.verifier = verifier
        self.codec = codec
        self.policy = policy or SessionPolicy()
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    async def _bounded(coro: Awaitable[T], timeout: Optional[float]) -> T:
        if timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout)

    async def _mandatory(self, step: str, fn: Callable[..., Any], *args: Any, **log_fields: Any) -> Any:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            self.logger.error(
                "session_step_failed",
                step=step,
                error=str(exc),
                error_type=type(exc).__name__,
                **log_fields,
            )
            raise InternalError(f"{step} failed", detail={"step": step}) from exc

    async def _best_effort(
        self, step: str, fn: Callable[..., Any], *args: Any, **log_fields: Any
    ) -> StepOutcome:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.warning(
                "session_step_degraded",
                step=step,
                error=str(exc),
                error_type=type(exc).__name__,
                **log_fields,
            )
            return StepOutcome(step=step, ok=False, error=str(exc))
        return StepOutcome(step=step)

    # login -------------------------------------------------------------

    async def login(
        self,
        username: str,
        password: str,
        meta: Optional[ClientMeta] = None,
        *,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        return await self._bounded(
            self._login(username, password, meta or ClientMeta()), timeout
        )

    async def _login(self, username: str, password: str, meta: ClientMeta) -> LoginResult:
        steps: List[StepOutcome] = []
        user: Optional[User] = None
        try:
            user = await self._mandatory(
                "user_lookup", self.store.get_user_by_username, username
            )
            if user is None:
                steps.append(await self._audit(username, None, False, REASON_USER_NOT_FOUND, meta))
                return LoginResult(ok=False, failure=LoginFailure.INVALID_CREDENTIALS, steps=steps)

            ban_reason = await self._ban_reason(user, steps)
            if ban_reason:
                steps.append(await self._audit(username, user.id, False, ban_reason, meta))
                return LoginResult(ok=False, failure=LoginFailure.USER_BANNED, user=user, steps=steps)

            if not self.verifier.verify(user.password_hash, password, algo=user.password_algo):
                steps.append(await self._audit(username, user.id, False, REASON_WRONG_PASSWORD, meta))
                return LoginResult(ok=False, failure=LoginFailure.INVALID_CREDENTIALS, steps=steps)

            if self.policy.max_sessions_per_user > 0:
                steps.append(
                    await self._best_effort(
                        "session_cap", self._enforce_session_cap, user.id, user_id=user.id
                    )
                )

            result = await self._open_session(user, meta, steps)
            steps.append(await self._audit(username, user.id, True, REASON_OK, meta))
        except InternalError:
            await self._audit(
                username, user.id if user else None, False, REASON_INTERNAL, meta
            )
            raise

        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=result.session_id,
            degraded_steps=[s.step for s in result.degraded],
        )
        return result

    async def _ban_reason(self, user: User, steps: List[StepOutcome]) -> Optional[str]:
        if user.is_banned:
            # Lazy heal of a missing fast-store marker
            steps.append(
                await self._best_effort(
                    "ban_marker_heal", self.cache.set_ban_marker, user.id, user_id=user.id
                )
            )
            return REASON_BANNED
        marked = await self._mandatory(
            "ban_marker_check", self.cache.is_banned, user.id, user_id=user.id
        )
        return REASON_BANNED_MARKER if marked else None

    async def _enforce_session_cap(self, user_id: str) -> None:
        count = await self.cache.count_user_sessions(user_id)
        if count < self.policy.max_sessions_per_user:
            return
        oldest = await self.cache.oldest_user_session(user_id)
        if not oldest:
            return
        await self.cache.remove_session(user_id, oldest)
        self.store.revoke_session_record(oldest, ACTOR_SYSTEM_LIMIT, self._now())
        self.logger.info(
            "session_evicted",
            user_id=user_id,
            session_id=oldest,
            actor=ACTOR_SYSTEM_LIMIT,
            count=count,
        )

    async def _open_session(
        self, user: User, meta: ClientMeta, steps: List[StepOutcome]
    ) -> LoginResult:
        now = self._now()
        expires_at = now + self.policy.session_ttl
        session_id = str(uuid.uuid4())
        live = LiveSession(
            session_id=session_id,
            user_id=user.id,
            created_at=now,
            expires_at=expires_at,
            ip=meta.ip,
            user_agent=meta.user_agent,
        )
        await self._mandatory(
            "live_record_write", self.cache.create_session, live, user_id=user.id
        )
        await self._mandatory(
            "ledger_insert",
            self.store.create_session_record,
            SessionRecord(
                id=session_id, user_id=user.id, created_at=now, expires_at=expires_at
            ),
            user_id=user.id,
            session_id=session_id,
        )
        steps.append(
            await self._best_effort(
                "expiry_schedule",
                self.scheduler.schedule_at,
                JOB_SESSION_EXPIRE,
                SessionExpirePayload(session_id=session_id, user_id=user.id),
                expires_at,
                session_id=session_id,
            )
        )
        token = await self._mandatory(
            "token_issue", self.codec.issue, user.id, session_id, expires_at
        )
        return LoginResult(
            ok=True,
            user=user,
            session_id=session_id,
            expires_at=expires_at,
            token=token,
            steps=steps,
        )

    async def _audit(
        self,
        username: str,
        user_id: Optional[str],
        success: bool,
        reason: str,
        meta: ClientMeta,
    ) -> StepOutcome:
        payload = LoginAuditPayload(
            event_id=str(uuid.uuid4()),
            user_id=user_id,
            username=username,
            success=success,
            reason=reason,
            ip=meta.ip,
            user_agent=meta.user_agent,
            occurred_at=self._now(),
        )
        return await self._best_effort(
            "audit_enqueue",
            self.scheduler.enqueue,
            JOB_LOGIN_AUDIT,
            payload,
            username=username,
            reason=reason,
        )

    # validity ----------------------------------------------------------

    async def is_valid(
        self, user_id: str, session_id: str, *, timeout: Optional[float] = None
    ) -> bool:
        return await self._bounded(self._is_valid(user_id, session_id), timeout)

    async def _is_valid(self, user_id: str, session_id: str) -> bool:
        if not session_id:
            return False
        live = await self._mandatory(
            "live_record_read", self.cache.get_live_session, session_id, session_id=session_id
        )
        return live is not None and live.user_id == str(user_id)

    async def authenticate(
        self, token: Optional[str], *, timeout: Optional[float] = None
    ) -> AuthContext:
        """Resolve a bearer token to a live session or raise SessionInvalidError."""
        return await self._bounded(self._authenticate(token), timeout)

    async def _authenticate(self, token: Optional[str]) -> AuthContext:
        claims = self.codec.verify(token) if token else None
        if claims is None:
            raise SessionInvalidError("invalid token")
        if not claims.session_id:
            raise SessionInvalidError("token is not bound to a session")
        if not await self._is_valid(claims.user_id, claims.session_id):
            raise SessionInvalidError("session is no longer active")
        return AuthContext(
            user_id=claims.user_id,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
        )

    # revocation --------------------------------------------------------

    async def _revoke(self, user_id: str, session_id: str, actor: str) -> Revocation:
        live = await self._mandatory(
            "live_record_read", self.cache.get_live_session, session_id, session_id=session_id
        )
        if live is not None and live.user_id != str(user_id):
            raise NotFoundError(
                "session not found for user",
                detail={"user_id": user_id, "session_id": session_id},
            )
        await self._mandatory(
            "live_record_remove",
            self.cache.remove_session,
            user_id,
            session_id,
            user_id=user_id,
            session_id=session_id,
        )
        revocation = Revocation(session_id=session_id, actor=actor)

        def _ledger_revoke() -> None:
            revocation.ledger_revoked = self.store.revoke_session_record(
                session_id, actor, self._now(), user_id=user_id
            )

        revocation.steps.append(
            await self._best_effort(
                "ledger_revoke", _ledger_revoke, session_id=session_id, actor=actor
            )
        )
        self.logger.info(
            "session_revoked",
            user_id=user_id,
            session_id=session_id,
            actor=actor,
            ledger_revoked=revocation.ledger_revoked,
        )
        return revocation

    async def logout(
        self, user_id: str, session_id: str, *, timeout: Optional[float] = None
    ) -> Revocation:
        return await self._bounded(self._revoke(user_id, session_id, ACTOR_USER), timeout)

    async def kick_session(
        self, user_id: str, session_id: str, *, timeout: Optional[float] = None
    ) -> Revocation:
        return await self._bounded(
            self._revoke(user_id, session_id, ACTOR_ADMIN_KICK), timeout
        )

    async def kick_all_sessions(
        self, user_id: str, *, timeout: Optional[float] = None
    ) -> KickReport:
        return await self._bounded(self._kick_all(user_id), timeout)

    async def _kick_all(self, user_id: str) -> KickReport:
        session_ids = await self._mandatory(
            "index_read", self.cache.list_user_session_ids, user_id, user_id=user_id
        )
        report = KickReport(user_id=user_id)
        for session_id in session_ids:
            try:
                await self._revoke(user_id, session_id, ACTOR_ADMIN_KICK)
            except InternalError as exc:
                report.failed[session_id] = exc.message
                continue
            report.kicked.append(session_id)
        if report.failed:
            self.logger.warning(
                "kick_all_partial_failure",
                user_id=user_id,
                kicked=len(report.kicked),
                failed=list(report.failed),
            )
        return report

    async def list_active_sessions(
        self, user_id: str, *, timeout: Optional[float] = None
    ) -> List[LiveSession]:
        return await self._bounded(self._list_active(user_id), timeout)

    async def _list_active(self, user_id: str) -> List[LiveSession]:
        session_ids = await self._mandatory(
            "index_read", self.cache.list_user_session_ids, user_id, user_id=user_id
        )
        # Index members whose live record expired are skipped
        return await self._mandatory(
            "live_record_read", self.cache.get_live_sessions, session_ids, user_id=user_id
        )

    # bans --------------------------------------------------------------

    async def ban_user(
        self, user_id: str, *, timeout: Optional[float] = None
    ) -> KickReport:
        return await self._bounded(self._ban(user_id), timeout)

    async def _ban(self, user_id: str) -> KickReport:
        # Durable flag and marker must both be visible before sessions go,
        # so a racing login is refused.
        found = await self._mandatory(
            "ban_flag_write", self.store.set_user_banned, user_id, True, user_id=user_id
        )
        if not found:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._mandatory(
            "ban_marker_write", self.cache.set_ban_marker, user_id, user_id=user_id
        )
        report = await self._kick_all(user_id)
        self.logger.info(
            "user_banned", user_id=user_id, kicked=len(report.kicked), failed=len(report.failed)
        )
        if report.failed:
            raise InternalError(
                "ban applied but some sessions could not be revoked",
                detail={"failed": sorted(report.failed)},
            )
        return report

    async def unban_user(self, user_id: str, *, timeout: Optional[float] = None) -> None:
        await self._bounded(self._unban(user_id), timeout)

    async def _unban(self, user_id: str) -> None:
        found = await self._mandatory(
            "ban_flag_write", self.store.set_user_banned, user_id, False, user_id=user_id
        )
        if not found:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._mandatory(
            "ban_marker_clear", self.cache.clear_ban_marker, user_id, user_id=user_id
        )
        self.logger.info("user_unbanned", user_id=user_id)

    # reconciliation ----------------------------------------------------

    async def expire_session(self, session_id: str, user_id: str) -> str:
        """Handle a deferred expiry job. Safe to run late, twice, or after logout."""
        live = await self._mandatory(
            "live_record_read", self.cache.get_live_session, session_id, session_id=session_id
        )
        now = self._now()
        if live is None:
            # Logout, kick or native TTL got here first; both steps below are
            # no-ops after a logout or kick.
            await self._mandatory(
                "index_cleanup", self.cache.remove_session, user_id, session_id
            )
            await self._mandatory(
                "ledger_revoke",
                self.store.revoke_session_record,
                session_id,
                ACTOR_SYSTEM_EXPIRE,
                now,
            )
            return EXPIRE_ALREADY_HANDLED
        await self._mandatory(
            "live_record_remove", self.cache.remove_session, user_id, session_id
        )
        await self._mandatory(
            "ledger_revoke",
            self.store.revoke_session_record,
            session_id,
            ACTOR_SYSTEM_EXPIRE,
            now,
        )
        self.logger.info(
            "session_expired", user_id=user_id, session_id=session_id, actor=ACTOR_SYSTEM_EXPIRE
        )
        return EXPIRE_DONE

    async def record_login_event(self, payload: LoginAuditPayload) -> bool:
        """Handle an audit job; duplicates of the same event are dropped."""
        event = LoginEvent(
            id=payload.event_id,
            user_id=payload.user_id,
            username=payload.username,
            success=payload.success,
            reason=payload.reason,
            ip=payload.ip,
            user_agent=payload.user_agent,
            created_at=payload.occurred_at,
        )
        return await self._mandatory(
            "audit_insert", self.store.record_login_event, event, event_id=event.id
        )

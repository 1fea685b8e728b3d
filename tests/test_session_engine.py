"""Unit tests for the session engine.

Tests for:
- Login outcomes and audit reasons
- Concurrency cap and eviction of the oldest session
- Logout, kick and validity checks
- Ban / unban ordering and effects
- Best-effort steps versus mandatory failures
- Cancellation leaving writes in place
"""

import asyncio
from datetime import timedelta

import pytest

from sessionguard.config import SessionPolicy
from sessionguard.service.errors import (
    InternalError,
    NotFoundError,
    SessionInvalidError,
)
from sessionguard.service.jobs import JOB_LOGIN_AUDIT, JOB_SESSION_EXPIRE
from sessionguard.service.sessions import (
    ACTOR_ADMIN_KICK,
    ACTOR_SYSTEM_LIMIT,
    ACTOR_USER,
    LoginFailure,
    SessionEngine,
)
from sessionguard.storage.keys import session_key, user_sessions_key
from sessionguard.storage.memory import MemorySessionCache, MemoryStore
from sessionguard.storage.models import ClientMeta


class BrokenScheduler:
    async def schedule_at(self, job_type, payload, when):
        raise ConnectionError("queue unavailable")

    async def enqueue(self, job_type, payload):
        raise ConnectionError("queue unavailable")


class HangingScheduler:
    def __init__(self):
        self.never = asyncio.Event()

    async def schedule_at(self, job_type, payload, when):
        await self.never.wait()

    async def enqueue(self, job_type, payload):
        return "audit-job"


class WriteFailingCache(MemorySessionCache):
    async def create_session(self, live):
        raise ConnectionError("fast store down")


class RemoveFailingCache(MemorySessionCache):
    def __init__(self, clock, failing_ids=()):
        super().__init__(clock=clock)
        self.failing_ids = set(failing_ids)

    async def remove_session(self, user_id, session_id):
        if session_id in self.failing_ids:
            raise ConnectionError("fast store timeout")
        await super().remove_session(user_id, session_id)


class LedgerInsertFailingStore(MemoryStore):
    def create_session_record(self, record):
        raise ConnectionError("ledger down")


class LedgerRevokeFailingStore(MemoryStore):
    def revoke_session_record(self, session_id, actor, at=None, *, user_id=None):
        raise ConnectionError("ledger down")


def _audit_reasons(queue):
    return [job.payload["reason"] for job in queue.pending(JOB_LOGIN_AUDIT)]


class TestLogin:
    """Login outcomes."""

    async def test_successful_login_creates_live_record_index_and_ledger_row(
        self, engine, alice, alice_password, cache, memory_store, clock
    ):
        result = await engine.login(
            "alice", alice_password, ClientMeta(ip="10.0.0.1", user_agent="pytest")
        )

        assert result.ok
        assert result.user.id == alice.id
        assert result.expires_at == clock() + timedelta(hours=1)
        live = await cache.get_live_session(result.session_id)
        assert live is not None
        assert live.user_id == alice.id
        assert live.ip == "10.0.0.1"
        assert live.user_agent == "pytest"
        assert result.session_id in await cache.list_user_session_ids(alice.id)
        record = memory_store.get_session_record(result.session_id)
        assert record.user_id == alice.id
        assert record.revoked_at is None
        assert result.degraded == []

    async def test_success_schedules_expiry_at_expiry_and_audits(
        self, engine, alice, alice_password, queue
    ):
        result = await engine.login("alice", alice_password)

        expiry_jobs = queue.pending(JOB_SESSION_EXPIRE)
        assert len(expiry_jobs) == 1
        assert expiry_jobs[0].payload == {"session_id": result.session_id, "user_id": alice.id}
        assert expiry_jobs[0].run_at == result.expires_at.timestamp()
        assert _audit_reasons(queue) == ["ok"]
        audit = queue.pending(JOB_LOGIN_AUDIT)[0].payload
        assert audit["success"] is True
        assert audit["user_id"] == alice.id

    async def test_unknown_user_is_invalid_credentials(self, engine, queue):
        result = await engine.login("nobody", "whatever")

        assert not result.ok
        assert result.failure is LoginFailure.INVALID_CREDENTIALS
        assert _audit_reasons(queue) == ["user_not_found"]
        assert queue.pending(JOB_LOGIN_AUDIT)[0].payload["user_id"] is None

    async def test_wrong_password_is_indistinguishable_from_unknown_user(
        self, engine, alice, queue, cache
    ):
        result = await engine.login("alice", "not-the-password")

        assert result.failure is LoginFailure.INVALID_CREDENTIALS
        assert _audit_reasons(queue) == ["wrong_password"]
        assert await cache.count_user_sessions(alice.id) == 0

    async def test_durable_ban_blocks_login_and_restores_marker(
        self, engine, alice, alice_password, memory_store, cache, queue
    ):
        memory_store.set_user_banned(alice.id, True)

        result = await engine.login("alice", alice_password)

        assert result.failure is LoginFailure.USER_BANNED
        assert _audit_reasons(queue) == ["user_banned"]
        assert await cache.is_banned(alice.id)

    async def test_fast_store_marker_alone_blocks_login(
        self, engine, alice, alice_password, cache, queue
    ):
        await cache.set_ban_marker(alice.id)

        result = await engine.login("alice", alice_password)

        assert result.failure is LoginFailure.USER_BANNED
        assert _audit_reasons(queue) == ["user_banned_marker"]

    async def test_ban_is_checked_before_password(self, engine, alice, cache, queue):
        await cache.set_ban_marker(alice.id)

        result = await engine.login("alice", "wrong")

        assert result.failure is LoginFailure.USER_BANNED

    async def test_issued_token_round_trips_to_user_and_session(
        self, engine, alice, alice_password, codec
    ):
        result = await engine.login("alice", alice_password)

        claims = codec.verify(result.token)
        assert (claims.user_id, claims.session_id) == (alice.id, result.session_id)
        ctx = await engine.authenticate(result.token)
        assert ctx.user_id == alice.id
        assert ctx.session_id == result.session_id


class TestSessionCap:
    """Eviction of the oldest session at the cap."""

    async def test_third_login_evicts_first_session(
        self, engine, alice, alice_password, clock
    ):
        first = await engine.login("alice", alice_password)
        clock.advance(seconds=1)
        second = await engine.login("alice", alice_password)
        clock.advance(seconds=1)
        third = await engine.login("alice", alice_password)

        assert await engine.is_valid(alice.id, first.session_id) is False
        assert await engine.is_valid(alice.id, second.session_id) is True
        assert await engine.is_valid(alice.id, third.session_id) is True

    async def test_n_plus_one_logins_leave_n_index_entries(
        self, memory_store, cache, scheduler, verifier, codec, clock, alice, alice_password
    ):
        engine = SessionEngine(
            memory_store,
            cache,
            scheduler,
            verifier,
            codec,
            SessionPolicy(session_ttl=timedelta(minutes=30), max_sessions_per_user=3),
            clock=clock,
        )
        session_ids = []
        for _ in range(4):
            result = await engine.login("alice", alice_password)
            session_ids.append(result.session_id)
            clock.advance(seconds=5)

        remaining = await cache.list_user_session_ids(alice.id)
        assert remaining == session_ids[1:]
        evicted = memory_store.get_session_record(session_ids[0])
        assert evicted.revoked_by == ACTOR_SYSTEM_LIMIT

    async def test_zero_cap_disables_eviction(
        self, memory_store, cache, scheduler, verifier, codec, clock, alice, alice_password
    ):
        engine = SessionEngine(
            memory_store,
            cache,
            scheduler,
            verifier,
            codec,
            SessionPolicy(max_sessions_per_user=0),
            clock=clock,
        )
        for _ in range(5):
            await engine.login("alice", alice_password)
            clock.advance(seconds=1)

        assert await cache.count_user_sessions(alice.id) == 5

    async def test_eviction_failure_does_not_abort_login(
        self, memory_store, scheduler, verifier, codec, clock, alice, alice_password
    ):
        cache = RemoveFailingCache(clock)
        engine = SessionEngine(
            memory_store,
            cache,
            scheduler,
            verifier,
            codec,
            SessionPolicy(max_sessions_per_user=1),
            clock=clock,
        )
        first = await engine.login("alice", alice_password)
        cache.failing_ids.add(first.session_id)
        clock.advance(seconds=1)

        second = await engine.login("alice", alice_password)

        assert second.ok
        assert [step.step for step in second.degraded] == ["session_cap"]
        assert await engine.is_valid(alice.id, second.session_id)


class TestBestEffortAndMandatorySteps:
    """Accepted inconsistencies versus InternalError."""

    async def test_queue_outage_does_not_fail_login(
        self, memory_store, cache, verifier, codec, policy, clock, alice, alice_password
    ):
        engine = SessionEngine(
            memory_store, cache, BrokenScheduler(), verifier, codec, policy, clock=clock
        )

        result = await engine.login("alice", alice_password)

        assert result.ok
        assert [step.step for step in result.degraded] == ["expiry_schedule", "audit_enqueue"]
        assert await engine.is_valid(alice.id, result.session_id)

    async def test_live_record_write_failure_is_internal_error_without_ledger_row(
        self, memory_store, scheduler, verifier, codec, policy, clock, alice, alice_password, queue
    ):
        engine = SessionEngine(
            memory_store, WriteFailingCache(clock=clock), scheduler, verifier, codec, policy, clock=clock
        )

        with pytest.raises(InternalError):
            await engine.login("alice", alice_password)

        assert memory_store.list_session_records(alice.id) == []
        assert _audit_reasons(queue) == ["internal_error"]

    async def test_ledger_insert_failure_leaves_live_record_visible(
        self, cache, scheduler, verifier, codec, policy, clock, alice_password
    ):
        store = LedgerInsertFailingStore()
        pwd_hash, algo = verifier.hash(alice_password)
        user = store.create_user("alice", pwd_hash, password_algo=algo)
        engine = SessionEngine(store, cache, scheduler, verifier, codec, policy, clock=clock)

        with pytest.raises(InternalError):
            await engine.login("alice", alice_password)

        session_ids = await cache.list_user_session_ids(user.id)
        assert len(session_ids) == 1
        assert await engine.is_valid(user.id, session_ids[0])


class TestLogoutAndValidity:
    """Logout, kick and validity checks."""

    async def test_never_issued_session_is_invalid(self, engine, alice):
        assert await engine.is_valid(alice.id, "no-such-session") is False

    async def test_session_of_another_user_is_invalid(
        self, engine, alice, alice_password
    ):
        result = await engine.login("alice", alice_password)

        assert await engine.is_valid("someone-else", result.session_id) is False

    async def test_logout_invalidates_and_is_idempotent(
        self, engine, alice, alice_password, memory_store, cache
    ):
        result = await engine.login("alice", alice_password)

        first = await engine.logout(alice.id, result.session_id)
        second = await engine.logout(alice.id, result.session_id)

        assert first.ledger_revoked is True
        assert second.ledger_revoked is False
        assert await engine.is_valid(alice.id, result.session_id) is False
        assert await engine.is_valid(alice.id, result.session_id) is False
        assert result.session_id not in await cache.list_user_session_ids(alice.id)
        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_USER

    async def test_ledger_failure_on_logout_is_reported_not_raised(
        self, cache, scheduler, verifier, codec, policy, clock, alice_password
    ):
        store = LedgerRevokeFailingStore()
        pwd_hash, algo = verifier.hash(alice_password)
        user = store.create_user("alice", pwd_hash, password_algo=algo)
        engine = SessionEngine(store, cache, scheduler, verifier, codec, policy, clock=clock)
        result = await engine.login("alice", alice_password)

        revocation = await engine.logout(user.id, result.session_id)

        assert [step.step for step in revocation.degraded] == ["ledger_revoke"]
        assert await engine.is_valid(user.id, result.session_id) is False

    async def test_kick_session_uses_admin_actor(
        self, engine, alice, alice_password, memory_store
    ):
        result = await engine.login("alice", alice_password)

        await engine.kick_session(alice.id, result.session_id)

        assert await engine.is_valid(alice.id, result.session_id) is False
        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_ADMIN_KICK

    async def test_kick_addressed_to_wrong_user_is_refused(
        self, engine, alice, alice_password, memory_store, cache, verifier
    ):
        bob = memory_store.create_user("bob", verifier.hash("bobs-password-1")[0])
        result = await engine.login("alice", alice_password)

        with pytest.raises(NotFoundError):
            await engine.kick_session(bob.id, result.session_id)

        assert await engine.is_valid(alice.id, result.session_id) is True
        assert await cache.list_user_session_ids(alice.id) == [result.session_id]
        assert memory_store.get_session_record(result.session_id).revoked_at is None

    async def test_kick_of_expired_foreign_session_leaves_owner_ledger_alone(
        self, engine, alice, alice_password, memory_store, verifier, clock
    ):
        bob = memory_store.create_user("bob", verifier.hash("bobs-password-1")[0])
        result = await engine.login("alice", alice_password)
        clock.advance(hours=2)

        revocation = await engine.kick_session(bob.id, result.session_id)

        assert revocation.ledger_revoked is False
        assert memory_store.get_session_record(result.session_id).revoked_at is None

    async def test_first_revocation_actor_wins(
        self, engine, alice, alice_password, memory_store
    ):
        result = await engine.login("alice", alice_password)

        await engine.logout(alice.id, result.session_id)
        await engine.kick_session(alice.id, result.session_id)

        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_USER

    async def test_authenticate_rejects_logged_out_and_unbound_tokens(
        self, engine, alice, alice_password, unbound_token
    ):
        result = await engine.login("alice", alice_password)
        await engine.logout(alice.id, result.session_id)

        with pytest.raises(SessionInvalidError):
            await engine.authenticate(result.token)
        with pytest.raises(SessionInvalidError):
            await engine.authenticate(unbound_token(alice.id))
        with pytest.raises(SessionInvalidError):
            await engine.authenticate("garbage")
        with pytest.raises(SessionInvalidError):
            await engine.authenticate(None)


class TestKickAll:
    """Bulk kicks collect partial failures."""

    async def test_kick_all_removes_every_session(
        self, engine, alice, alice_password, cache, clock
    ):
        first = await engine.login("alice", alice_password)
        clock.advance(seconds=1)
        second = await engine.login("alice", alice_password)

        report = await engine.kick_all_sessions(alice.id)

        assert report.ok
        assert report.kicked == [first.session_id, second.session_id]
        assert await cache.count_user_sessions(alice.id) == 0

    async def test_kick_all_continues_past_failures(
        self, memory_store, scheduler, verifier, codec, policy, clock, alice, alice_password
    ):
        cache = RemoveFailingCache(clock)
        engine = SessionEngine(
            memory_store, cache, scheduler, verifier, codec, policy, clock=clock
        )
        first = await engine.login("alice", alice_password)
        clock.advance(seconds=1)
        second = await engine.login("alice", alice_password)
        cache.failing_ids.add(first.session_id)

        report = await engine.kick_all_sessions(alice.id)

        assert report.kicked == [second.session_id]
        assert list(report.failed) == [first.session_id]
        assert await engine.is_valid(alice.id, second.session_id) is False


class TestBanUnban:
    """Ban and unban."""

    async def test_ban_blocks_login_and_invalidates_sessions(
        self, engine, alice, alice_password, memory_store, cache
    ):
        active = await engine.login("alice", alice_password)

        report = await engine.ban_user(alice.id)

        assert report.kicked == [active.session_id]
        assert memory_store.get_user(alice.id).is_banned
        assert await cache.is_banned(alice.id)
        assert await engine.is_valid(alice.id, active.session_id) is False
        result = await engine.login("alice", alice_password)
        assert result.failure is LoginFailure.USER_BANNED

    async def test_unban_allows_login_but_restores_nothing(
        self, engine, alice, alice_password, cache
    ):
        before = await engine.login("alice", alice_password)
        await engine.ban_user(alice.id)

        await engine.unban_user(alice.id)

        assert not await cache.is_banned(alice.id)
        assert await engine.is_valid(alice.id, before.session_id) is False
        after = await engine.login("alice", alice_password)
        assert after.ok

    async def test_ban_unknown_user(self, engine):
        with pytest.raises(NotFoundError):
            await engine.ban_user("missing-user")
        with pytest.raises(NotFoundError):
            await engine.unban_user("missing-user")

    async def test_ban_with_failed_kick_raises_but_stays_banned(
        self, memory_store, scheduler, verifier, codec, policy, clock, alice, alice_password
    ):
        cache = RemoveFailingCache(clock)
        engine = SessionEngine(
            memory_store, cache, scheduler, verifier, codec, policy, clock=clock
        )
        result = await engine.login("alice", alice_password)
        cache.failing_ids.add(result.session_id)

        with pytest.raises(InternalError):
            await engine.ban_user(alice.id)

        assert memory_store.get_user(alice.id).is_banned
        assert await cache.is_banned(alice.id)


class TestListActiveSessions:
    async def test_expired_records_are_skipped(
        self, engine, alice, alice_password, cache, clock
    ):
        old = await engine.login("alice", alice_password)
        clock.advance(minutes=45)
        fresh = await engine.login("alice", alice_password)
        clock.advance(minutes=20)

        sessions = await engine.list_active_sessions(alice.id)

        assert [s.session_id for s in sessions] == [fresh.session_id]
        # The stale index entry is still there until the expiry job runs
        assert old.session_id in await cache.list_user_session_ids(alice.id)

    async def test_metadata_is_returned(self, engine, alice, alice_password):
        await engine.login("alice", alice_password, ClientMeta(ip="192.0.2.7", user_agent="cli"))

        sessions = await engine.list_active_sessions(alice.id)

        assert [(s.ip, s.user_agent) for s in sessions] == [("192.0.2.7", "cli")]


class TestCancellation:
    """Deadlines cancel in place without compensation."""

    async def test_cancelled_login_leaves_live_record_behind(
        self, memory_store, cache, verifier, codec, policy, clock, alice, alice_password
    ):
        engine = SessionEngine(
            memory_store, cache, HangingScheduler(), verifier, codec, policy, clock=clock
        )

        with pytest.raises(asyncio.TimeoutError):
            await engine.login("alice", alice_password, timeout=0.05)

        session_ids = await cache.list_user_session_ids(alice.id)
        assert len(session_ids) == 1
        assert await cache.get_live_session(session_ids[0]) is not None
        assert memory_store.get_session_record(session_ids[0]) is not None

    async def test_operations_finish_within_generous_deadline(
        self, engine, alice, alice_password
    ):
        result = await engine.login("alice", alice_password, timeout=5)

        assert await engine.is_valid(alice.id, result.session_id, timeout=5)
        await engine.logout(alice.id, result.session_id, timeout=5)


def test_key_spaces_do_not_collide():
    assert session_key("x") != user_sessions_key("x")
    assert session_key("x").startswith("sess:")
    assert user_sessions_key("x").startswith("user_sess:")

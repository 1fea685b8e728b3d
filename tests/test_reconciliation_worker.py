"""Tests for the reconciliation worker and its job handlers."""

from datetime import timedelta

from sessionguard.service.jobs import (
    JOB_LOGIN_AUDIT,
    JOB_SESSION_EXPIRE,
    JobScheduler,
    LoginAuditPayload,
)
from sessionguard.service.sessions import (
    ACTOR_SYSTEM_EXPIRE,
    ACTOR_USER,
    EXPIRE_ALREADY_HANDLED,
    EXPIRE_DONE,
)
from sessionguard.service.worker import ReconciliationWorker
from sessionguard.storage.memory import MemoryJobQueue
from sessionguard.storage.models import LEASE_EXPIRED, ClientMeta


class TestExpiryHandler:
    """Deferred expiry is idempotent and tolerant of races."""

    async def test_expiry_after_logout_is_already_handled(
        self, engine, worker, alice, alice_password, memory_store
    ):
        result = await engine.login("alice", alice_password)
        await engine.logout(alice.id, result.session_id)

        outcome = await worker.handle_session_expire(
            {"session_id": result.session_id, "user_id": alice.id}
        )

        assert outcome == EXPIRE_ALREADY_HANDLED
        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_USER

    async def test_expiry_after_native_ttl_cleans_index_and_ledger(
        self, engine, worker, alice, alice_password, memory_store, cache, clock
    ):
        result = await engine.login("alice", alice_password)
        clock.advance(hours=1, seconds=1)

        outcome = await worker.handle_session_expire(
            {"session_id": result.session_id, "user_id": alice.id}
        )

        assert outcome == EXPIRE_ALREADY_HANDLED
        assert await cache.list_user_session_ids(alice.id) == []
        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_SYSTEM_EXPIRE

    async def test_expiry_of_live_session_removes_it(
        self, engine, worker, alice, alice_password, memory_store, cache
    ):
        result = await engine.login("alice", alice_password)

        outcome = await worker.handle_session_expire(
            {"session_id": result.session_id, "user_id": alice.id}
        )
        again = await worker.handle_session_expire(
            {"session_id": result.session_id, "user_id": alice.id}
        )

        assert outcome == EXPIRE_DONE
        assert again == EXPIRE_ALREADY_HANDLED
        assert await engine.is_valid(alice.id, result.session_id) is False
        assert memory_store.get_session_record(result.session_id).revoked_by == ACTOR_SYSTEM_EXPIRE


class TestAuditHandler:
    async def test_audit_job_inserts_one_fact_even_when_delivered_twice(
        self, worker, memory_store, clock
    ):
        payload = LoginAuditPayload(
            event_id="evt-1",
            user_id=None,
            username="ghost",
            success=False,
            reason="user_not_found",
            ip="203.0.113.9",
            user_agent="curl",
            occurred_at=clock(),
        ).model_dump(mode="json")

        assert await worker.handle_login_audit(payload) is True
        assert await worker.handle_login_audit(payload) is False

        events = memory_store.list_login_events(username="ghost")
        assert len(events) == 1
        assert events[0].reason == "user_not_found"
        assert events[0].ip == "203.0.113.9"


class TestWorkerLoop:
    """Claiming, retries and dead letters."""

    async def test_drain_runs_due_jobs_only(
        self, engine, worker, alice, alice_password, queue, memory_store, clock
    ):
        await engine.login("alice", alice_password, ClientMeta(ip="10.1.1.1"))
        await engine.login("nobody", "x")

        processed = await worker.drain()

        assert processed == 2
        reasons = sorted(e.reason for e in memory_store.list_login_events())
        assert reasons == ["ok", "user_not_found"]
        # The expiry job is not due yet
        assert [job.type for job in queue.pending()] == [JOB_SESSION_EXPIRE]

        clock.advance(hours=1)
        assert await worker.drain() == 1
        assert queue.pending() == []
        assert await queue.counts() == {"scheduled": 0, "processing": 0, "dead": 0}

    async def test_failing_handler_is_retried_then_dead_lettered(self, engine, clock):
        queue = MemoryJobQueue()
        scheduler = JobScheduler(queue, clock=clock)
        worker = ReconciliationWorker(
            engine, scheduler, max_retries=2, retry_delay=5, clock=clock
        )

        async def explode(payload):
            raise ConnectionError("ledger down")

        worker._handlers[JOB_LOGIN_AUDIT] = explode
        await scheduler.enqueue(JOB_LOGIN_AUDIT, {"anything": True})

        assert await worker.run_once() == 1
        retried = queue.pending()
        assert len(retried) == 1
        assert retried[0].attempts == 1
        assert retried[0].run_at == (clock() + timedelta(seconds=5)).timestamp()

        clock.advance(seconds=5)
        assert await worker.run_once() == 1
        assert queue.pending() == []
        assert len(queue.dead) == 1
        assert "ledger down" in queue.dead[0].last_error

    async def test_invalid_payload_is_dead_lettered_immediately(self, worker, scheduler, queue):
        await scheduler.enqueue(JOB_SESSION_EXPIRE, {"session_id": "only-half"})

        await worker.run_once()

        assert queue.pending() == []
        assert len(queue.dead) == 1
        assert queue.dead[0].last_error.startswith("invalid payload")

    async def test_unknown_job_type_is_dead_lettered(self, worker, scheduler, queue):
        await scheduler.enqueue("mystery:job", {})

        await worker.run_once()

        assert len(queue.dead) == 1

    async def test_expired_lease_is_delivered_again(self, scheduler, queue, clock):
        await scheduler.enqueue(JOB_LOGIN_AUDIT, {"x": 1})

        claimed = await scheduler.claim_due(10)
        assert len(claimed) == 1
        assert await scheduler.claim_due(10) == []

        clock.advance(seconds=queue.lease_seconds)
        redelivered = await scheduler.claim_due(10)
        assert [job.id for job in redelivered] == [claimed[0].id]
        assert redelivered[0].attempts == 1
        assert redelivered[0].last_error == LEASE_EXPIRED

    async def test_job_whose_leases_keep_expiring_is_dead_lettered(self, engine, clock):
        queue = MemoryJobQueue(lease_seconds=30)
        scheduler = JobScheduler(queue, clock=clock)
        worker = ReconciliationWorker(engine, scheduler, max_retries=2, clock=clock)
        await scheduler.enqueue(JOB_LOGIN_AUDIT, {"x": 1})

        # A worker that dies mid-job never settles its claim
        for _ in range(2):
            assert len(await scheduler.claim_due(10)) == 1
            clock.advance(seconds=30)

        assert await worker.run_once() == 1
        assert queue.pending() == []
        assert await queue.counts() == {"scheduled": 0, "processing": 0, "dead": 1}
        assert queue.dead[0].last_error == LEASE_EXPIRED

    async def test_start_and_stop(self, worker):
        await worker.start()
        await worker.start()
        await worker.stop()

        assert worker._task is None

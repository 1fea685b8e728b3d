"""Background worker for deferred session expiry and login audit jobs.

Claims due jobs from the scheduler in batches and runs them concurrently,
bounded by a semaphore. A failed job is retried with exponential delay and
dead-lettered once it runs out of attempts; a payload that does not validate
is dead-lettered straight away, as is a job whose leases kept running out.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PayloadError

from sessionguard.logging import get_logger
from sessionguard.service.jobs import (
    JOB_LOGIN_AUDIT,
    JOB_SESSION_EXPIRE,
    JobScheduler,
    LoginAuditPayload,
    SessionExpirePayload,
)
from sessionguard.service.sessions import SessionEngine
from sessionguard.storage.models import Job

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 10
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY_SECONDS = 10
MAX_BACKOFF_SECONDS = 300


class ReconciliationWorker:
    def __init__(
        self,
        engine: SessionEngine,
        scheduler: JobScheduler,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: int = DEFAULT_RETRY_DELAY_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.engine = engine
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            JOB_SESSION_EXPIRE: self.handle_session_expire,
            JOB_LOGIN_AUDIT: self.handle_login_audit,
        }
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def handle_session_expire(self, payload: Dict[str, Any]) -> str:
        data = SessionExpirePayload.model_validate(payload)
        return await self.engine.expire_session(data.session_id, data.user_id)

    async def handle_login_audit(self, payload: Dict[str, Any]) -> bool:
        data = LoginAuditPayload.model_validate(payload)
        return await self.engine.record_login_event(data)

    async def process_job(self, job: Job) -> bool:
        """Run one claimed job and settle it; returns True when it succeeded."""
        handler = self._handlers.get(job.type)
        if handler is None:
            await self.scheduler.dead_letter(job, f"unknown job type {job.type!r}")
            return False
        # Lease expiries bump attempts without going through _fail
        if job.attempts >= self.max_retries:
            await self.scheduler.dead_letter(job, job.last_error or "retry limit reached")
            return False
        try:
            outcome = await handler(job.payload)
        except PayloadError as exc:
            await self.scheduler.dead_letter(job, f"invalid payload: {exc}")
            return False
        except Exception as exc:
            await self._fail(job, exc)
            return False
        await self.scheduler.ack(job)
        logger.debug("job_completed", job_id=job.id, job_type=job.type, outcome=outcome)
        return True

    async def _fail(self, job: Job, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        attempt = job.attempts + 1
        if attempt >= self.max_retries:
            await self.scheduler.dead_letter(job, error)
            return
        delay = min(MAX_BACKOFF_SECONDS, self.retry_delay * (2 ** job.attempts))
        await self.scheduler.retry(job, self._clock() + timedelta(seconds=delay), error)
        logger.warning(
            "job_retry_scheduled",
            job_id=job.id,
            job_type=job.type,
            attempt=attempt,
            delay_seconds=delay,
            error=error,
        )

    async def run_once(self) -> int:
        """Claim one batch of due jobs and process it; returns the batch size."""
        jobs = await self.scheduler.claim_due(self.batch_size, now=self._clock())
        if not jobs:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(job: Job) -> bool:
            async with semaphore:
                return await self.process_job(job)

        results = await asyncio.gather(*(_guarded(job) for job in jobs))
        logger.info(
            "reconciliation_batch_processed",
            claimed=len(jobs),
            succeeded=sum(1 for ok in results if ok),
        )
        return len(jobs)

    async def drain(self, max_batches: int = 100) -> int:
        """Process due jobs until none are left."""
        total = 0
        for _ in range(max_batches):
            processed = await self.run_once()
            if not processed:
                break
            total += processed
        return total

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("reconciliation_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reconciliation_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reconciliation_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                processed = await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "reconciliation_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.poll_interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "reconciliation_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
                processed = 0

            # A full batch means more work is likely waiting
            if processed < self.batch_size:
                await asyncio.sleep(self.poll_interval)

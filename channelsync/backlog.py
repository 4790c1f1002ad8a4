"""
backlog.py — Durable job backlog with per-queue worker pools

Units of work (stock pushes, order pulls, event deliveries) are rows in
sync_jobs, so they survive a restart. Each logical queue has its own pool of
asyncio workers; a worker claims one due job, runs the handler registered
for its type, and records the outcome. Retry policy lives here and nowhere
else: adapters raise typed errors and this module decides what they mean.

Business Rules:
- Queues: stock, order, push-target, notification; pool sizes come from config
- dedup_key: enqueue is a no-op returning the existing id while a job with
  the same key is QUEUED, ACTIVE or STALLED
- supersede=True (stock pushes): the queued job takes the newer payload; if
  only an ACTIVE job exists, one follow-up is queued and is not claimed
  until the active one finishes (one in flight per key, at most one queued)
- RateLimitedError: requeued after retry_after, attempt not counted
- TransientError / unexpected errors: retried after base * 2^(attempt-1) plus
  jitter until max_attempts, then FAILED
- AuthError: FAILED, account flagged ERROR. RejectedError: FAILED, no retry
- Every job reaching COMPLETED or FAILED writes exactly one ledger entry in
  the same transaction (notification jobs excepted)
- A job with no heartbeat past stall_timeout is marked STALLED and requeued
  once; a second stall fails it
- Only QUEUED jobs can be cancelled

Called by: context.py (construction, start/drain/stop), stock_sync.py,
           order_sync.py, events.py, scheduler.py, routers/sync.py
Depends on: models/jobs.py, ledger.py, events.py, errors.py, config.py
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import aliased

from .config import settings
from .errors import AuthError, NotFoundError, RateLimitedError, RejectedError, TransientError
from .events import SYNC_COMPLETED, SYNC_FAILED
from .models import AccountState, ChannelAccount, JobStatus, SyncJob

log = logging.getLogger(__name__)

STOCK = "stock"
ORDER = "order"
PUSH_TARGET = "push-target"
NOTIFICATION = "notification"


@dataclass
class QueueConfig:
    name: str
    concurrency: int
    max_attempts: int


def default_queues() -> dict[str, QueueConfig]:
    return {
        STOCK: QueueConfig(STOCK, settings.stock_concurrency, settings.job_max_attempts),
        ORDER: QueueConfig(ORDER, settings.order_concurrency, settings.job_max_attempts),
        PUSH_TARGET: QueueConfig(PUSH_TARGET, settings.push_target_concurrency, settings.job_max_attempts),
        NOTIFICATION: QueueConfig(
            NOTIFICATION, settings.notification_concurrency, settings.notification_max_attempts
        ),
    }


@dataclass
class JobContext:
    """What a handler sees of the job it is running."""

    id: int
    job_type: str
    queue: str
    payload: dict
    attempt: int
    max_attempts: int
    dedup_key: str | None = None


Handler = Callable[[JobContext], Awaitable[dict | None]]


class JobBacklog:
    def __init__(
        self,
        session_factory,
        ledger,
        events=None,
        *,
        queues: dict[str, QueueConfig] | None = None,
        backoff_base: float | None = None,
        jitter: float | None = None,
        job_timeout: float | None = None,
        stall_timeout: float | None = None,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: Callable[[], float] = random.random,
    ):
        self._session_factory = session_factory
        self.ledger = ledger
        self.events = events
        self.queues = queues or default_queues()
        self.backoff_base = settings.backoff_base_seconds if backoff_base is None else backoff_base
        self.jitter = settings.backoff_jitter if jitter is None else jitter
        self.job_timeout = job_timeout or settings.job_timeout_seconds
        self.stall_timeout = stall_timeout or settings.stall_timeout_seconds
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng

        self._handlers: dict[str, tuple[str, Handler]] = {}
        self._claim_locks: dict[str, asyncio.Lock] = {}
        self._wake: dict[str, asyncio.Event] = {}
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._inflight: set[int] = set()

    # ── Registration ──

    def register(self, job_type: str, queue: str, handler: Handler) -> None:
        if queue not in self.queues:
            raise ValueError(f"Unknown queue: {queue}")
        self._handlers[job_type] = (queue, handler)

    def queue_for(self, job_type: str) -> str:
        return self._handlers[job_type][0]

    # ── Enqueue ──

    def enqueue(
        self,
        queue: str,
        job_type: str,
        payload: dict,
        *,
        max_attempts: int | None = None,
        priority: int = 0,
        dedup_key: str | None = None,
        supersede: bool = False,
        source_ref: str | None = None,
        delay: float = 0.0,
    ) -> int:
        if queue not in self.queues:
            raise ValueError(f"Unknown queue: {queue}")
        now = self._clock()

        with self._session_factory() as db:
            if dedup_key:
                pending = (
                    db.query(SyncJob)
                    .filter(SyncJob.dedup_key == dedup_key, SyncJob.status.in_(JobStatus.PENDING))
                    .order_by(SyncJob.id)
                    .all()
                )
                queued = [j for j in pending if j.status == JobStatus.QUEUED]
                if queued:
                    job = queued[-1]
                    if supersede:
                        job.payload = dict(payload)
                        job.priority = max(job.priority or 0, priority)
                        if source_ref:
                            job.source_ref = source_ref
                        db.commit()
                        log.debug(f"Job {job.id} ({dedup_key}) superseded with newer payload")
                    return job.id
                if pending and not supersede:
                    return pending[0].id

            job = SyncJob(
                queue=queue,
                job_type=job_type,
                payload=dict(payload),
                status=JobStatus.QUEUED,
                priority=priority,
                max_attempts=max_attempts or self.queues[queue].max_attempts,
                run_at=now + timedelta(seconds=delay),
                dedup_key=dedup_key,
                source_ref=source_ref,
                created_at=now,
            )
            db.add(job)
            db.commit()
            job_id = job.id

        log.debug(f"Enqueued {job_type} job {job_id} on {queue}")
        self._notify(queue)
        return job_id

    def _notify(self, queue: str) -> None:
        event = self._wake.get(queue)
        if event is not None:
            event.set()

    # ── Claim & execute ──

    def _claim(self, queue: str) -> JobContext | None:
        now = self._clock()
        active = aliased(SyncJob)
        busy_keys = select(active.dedup_key).where(
            active.status == JobStatus.ACTIVE, active.dedup_key.isnot(None)
        )
        with self._session_factory() as db:
            q = (
                db.query(SyncJob)
                .filter(
                    SyncJob.queue == queue,
                    SyncJob.status == JobStatus.QUEUED,
                    SyncJob.run_at <= now,
                    or_(SyncJob.dedup_key.is_(None), SyncJob.dedup_key.notin_(busy_keys)),
                )
                .order_by(SyncJob.priority.desc(), SyncJob.run_at, SyncJob.id)
            )
            if db.bind.dialect.name == "postgresql":
                q = q.with_for_update(skip_locked=True)
            job = q.first()
            if job is None:
                return None
            job.status = JobStatus.ACTIVE
            job.attempts = (job.attempts or 0) + 1
            job.started_at = now
            job.heartbeat_at = now
            db.commit()
            return JobContext(
                id=job.id,
                job_type=job.job_type,
                queue=job.queue,
                payload=dict(job.payload or {}),
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                dedup_key=job.dedup_key,
            )

    async def process_next(self, queue: str) -> int | None:
        """Claim and run one due job from ``queue``. Returns its id, or None."""
        lock = self._claim_locks.setdefault(queue, asyncio.Lock())
        async with lock:
            job = self._claim(queue)
        if job is None:
            return None
        self._inflight.add(job.id)
        try:
            await self._execute(job)
        finally:
            self._inflight.discard(job.id)
        return job.id

    async def run_until_idle(self, queues: list[str] | None = None, max_jobs: int = 1000) -> int:
        """Process due jobs until every queue is empty. Returns the count run."""
        processed = 0
        names = queues or list(self.queues)
        while processed < max_jobs:
            progressed = False
            for name in names:
                if await self.process_next(name) is not None:
                    processed += 1
                    progressed = True
            if not progressed:
                break
        return processed

    async def _execute(self, job: JobContext) -> None:
        registration = self._handlers.get(job.job_type)
        if registration is None:
            self._record_failure(job, RejectedError(f"no handler registered for {job.job_type}"))
            return

        _, handler = registration
        heartbeat = asyncio.create_task(self._heartbeat(job.id))
        error: Exception | None = None
        result: dict | None = None
        try:
            result = await asyncio.wait_for(handler(job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            error = TransientError(f"{job.job_type} exceeded {self.job_timeout:.0f}s deadline")
        except Exception as e:
            if not isinstance(e, (TransientError, RateLimitedError, AuthError, RejectedError, NotFoundError)):
                log.exception(f"Unexpected error in {job.job_type} job {job.id}")
            error = e
        finally:
            heartbeat.cancel()

        if error is None:
            self._record_success(job, result or {})
        else:
            self._record_failure(job, error)

    async def _heartbeat(self, job_id: int) -> None:
        interval = max(self.stall_timeout / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            with self._session_factory() as db:
                row = db.get(SyncJob, job_id)
                if row is None or row.status != JobStatus.ACTIVE:
                    return
                row.heartbeat_at = self._clock()
                db.commit()

    # ── Outcomes ──

    def _ledger_fields(self, row: SyncJob, result: dict) -> dict:
        payload = row.payload or {}
        target = result.get("target_quantity", payload.get("quantity"))
        return {
            "job_id": row.id,
            "job_type": row.job_type,
            "queue": row.queue,
            "account_id": result.get("account_id", payload.get("account_id")),
            "channel_code": result.get("channel_code", payload.get("channel_code")),
            "product_id": result.get("product_id", payload.get("product_id")),
            "order_id": result.get("order_id", payload.get("order_id")),
            "attempts": row.attempts,
            "target_quantity": target,
        }

    def _record_success(self, job: JobContext, result: dict) -> None:
        now = self._clock()
        with self._session_factory() as db:
            row = db.get(SyncJob, job.id, with_for_update=True)
            if row is None or row.status != JobStatus.ACTIVE:
                log.warning(f"Job {job.id} finished but is no longer ACTIVE; result discarded")
                return
            row.status = JobStatus.COMPLETED
            row.finished_at = now
            row.result = result
            row.last_error = None
            row.error_type = None
            if row.queue != NOTIFICATION:
                self.ledger.record(
                    db,
                    success=True,
                    status=JobStatus.COMPLETED,
                    details=result,
                    **self._ledger_fields(row, result),
                )
            db.commit()
            attempts = row.attempts

        log.info(f"Job {job.id} ({job.job_type}) completed after {attempts} attempt(s)")
        if job.queue != NOTIFICATION:
            self._emit(
                SYNC_COMPLETED,
                {
                    "type": job.job_type,
                    "jobId": job.id,
                    "successCount": result.get("success_count", 1),
                    "failureCount": result.get("failure_count", 0),
                },
            )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), with jitter."""
        delay = self.backoff_base * (2 ** max(0, attempt - 1))
        return delay + delay * self.jitter * self._rng()

    def _record_failure(self, job: JobContext, error: Exception) -> None:
        now = self._clock()
        failed = False
        with self._session_factory() as db:
            row = db.get(SyncJob, job.id, with_for_update=True)
            if row is None or row.status != JobStatus.ACTIVE:
                log.warning(f"Job {job.id} failed but is no longer ACTIVE: {error}")
                return
            row.last_error = str(error)[:2000]
            row.error_type = type(error).__name__
            row.heartbeat_at = None

            if isinstance(error, RateLimitedError):
                row.attempts = max(0, row.attempts - 1)
                row.status = JobStatus.QUEUED
                row.run_at = now + timedelta(seconds=error.retry_after)
                db.commit()
                log.info(f"Job {job.id} rate limited; rescheduled in {error.retry_after:.2f}s")
                return

            terminal = isinstance(error, (AuthError, RejectedError, NotFoundError))
            if not terminal and row.attempts < row.max_attempts:
                delay = self.backoff_delay(row.attempts)
                row.status = JobStatus.QUEUED
                row.run_at = now + timedelta(seconds=delay)
                db.commit()
                log.warning(
                    f"Job {job.id} ({job.job_type}) attempt {row.attempts}/{row.max_attempts} "
                    f"failed: {error}; retrying in {delay:.1f}s"
                )
                return

            row.status = JobStatus.FAILED
            row.finished_at = now
            if row.queue != NOTIFICATION:
                self.ledger.record(
                    db,
                    success=False,
                    status=JobStatus.FAILED,
                    error_type=row.error_type,
                    error_detail=row.last_error,
                    **self._ledger_fields(row, {}),
                )
            if isinstance(error, AuthError):
                self._flag_account(db, (row.payload or {}).get("account_id"), error)
            db.commit()
            failed = True

        if failed:
            log.error(f"Job {job.id} ({job.job_type}) FAILED: {error}")
            if job.queue != NOTIFICATION:
                self._emit(SYNC_FAILED, {"type": job.job_type, "jobId": job.id, "message": str(error)})

    def _flag_account(self, db, account_id, error: Exception) -> None:
        if account_id is None:
            return
        account = db.get(ChannelAccount, account_id)
        if account is None:
            return
        account.state = AccountState.ERROR
        account.last_error = str(error)[:2000]
        log.warning(f"Account {account_id} moved to ERROR: {error}")

    def _emit(self, name: str, payload: dict) -> None:
        if self.events is not None:
            self.events.emit(name, payload)

    # ── Stall recovery ──

    def recover_stalled(self) -> dict:
        """Requeue ACTIVE jobs whose heartbeat went quiet; fail repeat stallers."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stall_timeout)
        with self._session_factory() as db:
            stalled = (
                db.query(SyncJob)
                .filter(
                    SyncJob.status == JobStatus.ACTIVE,
                    or_(
                        SyncJob.heartbeat_at < cutoff,
                        SyncJob.heartbeat_at.is_(None) & (SyncJob.started_at < cutoff),
                    ),
                )
                .all()
            )
            for row in stalled:
                row.status = JobStatus.STALLED
            db.commit()
            stalled_ids = [row.id for row in stalled]

        requeued, failed = 0, []
        for job_id in stalled_ids:
            with self._session_factory() as db:
                row = db.get(SyncJob, job_id, with_for_update=True)
                if row is None or row.status != JobStatus.STALLED:
                    continue
                if row.stalled_count >= 1:
                    row.status = JobStatus.FAILED
                    row.finished_at = now
                    row.error_type = "Stalled"
                    row.last_error = "job stalled twice without reporting progress"
                    if row.queue != NOTIFICATION:
                        self.ledger.record(
                            db,
                            success=False,
                            status=JobStatus.FAILED,
                            error_type=row.error_type,
                            error_detail=row.last_error,
                            **self._ledger_fields(row, {}),
                        )
                    failed.append((row.id, row.job_type, row.queue))
                else:
                    row.stalled_count += 1
                    row.attempts = max(0, row.attempts - 1)
                    row.status = JobStatus.QUEUED
                    row.run_at = now
                    requeued += 1
                db.commit()

        for job_id, job_type, queue in failed:
            log.error(f"Job {job_id} ({job_type}) FAILED after stalling twice")
            if queue != NOTIFICATION:
                self._emit(SYNC_FAILED, {"type": job_type, "jobId": job_id, "message": "job stalled"})
        if stalled_ids:
            log.warning(f"Stall sweep: {requeued} requeued, {len(failed)} failed")
        return {"requeued": requeued, "failed": len(failed)}

    # ── Cancellation & inspection ──

    def cancel(self, job_id: int) -> bool:
        """Cancel a QUEUED job. Jobs already started cannot be cancelled."""
        with self._session_factory() as db:
            row = db.get(SyncJob, job_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"job {job_id} not found")
            if row.status != JobStatus.QUEUED:
                return False
            row.status = JobStatus.CANCELLED
            row.finished_at = self._clock()
            db.commit()
        log.info(f"Job {job_id} cancelled")
        return True

    def cancel_queued(self, *, source_ref: str | None = None, dedup_key: str | None = None) -> int:
        if not source_ref and not dedup_key:
            raise ValueError("source_ref or dedup_key required")
        with self._session_factory() as db:
            q = db.query(SyncJob).filter(SyncJob.status == JobStatus.QUEUED)
            if source_ref:
                q = q.filter(SyncJob.source_ref == source_ref)
            if dedup_key:
                q = q.filter(SyncJob.dedup_key == dedup_key)
            rows = q.all()
            now = self._clock()
            for row in rows:
                row.status = JobStatus.CANCELLED
                row.finished_at = now
            db.commit()
        if rows:
            log.info(f"Cancelled {len(rows)} queued job(s) for {source_ref or dedup_key}")
        return len(rows)

    def get_job(self, job_id: int) -> dict | None:
        with self._session_factory() as db:
            row = db.get(SyncJob, job_id)
            return row.to_dict() if row else None

    def queue_stats(self) -> dict[str, dict[str, int]]:
        stats = {
            name: {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "stalled": 0, "cancelled": 0}
            for name in self.queues
        }
        with self._session_factory() as db:
            rows = (
                db.query(SyncJob.queue, SyncJob.status, func.count(SyncJob.id))
                .group_by(SyncJob.queue, SyncJob.status)
                .all()
            )
        keys = {
            JobStatus.QUEUED: "waiting",
            JobStatus.ACTIVE: "active",
            JobStatus.COMPLETED: "completed",
            JobStatus.FAILED: "failed",
            JobStatus.STALLED: "stalled",
            JobStatus.CANCELLED: "cancelled",
        }
        for queue, status, n in rows:
            if queue in stats and status in keys:
                stats[queue][keys[status]] = n
        return stats

    def purge_finished(self) -> int:
        """Drop finished jobs past retention. The ledger keeps their outcome."""
        now = self._clock()
        done_cutoff = now - timedelta(hours=settings.completed_retention_hours)
        failed_cutoff = now - timedelta(days=settings.failed_retention_days)
        with self._session_factory() as db:
            n = (
                db.query(SyncJob)
                .filter(
                    or_(
                        SyncJob.status.in_([JobStatus.COMPLETED, JobStatus.CANCELLED])
                        & (SyncJob.finished_at < done_cutoff),
                        (SyncJob.status == JobStatus.FAILED) & (SyncJob.finished_at < failed_cutoff),
                    )
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        if n:
            log.info(f"Purged {n} finished job(s)")
        return n

    # ── Worker pools ──

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for name, cfg in self.queues.items():
            self._wake[name] = asyncio.Event()
            for i in range(cfg.concurrency):
                self._workers.append(asyncio.create_task(self._worker(name), name=f"{name}-worker-{i}"))
        log.info(
            "Job backlog started: "
            + ", ".join(f"{name}={cfg.concurrency}" for name, cfg in self.queues.items())
        )

    async def _worker(self, queue: str) -> None:
        wake = self._wake[queue]
        while self._running:
            try:
                job_id = await self.process_next(queue)
            except Exception:
                log.exception(f"Worker error on queue {queue}")
                job_id = None
            if job_id is not None or not self._running:
                continue
            wake.clear()
            try:
                await asyncio.wait_for(wake.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def drain(self, timeout: float | None = None) -> bool:
        """Stop claiming new jobs and wait for in-flight ones. True if all finished."""
        timeout = settings.drain_timeout_seconds if timeout is None else timeout
        self._running = False
        for event in self._wake.values():
            event.set()
        if not self._workers:
            return True
        done, pending = await asyncio.wait(self._workers, timeout=timeout)
        if pending:
            log.warning(f"Drain timed out with {len(self._inflight)} job(s) still in flight")
        return not pending

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._wake.clear()
        log.info("Job backlog stopped")

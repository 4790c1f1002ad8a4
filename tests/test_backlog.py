"""
test_backlog.py — Tests for the durable job backlog

Covers: dedup and supersede, retry with backoff, rate-limited reschedule
without consuming attempts, terminal errors (auth flags the account),
exactly-once FAILED + ledger entry, deadline, stall recovery, cancel,
purge, queue stats and the worker pool lifecycle.

Called by: pytest
Depends on: channelsync/backlog.py, channelsync/ledger.py, channelsync/events.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from channelsync.backlog import NOTIFICATION, PUSH_TARGET, STOCK, JobBacklog
from channelsync.errors import AuthError, NotFoundError, RateLimitedError, RejectedError, TransientError
from channelsync.events import SYNC_COMPLETED, SYNC_FAILED, EventBus
from channelsync.ledger import SyncLedger
from channelsync.models import AccountState, ChannelAccount, JobStatus, SyncJob, SyncLedgerEntry


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def emitted():
    return []


@pytest.fixture()
def backlog(session_factory, clock, emitted):
    events = EventBus()
    events.subscribe("*", lambda name, payload: emitted.append((name, payload)))
    return JobBacklog(
        session_factory,
        SyncLedger(session_factory),
        events,
        backoff_base=0,
        jitter=0,
        stall_timeout=60,
        poll_interval=0.01,
        clock=clock,
    )


def _scripted(outcomes, calls=None):
    """Handler that raises/returns each outcome in turn."""
    outcomes = list(outcomes)

    async def handler(job):
        if calls is not None:
            calls.append(job.attempt)
        outcome = outcomes.pop(0) if outcomes else {"ok": True}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return handler


def _ledger(db_session):
    return db_session.query(SyncLedgerEntry).order_by(SyncLedgerEntry.id).all()


# ── Enqueue & dedup ──────────────────────────────────────────────────


def test_enqueue_unknown_queue_rejected(backlog):
    with pytest.raises(ValueError):
        backlog.enqueue("nope", "x", {})


def test_dedup_returns_existing_queued_job(backlog):
    first = backlog.enqueue(STOCK, "sync-stock", {"product_id": 1}, dedup_key="sync-stock:1")
    second = backlog.enqueue(STOCK, "sync-stock", {"product_id": 1}, dedup_key="sync-stock:1")
    assert first == second
    assert backlog.queue_stats()[STOCK]["waiting"] == 1


def test_supersede_replaces_queued_payload(backlog):
    first = backlog.enqueue(PUSH_TARGET, "push", {"quantity": 10}, dedup_key="push:1:2", supersede=True)
    second = backlog.enqueue(PUSH_TARGET, "push", {"quantity": 7}, dedup_key="push:1:2", supersede=True)
    assert first == second
    assert backlog.get_job(first)["payload"] == {"quantity": 7}


@pytest.mark.asyncio
async def test_dedup_while_active(backlog):
    backlog.register("push", PUSH_TARGET, _scripted([]))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {"quantity": 10}, dedup_key="push:1:2", supersede=True)
    active = backlog._claim(PUSH_TARGET)
    assert active.id == job_id

    # plain dedup: no-op while the key is ACTIVE
    assert backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="push:1:2") == job_id

    # supersede: one follow-up, held back until the active job finishes
    follow_up = backlog.enqueue(PUSH_TARGET, "push", {"quantity": 5}, dedup_key="push:1:2", supersede=True)
    assert follow_up != job_id
    assert backlog._claim(PUSH_TARGET) is None
    again = backlog.enqueue(PUSH_TARGET, "push", {"quantity": 4}, dedup_key="push:1:2", supersede=True)
    assert again == follow_up

    await backlog._execute(active)
    assert backlog.get_job(job_id)["status"] == JobStatus.COMPLETED
    assert backlog._claim(PUSH_TARGET).payload == {"quantity": 4}


# ── Outcomes ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_transient_errors_retry_then_complete(backlog, db_session, emitted):
    calls = []
    backlog.register("push", PUSH_TARGET, _scripted([TransientError("boom"), TransientError("boom"), {"target_quantity": 80}], calls))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {"product_id": 1, "account_id": 2, "quantity": 80})

    assert await backlog.run_until_idle() == 3
    assert calls == [1, 2, 3]

    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.COMPLETED
    assert job["attempts"] == 3
    entries = _ledger(db_session)
    assert len(entries) == 1
    assert entries[0].success is True
    assert entries[0].attempts == 3
    assert entries[0].target_quantity == 80
    assert [name for name, _ in emitted] == [SYNC_COMPLETED]


@pytest.mark.asyncio
async def test_exhausted_attempts_fail_exactly_once(backlog, db_session, emitted):
    backlog.register("push", PUSH_TARGET, _scripted([TransientError("down")] * 10))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {"product_id": 1}, max_attempts=3)

    assert await backlog.run_until_idle() == 3
    # nothing left to run
    assert await backlog.run_until_idle() == 0

    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.FAILED
    assert job["error_type"] == "TransientError"
    entries = _ledger(db_session)
    assert len(entries) == 1
    assert entries[0].success is False
    assert entries[0].status == JobStatus.FAILED
    assert entries[0].attempts == 3
    failed_events = [p for name, p in emitted if name == SYNC_FAILED]
    assert len(failed_events) == 1
    assert failed_events[0]["jobId"] == job_id


@pytest.mark.asyncio
async def test_rate_limited_does_not_consume_attempt(backlog, clock):
    calls = []
    backlog.register("push", PUSH_TARGET, _scripted([RateLimitedError(retry_after=30), {"ok": True}], calls))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {}, max_attempts=1)

    assert await backlog.run_until_idle() == 1
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.QUEUED
    assert job["attempts"] == 0

    # not due yet
    assert await backlog.run_until_idle() == 0
    clock.advance(seconds=31)
    assert await backlog.run_until_idle() == 1
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.COMPLETED
    assert job["attempts"] == 1
    assert calls == [1, 1]


@pytest.mark.asyncio
async def test_auth_error_is_terminal_and_flags_account(backlog, make_account, session_factory):
    account = make_account()
    calls = []
    backlog.register("push", PUSH_TARGET, _scripted([AuthError("bad token")], calls))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {"account_id": account.id})

    await backlog.run_until_idle()
    assert calls == [1]
    assert backlog.get_job(job_id)["status"] == JobStatus.FAILED
    with session_factory() as db:
        row = db.get(ChannelAccount, account.id)
        assert row.state == AccountState.ERROR
        assert "bad token" in row.last_error


@pytest.mark.asyncio
async def test_rejected_is_terminal(backlog, db_session):
    calls = []
    backlog.register("push", PUSH_TARGET, _scripted([RejectedError("invalid sku")], calls))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {})
    await backlog.run_until_idle()
    assert calls == [1]
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.FAILED
    assert job["error_type"] == "RejectedError"
    assert _ledger(db_session)[0].error_detail == "invalid sku"


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried(backlog):
    backlog.register("push", PUSH_TARGET, _scripted([KeyError("oops"), {"ok": True}]))
    job_id = backlog.enqueue(PUSH_TARGET, "push", {})
    await backlog.run_until_idle()
    assert backlog.get_job(job_id)["attempts"] == 2


@pytest.mark.asyncio
async def test_unregistered_job_type_fails(backlog):
    job_id = backlog.enqueue(STOCK, "mystery", {})
    await backlog.run_until_idle()
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.FAILED
    assert "no handler" in job["last_error"]


@pytest.mark.asyncio
async def test_handler_deadline(session_factory):
    backlog = JobBacklog(session_factory, SyncLedger(session_factory), backoff_base=0, jitter=0, job_timeout=0.05)

    async def slow(job):
        await asyncio.sleep(5)

    backlog.register("slow", STOCK, slow)
    job_id = backlog.enqueue(STOCK, "slow", {}, max_attempts=1)
    await backlog.run_until_idle()
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.FAILED
    assert job["error_type"] == "TransientError"


@pytest.mark.asyncio
async def test_notification_jobs_skip_ledger(backlog, db_session, emitted):
    backlog.register("deliver-event", NOTIFICATION, _scripted([RejectedError("410")]))
    backlog.enqueue(NOTIFICATION, "deliver-event", {"event": "x"})
    await backlog.run_until_idle()
    assert _ledger(db_session) == []
    assert emitted == []


def test_backoff_delay_doubles_with_jitter(session_factory):
    backlog = JobBacklog(session_factory, SyncLedger(session_factory), backoff_base=2, jitter=0.25, rng=lambda: 1.0)
    assert backlog.backoff_delay(1) == pytest.approx(2.5)
    assert backlog.backoff_delay(2) == pytest.approx(5.0)
    assert backlog.backoff_delay(3) == pytest.approx(10.0)


# ── Stall recovery ───────────────────────────────────────────────────


def test_stalled_job_requeued_once_then_failed(backlog, clock, db_session):
    job_id = backlog.enqueue(PUSH_TARGET, "push", {"product_id": 3})
    backlog._claim(PUSH_TARGET)

    clock.advance(seconds=61)
    assert backlog.recover_stalled() == {"requeued": 1, "failed": 0}
    job = backlog.get_job(job_id)
    assert job["status"] == JobStatus.QUEUED
    assert job["attempts"] == 0

    backlog._claim(PUSH_TARGET)
    clock.advance(seconds=61)
    assert backlog.recover_stalled() == {"requeued": 0, "failed": 1}
    assert backlog.get_job(job_id)["status"] == JobStatus.FAILED
    entries = _ledger(db_session)
    assert len(entries) == 1
    assert entries[0].error_type == "Stalled"


def test_fresh_heartbeat_not_stalled(backlog, clock):
    backlog.enqueue(PUSH_TARGET, "push", {})
    backlog._claim(PUSH_TARGET)
    clock.advance(seconds=30)
    assert backlog.recover_stalled() == {"requeued": 0, "failed": 0}


# ── Cancel, purge, stats ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_only_queued(backlog):
    backlog.register("push", PUSH_TARGET, _scripted([]))
    queued = backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="a")
    done = backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="b")
    backlog.cancel(queued)
    await backlog.run_until_idle()

    assert backlog.get_job(queued)["status"] == JobStatus.CANCELLED
    assert backlog.get_job(done)["status"] == JobStatus.COMPLETED
    assert backlog.cancel(done) is False
    with pytest.raises(NotFoundError):
        backlog.cancel(99999)


def test_cancel_queued_by_source_ref(backlog):
    backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="push:1:1", source_ref="rule:9")
    backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="push:2:1", source_ref="rule:9")
    keep = backlog.enqueue(PUSH_TARGET, "push", {}, dedup_key="push:3:1", source_ref="rule:10")
    assert backlog.cancel_queued(source_ref="rule:9") == 2
    assert backlog.get_job(keep)["status"] == JobStatus.QUEUED
    with pytest.raises(ValueError):
        backlog.cancel_queued()


@pytest.mark.asyncio
async def test_queue_stats_and_purge(backlog, clock, db_session):
    backlog.register("push", PUSH_TARGET, _scripted([]))
    backlog.enqueue(PUSH_TARGET, "push", {})
    await backlog.run_until_idle()
    backlog.enqueue(PUSH_TARGET, "push", {})

    stats = backlog.queue_stats()
    assert stats[PUSH_TARGET]["completed"] == 1
    assert stats[PUSH_TARGET]["waiting"] == 1
    assert set(stats) == {STOCK, "order", PUSH_TARGET, NOTIFICATION}

    clock.advance(hours=25)
    assert backlog.purge_finished() == 1
    assert db_session.query(SyncJob).count() == 1
    # the ledger keeps the outcome
    assert len(_ledger(db_session)) == 1


# ── Worker pools ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_workers_process_and_drain(session_factory):
    backlog = JobBacklog(session_factory, SyncLedger(session_factory), backoff_base=0, jitter=0, poll_interval=0.01)
    done = asyncio.Event()

    async def handler(job):
        done.set()
        return {"ok": True}

    backlog.register("push", PUSH_TARGET, handler)
    backlog.start()
    assert backlog.running
    job_id = backlog.enqueue(PUSH_TARGET, "push", {})
    await asyncio.wait_for(done.wait(), 2)

    assert await backlog.drain(timeout=2) is True
    await backlog.stop()
    assert not backlog.running
    assert backlog.get_job(job_id)["status"] == JobStatus.COMPLETED

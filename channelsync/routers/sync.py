"""
routers/sync.py — Sync trigger, ledger statistics, logs and job inspection

Business Rules:
- Triggering only enqueues work; no channel is called inline
- Stats time_range: 1h, 24h, 7d, 30d (anything else reads as 24h)
- Logs are paginated (limit max 100)
- Only QUEUED jobs can be cancelled (409 otherwise)
- A manual order pull needs a CONNECTED, active account

Called by: main.py (router mount)
Depends on: context.py (stock engine, ledger, backlog, order engine)
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..context import SyncContext
from ..database import get_db
from ..dependencies import get_context
from ..models import ChannelAccount
from ..rate_limit import limiter
from ..schemas.responses import (
    JobEnqueuedResponse,
    JobOut,
    OkResponse,
    QueueCounts,
    SyncLogsResponse,
    SyncStatsResponse,
    SyncTriggerResponse,
)
from ..schemas.sync import SyncTriggerRequest

router = APIRouter(tags=["sync"])


@router.post("/api/sync/trigger", response_model=SyncTriggerResponse)
@limiter.limit(settings.rate_limit_trigger)
async def trigger_sync(
    request: Request,
    body: SyncTriggerRequest,
    ctx: SyncContext = Depends(get_context),
):
    job_ids = ctx.stock.trigger_sync(body.product_ids, body.reason)
    if not job_ids:
        raise HTTPException(404, "None of the given products exist")
    return {"ok": True, "job_ids": job_ids, "queued": len(job_ids)}


@router.get("/api/sync/stats", response_model=SyncStatsResponse)
def get_sync_stats(
    time_range: str = Query("24h", description="1h, 24h, 7d or 30d"),
    ctx: SyncContext = Depends(get_context),
):
    return ctx.ledger.get_stats(time_range)


@router.get("/api/sync/logs", response_model=SyncLogsResponse)
def get_sync_logs(
    job_type: str | None = Query(None),
    account_id: int | None = Query(None),
    product_id: int | None = Query(None),
    order_id: int | None = Query(None),
    success: bool | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    ctx: SyncContext = Depends(get_context),
):
    return ctx.ledger.get_logs(
        job_type=job_type,
        account_id=account_id,
        product_id=product_id,
        order_id=order_id,
        success=success,
        start=start,
        end=end,
        page=page,
        limit=limit,
    )


@router.get("/api/sync/queues", response_model=dict[str, QueueCounts])
def get_queue_stats(ctx: SyncContext = Depends(get_context)):
    return ctx.backlog.queue_stats()


@router.get("/api/sync/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: int, ctx: SyncContext = Depends(get_context)):
    job = ctx.backlog.get_job(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job


@router.post("/api/sync/jobs/{job_id}/cancel", response_model=OkResponse)
def cancel_job(job_id: int, ctx: SyncContext = Depends(get_context)):
    if not ctx.backlog.cancel(job_id):
        raise HTTPException(409, "Only queued jobs can be cancelled")
    return {"ok": True}


@router.post("/api/sync/accounts/{account_id}/pull-orders", response_model=JobEnqueuedResponse)
def pull_orders_now(
    account_id: int,
    db: Session = Depends(get_db),
    ctx: SyncContext = Depends(get_context),
):
    account = db.get(ChannelAccount, account_id)
    if not account:
        raise HTTPException(404, "Account not found")
    if not account.is_syncable:
        raise HTTPException(409, f"Account is {account.state}")
    return {"ok": True, "job_id": ctx.orders.enqueue_pull(account_id)}

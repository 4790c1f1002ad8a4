"""Background scheduler — periodic sync housekeeping on APScheduler.

Jobs (intervals from config):
  - order_pull:   every order_pull_interval_min — queue sync-orders per connected account
  - listing_pull: every listing_pull_interval_min — queue pull-listings per connected account
  - stall_sweep:  every stall_sweep_interval_sec — requeue/fail jobs with no heartbeat
  - job_purge:    hourly — drop finished jobs past retention (ledger keeps outcomes)

Scheduler jobs only enqueue or sweep; channel calls happen on the backlog
workers. A failing tick is logged and the next tick runs as normal.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = logging.getLogger(__name__)

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


def configure_scheduler(ctx) -> AsyncIOScheduler:
    s = ctx.settings
    scheduler = AsyncIOScheduler(job_defaults=JOB_DEFAULTS, timezone="UTC")

    scheduler.add_job(
        _job_order_pull,
        "interval",
        minutes=s.order_pull_interval_min,
        args=[ctx],
        id="order_pull",
        name="Order pull (all connected accounts)",
        replace_existing=True,
    )
    scheduler.add_job(
        _job_listing_pull,
        "interval",
        minutes=s.listing_pull_interval_min,
        args=[ctx],
        id="listing_pull",
        name="Listing pull (all connected accounts)",
        replace_existing=True,
    )
    scheduler.add_job(
        _job_stall_sweep,
        "interval",
        seconds=s.stall_sweep_interval_sec,
        args=[ctx],
        id="stall_sweep",
        name="Stalled job sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        _job_purge,
        "interval",
        hours=1,
        args=[ctx],
        id="job_purge",
        name="Finished job purge",
        replace_existing=True,
    )

    log.info(
        f"Scheduler configured — order pull every {s.order_pull_interval_min} min, "
        f"listing pull every {s.listing_pull_interval_min} min"
    )
    return scheduler


# ── Job functions ───────────────────────────────────────────────────


async def _job_order_pull(ctx):
    try:
        ids = ctx.enqueue_order_pulls()
        log.debug(f"order_pull: {len(ids)} account(s) queued")
    except Exception as e:
        log.error(f"order_pull tick failed: {e}")


async def _job_listing_pull(ctx):
    try:
        ids = ctx.enqueue_listing_pulls()
        log.debug(f"listing_pull: {len(ids)} account(s) queued")
    except Exception as e:
        log.error(f"listing_pull tick failed: {e}")


async def _job_stall_sweep(ctx):
    try:
        ctx.backlog.recover_stalled()
    except Exception as e:
        log.error(f"stall_sweep tick failed: {e}")


async def _job_purge(ctx):
    try:
        ctx.backlog.purge_finished()
    except Exception as e:
        log.error(f"job_purge tick failed: {e}")

"""
context.py — SyncContext: builds and owns every engine component

There are no module-level queues or engines. The app lifespan (or a test)
creates one SyncContext, which wires the event bus, rate governor, ledger,
job backlog, inventory service and both sync engines together, registers
the job handlers and controls worker/scheduler lifecycle.

Business Rules:
- start(): sweep stalled jobs left by a previous process, start workers,
  start the scheduler
- drain(): stop claiming, wait for in-flight jobs
- stop(): scheduler off, drain, workers cancelled, shared HTTP clients closed

Called by: main.py (lifespan), dependencies.py, tests
Depends on: every engine module, scheduler.py
"""

import logging

from .accounts import AccountService
from .backlog import NOTIFICATION, STOCK, JobBacklog, JobContext
from .channels import registry
from .config import settings as default_settings
from .database import SessionLocal
from .events import EventBus, deliver_event
from .http_client import close_clients
from .inventory import InventoryService
from .ledger import SyncLedger
from .models import AccountState, ChannelAccount
from .order_sync import OrderSyncEngine
from .rate_governor import RateGovernor
from .stock_sync import PULL_LISTINGS_JOB, StockSyncEngine

log = logging.getLogger(__name__)

DELIVER_EVENT_JOB = "deliver-event"


class SyncContext:
    def __init__(
        self,
        session_factory=None,
        settings=None,
        adapter_factory=None,
        *,
        governor: RateGovernor | None = None,
        backlog_options: dict | None = None,
    ):
        self.settings = settings or default_settings
        self.session_factory = session_factory or SessionLocal
        self.adapter_factory = adapter_factory or registry.create

        self.events = EventBus(webhook_url=self.settings.event_webhook_url)
        self.governor = governor or RateGovernor()
        self.ledger = SyncLedger(self.session_factory)
        self.backlog = JobBacklog(self.session_factory, self.ledger, self.events, **(backlog_options or {}))
        self.events.attach_backlog(self.backlog)

        self.stock = StockSyncEngine(
            self.session_factory,
            self.backlog,
            self.governor,
            self.adapter_factory,
            acquire_timeout=self.settings.governor_acquire_timeout_seconds,
        )
        self.inventory = InventoryService(self.session_factory, self.events, self.stock)
        self.orders = OrderSyncEngine(
            self.session_factory,
            self.backlog,
            self.governor,
            self.adapter_factory,
            self.inventory,
            self.events,
            acquire_timeout=self.settings.governor_acquire_timeout_seconds,
        )
        self.accounts = AccountService(self.session_factory, self.governor, self.adapter_factory)

        self.stock.register_handlers()
        self.orders.register_handlers()
        self.backlog.register(DELIVER_EVENT_JOB, NOTIFICATION, self._deliver_event)
        self.scheduler = None

    async def _deliver_event(self, job: JobContext) -> dict:
        return await deliver_event(job.payload, self.settings.event_webhook_url)

    # ── Periodic fan-out ──

    def _connected_account_ids(self) -> list[int]:
        with self.session_factory() as db:
            rows = (
                db.query(ChannelAccount.id)
                .filter(ChannelAccount.is_active.is_(True), ChannelAccount.state == AccountState.CONNECTED)
                .order_by(ChannelAccount.id)
                .all()
            )
        return [r[0] for r in rows]

    def enqueue_order_pulls(self) -> list[int]:
        return [self.orders.enqueue_pull(aid) for aid in self._connected_account_ids()]

    def enqueue_listing_pulls(self) -> list[int]:
        return [
            self.backlog.enqueue(STOCK, PULL_LISTINGS_JOB, {"account_id": aid}, dedup_key=f"pull-listings:{aid}")
            for aid in self._connected_account_ids()
        ]

    # ── Lifecycle ──

    async def start(self, with_scheduler: bool = True) -> None:
        recovered = self.backlog.recover_stalled()
        if recovered["requeued"] or recovered["failed"]:
            log.info(f"Startup stall sweep: {recovered}")
        self.backlog.start()
        if with_scheduler:
            from .scheduler import configure_scheduler

            self.scheduler = configure_scheduler(self)
            self.scheduler.start()
        log.info("Sync context started")

    async def drain(self, timeout: float | None = None) -> bool:
        return await self.backlog.drain(timeout)

    async def stop(self, close_http: bool = True) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        drained = await self.drain()
        if not drained:
            log.warning("Stopping with jobs still in flight; they will be recovered as stalled")
        await self.backlog.stop()
        if close_http:
            await close_clients()
        log.info("Sync context stopped")

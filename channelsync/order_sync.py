"""
order_sync.py — Order Sync Engine: channel orders -> canonical orders

Pulls orders from each connected channel account, upserts them under
(account, channel order id), normalizes the channel status and keeps an
order timeline. Orders that move into fulfilment commit their stock
through the inventory service, which in turn re-syncs every channel.

Business Rules:
- Pull window starts at last pull minus an overlap, or now minus the
  lookback on an account's first pull
- A pull the adapter could not finish (page cap or rate budget) leaves
  last_order_pull_at alone and queues a continuation for the same window
  that resumes where the adapter stopped
- Upsert is idempotent: pulling the same order twice changes nothing
- Status changes not reachable along the lifecycle graph are applied but
  flagged anomalous on the timeline
- Unmapped channel statuses flag the order for review; status unchanged
- Inventory is committed once, the first time an order reaches CONFIRMED
  or a later fulfilment state; cancelled/refunded orders never commit
- inventory_committed_at is stamped only after every line was deducted;
  deductions are recorded per (order, product) so a retry skips the lines
  that already went through. Every pull retries the account's owed orders
- Automation rules run after every status write
- Merchant status changes are pushed back to the channel via process-order

Called by: backlog workers (sync-orders, process-order), scheduler.py,
           routers/sync.py, routers/orders.py
Depends on: order_status.py, automation.py, inventory.py, rate_governor.py
"""

import logging
from datetime import datetime, timedelta, timezone

from .automation import active_rules, apply_rules
from .backlog import ORDER, JobContext
from .config import settings
from .errors import NotFoundError, RejectedError
from .events import ORDER_RECEIVED
from .models import ChannelAccount, ChannelListing, Order, OrderItem, OrderStatusEvent, Product
from .order_status import COMMITTING, PENDING, STATUSES, Mapped, Unmapped, is_forward, normalize_status

log = logging.getLogger(__name__)

SYNC_ORDERS_JOB = "sync-orders"
PROCESS_ORDER_JOB = "process-order"

SYSTEM = "SYSTEM"
MERCHANT = "MERCHANT"


class OrderSyncEngine:
    def __init__(
        self,
        session_factory,
        backlog,
        governor,
        adapter_factory,
        inventory,
        events=None,
        *,
        acquire_timeout: float | None = None,
        clock=None,
    ):
        self._session_factory = session_factory
        self.backlog = backlog
        self.governor = governor
        self._adapter_factory = adapter_factory
        self.inventory = inventory
        self.events = events
        self.acquire_timeout = (
            settings.governor_acquire_timeout_seconds if acquire_timeout is None else acquire_timeout
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def register_handlers(self) -> None:
        self.backlog.register(SYNC_ORDERS_JOB, ORDER, self.handle_sync_orders)
        self.backlog.register(PROCESS_ORDER_JOB, ORDER, self.handle_process_order)

    def enqueue_pull(self, account_id: int) -> int:
        return self.backlog.enqueue(
            ORDER, SYNC_ORDERS_JOB, {"account_id": account_id}, dedup_key=f"sync-orders:{account_id}"
        )

    # ── Status transitions ──

    def _transition(self, db, order: Order, target: str, *, actor: str, reason=None, channel_status=None) -> bool:
        if order.status == target:
            return False
        anomalous = not is_forward(order.status, target)
        db.add(
            OrderStatusEvent(
                order_id=order.id,
                from_status=order.status,
                to_status=target,
                channel_status=channel_status,
                actor=actor,
                reason=reason,
                anomalous=anomalous,
            )
        )
        if anomalous:
            log.warning(f"Order {order.id}: anomalous transition {order.status} -> {target}")
        order.status = target
        return True

    def _apply_channel_status(self, db, order: Order, normalized: Mapped | Unmapped) -> bool:
        if isinstance(normalized, Unmapped):
            raw = normalized.raw
            if order.needs_review and order.channel_status == raw:
                return False
            order.channel_status = raw
            order.needs_review = True
            db.add(
                OrderStatusEvent(
                    order_id=order.id,
                    from_status=order.status,
                    to_status=order.status,
                    channel_status=raw,
                    actor=SYSTEM,
                    reason=f'unmapped channel status "{raw}"',
                )
            )
            log.warning(f"Order {order.id}: unmapped channel status {raw!r}, flagged for review")
            return True

        order.channel_status = normalized.raw
        return self._transition(db, order, normalized.status, actor=SYSTEM, channel_status=normalized.raw)

    def _commit_lines(self, order: Order) -> list[tuple[int, int]] | None:
        """(product_id, qty) lines the order still owes inventory, or None if it owes nothing."""
        if order.inventory_committed_at is not None or order.status not in COMMITTING:
            return None
        lines: dict[int, int] = {}
        for item in order.items:
            if item.product_id is not None:
                lines[item.product_id] = lines.get(item.product_id, 0) + item.quantity
        return list(lines.items())

    async def _commit_inventory(self, order_id: int, order_number: str, lines, now=None) -> None:
        for product_id, qty in lines:
            await self.inventory.deduct_for_order(product_id, qty, order_id, reason=f"order {order_number}")
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is not None and order.inventory_committed_at is None:
                order.inventory_committed_at = now or self._clock()
                db.commit()

    def _adapter(self, account):
        adapter = self._adapter_factory(account)
        adapter.gate = self.governor.gate(account, timeout=self.acquire_timeout)
        return adapter

    def _pull_window(self, account, payload: dict, now: datetime) -> tuple[datetime, datetime]:
        if payload.get("since"):
            return datetime.fromisoformat(payload["since"]), datetime.fromisoformat(payload["until"])
        if account.last_order_pull_at:
            since = account.last_order_pull_at - timedelta(minutes=settings.order_pull_overlap_min)
        else:
            since = now - timedelta(hours=settings.order_pull_lookback_hours)
        return since, now

    # ── sync-orders ──

    async def handle_sync_orders(self, job: JobContext) -> dict:
        payload = job.payload
        account_id = payload["account_id"]
        now = self._clock()
        with self._session_factory() as db:
            account = db.get(ChannelAccount, account_id)
            if account is None:
                raise NotFoundError(f"account {account_id} not found")
            if not account.is_syncable:
                raise RejectedError(f"account {account_id} is {account.state}", channel=account.channel_code)

        since, until = self._pull_window(account, payload, now)
        adapter = self._adapter(account)
        channel_orders = await adapter.fetch_orders(since, until, resume=payload.get("resume"))
        resume_token = adapter.resume_token

        created, updated, review = [], 0, 0
        with self._session_factory() as db:
            listings = db.query(ChannelListing).filter(ChannelListing.account_id == account_id).all()
            by_variant = {
                (l.external_product_id, l.external_variant_id): l.product_id for l in listings if l.product_id
            }
            by_item = {l.external_product_id: l.product_id for l in listings if l.product_id}
            by_sku = {
                p.sku: p.id for p in db.query(Product).filter(Product.merchant_id == account.merchant_id)
            }
            rules = active_rules(db, account.merchant_id)

            for co in channel_orders:
                normalized = normalize_status(account.channel_code, co.status)
                order = (
                    db.query(Order)
                    .filter(Order.account_id == account_id, Order.channel_order_id == co.external_id)
                    .first()
                )
                if order is None:
                    order = self._create_order(db, account, co, by_variant, by_item, by_sku)
                    created.append(order)
                    changed = True
                    self._apply_channel_status(db, order, normalized)
                else:
                    changed = self._apply_channel_status(db, order, normalized)
                    if changed:
                        updated += 1

                if isinstance(normalized, Unmapped):
                    review += 1
                if changed:
                    apply_rules(db, order, rules)

            account_row = db.get(ChannelAccount, account_id)
            if account_row is None:
                raise NotFoundError(f"account {account_id} was removed during the pull")
            if resume_token is None:
                account_row.last_order_pull_at = until
            account_row.last_synced_at = now
            db.flush()
            # Includes orders a failed earlier run left uncommitted
            owed = (
                db.query(Order)
                .filter(
                    Order.account_id == account_id,
                    Order.inventory_committed_at.is_(None),
                    Order.status.in_(sorted(COMMITTING)),
                )
                .order_by(Order.id)
                .all()
            )
            commits = [(o.id, o.order_number, self._commit_lines(o)) for o in owed]
            db.commit()
            received = [(o.id, o.order_number) for o in created]

        for order_id, _ in received:
            if self.events is not None:
                self.events.emit(ORDER_RECEIVED, {"orderId": order_id, "channel": account.channel_code})
        for order_id, order_number, lines in commits:
            await self._commit_inventory(order_id, order_number, lines)

        continuation = None
        if resume_token is not None:
            continuation = self.backlog.enqueue(
                ORDER,
                SYNC_ORDERS_JOB,
                {
                    "account_id": account_id,
                    "since": since.isoformat(),
                    "until": until.isoformat(),
                    "resume": resume_token,
                },
                dedup_key=f"sync-orders:{account_id}",
                supersede=True,
            )
            log.warning(
                f"Order pull {account.channel_code} account {account_id} truncated at {resume_token!r}; "
                f"continuing in job {continuation}"
            )

        log.info(
            f"Order pull {account.channel_code} account {account_id}: {len(channel_orders)} fetched, "
            f"{len(received)} new, {updated} updated, {review} need review"
        )
        return {
            "account_id": account_id,
            "channel_code": account.channel_code,
            "fetched": len(channel_orders),
            "created": len(received),
            "updated": updated,
            "review": review,
            "truncated": resume_token is not None,
            "continuation_job_id": continuation,
            "success_count": len(channel_orders),
        }

    def _create_order(self, db, account, co, by_variant, by_item, by_sku) -> Order:
        order = Order(
            merchant_id=account.merchant_id,
            account_id=account.id,
            channel_order_id=co.external_id,
            order_number=f"{account.channel_code}-{co.external_id}",
            status=PENDING,
            total_amount=co.total_amount,
            shipping_cost=co.shipping_cost,
            currency=co.currency,
            customer=co.customer or {},
            shipping_address=co.shipping_address or {},
            ordered_at=co.ordered_at,
            tags=[],
        )
        for item in co.items:
            product_id = (
                by_variant.get((item.external_product_id, item.external_variant_id))
                or by_item.get(item.external_product_id)
                or (by_sku.get(item.sku) if item.sku else None)
            )
            if product_id is None:
                log.debug(f"Order {co.external_id}: item {item.sku or item.external_product_id} not matched")
            order.items.append(
                OrderItem(
                    product_id=product_id,
                    external_product_id=item.external_product_id,
                    external_variant_id=item.external_variant_id,
                    sku=item.sku,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
            )
        db.add(order)
        db.flush()
        db.add(OrderStatusEvent(order_id=order.id, to_status=PENDING, actor=SYSTEM, reason="order imported"))
        return order

    # ── Merchant status changes ──

    async def set_order_status(self, order_id: int, status: str, reason: str | None = None, push: bool = True) -> dict:
        if status not in STATUSES:
            raise ValueError(f"Unknown order status: {status}")
        now = self._clock()
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            changed = self._transition(db, order, status, actor=MERCHANT, reason=reason)
            lines = self._commit_lines(order) if changed else None
            if changed:
                apply_rules(db, order, active_rules(db, order.merchant_id))
            db.commit()
            result = order.to_dict()
            account_id, channel_order_id = order.account_id, order.channel_order_id

        if lines is not None:
            await self._commit_inventory(order_id, result["order_number"], lines, now)
            result["inventory_committed_at"] = now.isoformat()

        job_id = None
        if changed and push:
            job_id = self.backlog.enqueue(
                ORDER,
                PROCESS_ORDER_JOB,
                {
                    "order_id": order_id,
                    "account_id": account_id,
                    "channel_order_id": channel_order_id,
                    "status": status,
                },
                dedup_key=f"process-order:{order_id}",
                supersede=True,
            )
        result["changed"] = changed
        result["job_id"] = job_id
        return result

    def get_order(self, order_id: int) -> dict:
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            return order.to_dict(with_timeline=True)

    # ── process-order ──

    async def handle_process_order(self, job: JobContext) -> dict:
        payload = job.payload
        with self._session_factory() as db:
            account = db.get(ChannelAccount, payload["account_id"])
            if account is None:
                raise NotFoundError(f"account {payload['account_id']} not found")
            if not account.is_syncable:
                raise RejectedError(f"account {account.id} is {account.state}", channel=account.channel_code)

        await self._adapter(account).update_order_status(payload["channel_order_id"], payload["status"])

        log.info(f"Order {payload['order_id']} status {payload['status']} pushed to {account.channel_code}")
        return {
            "order_id": payload["order_id"],
            "account_id": account.id,
            "channel_code": account.channel_code,
            "status": payload["status"],
        }

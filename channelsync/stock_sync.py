"""
stock_sync.py — Stock Sync Engine: sync rules -> per-channel push jobs

When a product's stock changes, evaluate() selects the merchant's active
sync rules whose scope covers the product, computes a target quantity per
rule and target account, and queues one push-stock-target job per pair.
The push handler then writes that quantity to the channel through the rate
governor and remembers it as the listing's last pushed quantity.

Business Rules:
- Scope: ALL_PRODUCTS always, PRODUCT_LIST by membership, CATEGORY by category id
- EXACT = new; PERCENTAGE = floor(new * p / 100); OFFSET = max(0, new + p)
- THRESHOLD pushes new only if never pushed or |new - last_pushed| >= p
- CUSTOM evaluates a sandboxed expression (see expressions.py), floored
- Targets are never negative (oversold stock pushes 0)
- One rule failing never blocks the other rules for the same product
- Pairs are skipped when the account is not CONNECTED/active or the product
  has no listing on that account
- Push jobs are keyed push:{product}:{account}; a newer quantity replaces a
  still-queued one, so only the latest pending push per pair survives

Called by: inventory.py (evaluate), routers/sync.py (trigger_sync),
           backlog workers (sync-stock, push-stock-target, pull-listings)
Depends on: models, backlog.py, rate_governor.py, expressions.py, channels/
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from .backlog import PUSH_TARGET, STOCK, JobContext
from .channels import ListingRef
from .config import settings
from .errors import NotFoundError, RejectedError, RuleEvaluationError
from .expressions import ExpressionError, evaluate as evaluate_expression
from .models import ChannelAccount, ChannelListing, InventoryRecord, Product, Strategy, SyncRule

log = logging.getLogger(__name__)

PUSH_JOB = "push-stock-target"
SYNC_STOCK_JOB = "sync-stock"
PULL_LISTINGS_JOB = "pull-listings"

CUSTOM_FIELDS = (
    "quantity",
    "stock",
    "new_quantity",
    "reserved",
    "available",
    "min_threshold",
    "price",
    "last_pushed",
)


@dataclass
class PlannedPush:
    rule_id: int
    product_id: int
    account_id: int
    quantity: int
    job_id: int | None = None


def push_dedup_key(product_id: int, account_id: int) -> str:
    return f"push:{product_id}:{account_id}"


def compute_target(rule: SyncRule, new_quantity: int, fields: dict, last_pushed: int | None) -> int | None:
    """Target quantity for one rule and one account; None means suppressed.

    Raises RuleEvaluationError when the rule cannot produce a number.
    """
    p = rule.parameter
    strategy = rule.strategy

    if strategy == Strategy.EXACT:
        target = new_quantity
    elif strategy == Strategy.PERCENTAGE:
        if p is None:
            raise RuleEvaluationError(rule.id, "PERCENTAGE rule has no parameter")
        target = math.floor(new_quantity * p / 100)
    elif strategy == Strategy.OFFSET:
        if p is None:
            raise RuleEvaluationError(rule.id, "OFFSET rule has no parameter")
        target = new_quantity + int(p)
    elif strategy == Strategy.THRESHOLD:
        if p is None:
            raise RuleEvaluationError(rule.id, "THRESHOLD rule has no parameter")
        if last_pushed is not None and abs(new_quantity - last_pushed) < p:
            return None
        target = new_quantity
    elif strategy == Strategy.CUSTOM:
        if not rule.expression:
            raise RuleEvaluationError(rule.id, "CUSTOM rule has no expression")
        try:
            # before the first push, last_pushed reads as the new quantity
            pushed = new_quantity if last_pushed is None else last_pushed
            value = evaluate_expression(rule.expression, {**fields, "last_pushed": pushed})
        except ExpressionError as e:
            raise RuleEvaluationError(rule.id, str(e)) from e
        target = math.floor(value)
    else:
        raise RuleEvaluationError(rule.id, f"unknown strategy {strategy!r}")

    return max(0, int(target))


class StockSyncEngine:
    def __init__(self, session_factory, backlog, governor, adapter_factory, *, acquire_timeout: float | None = None):
        self._session_factory = session_factory
        self.backlog = backlog
        self.governor = governor
        self._adapter_factory = adapter_factory
        self.acquire_timeout = (
            settings.governor_acquire_timeout_seconds if acquire_timeout is None else acquire_timeout
        )

    def register_handlers(self) -> None:
        self.backlog.register(PUSH_JOB, PUSH_TARGET, self.handle_push)
        self.backlog.register(SYNC_STOCK_JOB, STOCK, self.handle_sync_stock)
        self.backlog.register(PULL_LISTINGS_JOB, STOCK, self.handle_pull_listings)

    def _adapter(self, account):
        adapter = self._adapter_factory(account)
        adapter.gate = self.governor.gate(account, timeout=self.acquire_timeout)
        return adapter

    # ── Evaluation ──

    def evaluate(self, product_id: int, new_quantity: int, reason: str | None = None) -> list[PlannedPush]:
        """Queue push jobs for every rule/account pair that yields a target."""
        plan: list[PlannedPush] = []
        channel_codes: dict[int, str] = {}

        with self._session_factory() as db:
            product = db.get(Product, product_id)
            if product is None:
                raise NotFoundError(f"product {product_id} not found")
            inventory = product.inventory
            rules = (
                db.query(SyncRule)
                .filter(SyncRule.merchant_id == product.merchant_id, SyncRule.is_active.is_(True))
                .order_by(SyncRule.id)
                .all()
            )
            listings = {
                listing.account_id: listing
                for listing in db.query(ChannelListing).filter(ChannelListing.product_id == product_id)
            }
            target_ids = {aid for rule in rules for aid in (rule.target_account_ids or [])}
            accounts = {
                a.id: a
                for a in db.query(ChannelAccount).filter(ChannelAccount.id.in_(target_ids))
            } if target_ids else {}

            fields = {
                "quantity": new_quantity,
                "stock": new_quantity,
                "new_quantity": new_quantity,
                "reserved": inventory.reserved if inventory else 0,
                "available": inventory.available if inventory else new_quantity,
                "min_threshold": inventory.min_threshold if inventory else 0,
                "price": product.price or 0,
            }

            for rule in rules:
                if not rule.matches(product):
                    continue
                try:
                    for account_id in rule.target_account_ids or []:
                        account = accounts.get(account_id)
                        if account is None or account.merchant_id != product.merchant_id:
                            log.warning(f"Rule {rule.id}: target account {account_id} not found")
                            continue
                        if not account.is_syncable:
                            log.debug(f"Rule {rule.id}: account {account_id} is {account.state}, skipped")
                            continue
                        listing = listings.get(account_id)
                        if listing is None:
                            log.debug(f"Product {product_id} not listed on account {account_id}, skipped")
                            continue
                        target = compute_target(rule, new_quantity, fields, listing.last_pushed_quantity)
                        if target is None:
                            continue
                        plan.append(PlannedPush(rule.id, product_id, account_id, target))
                        channel_codes[account_id] = account.channel_code
                except RuleEvaluationError as e:
                    log.warning(f"Sync rule skipped: {e}")
                except Exception:
                    log.exception(f"Sync rule {rule.id} failed for product {product_id}")

        for push in plan:
            push.job_id = self.backlog.enqueue(
                PUSH_TARGET,
                PUSH_JOB,
                {
                    "product_id": push.product_id,
                    "account_id": push.account_id,
                    "channel_code": channel_codes[push.account_id],
                    "quantity": push.quantity,
                    "rule_id": push.rule_id,
                    "reason": reason,
                },
                dedup_key=push_dedup_key(push.product_id, push.account_id),
                supersede=True,
                source_ref=f"rule:{push.rule_id}",
            )
        if plan:
            log.info(f"Product {product_id} -> {new_quantity}: {len(plan)} push job(s) queued")
        return plan

    def trigger_sync(self, product_ids: list[int], reason: str = "manual") -> list[int]:
        """Queue a re-evaluation for each product. Never calls a channel inline."""
        with self._session_factory() as db:
            known = {
                pid for (pid,) in db.query(Product.id).filter(Product.id.in_(product_ids or []))
            }
        job_ids, skipped = [], []
        for pid in product_ids:
            if pid not in known:
                log.warning(f"Sync trigger: product {pid} not found, skipped")
                skipped.append(pid)
                continue
            job_ids.append(
                self.backlog.enqueue(
                    STOCK,
                    SYNC_STOCK_JOB,
                    {"product_id": pid, "reason": reason},
                    dedup_key=f"sync-stock:{pid}",
                )
            )
        log.info(f"Sync triggered ({reason}): {len(job_ids)} queued, {len(skipped)} unknown")
        return job_ids

    # ── Job handlers ──

    async def handle_sync_stock(self, job: JobContext) -> dict:
        product_id = job.payload["product_id"]
        with self._session_factory() as db:
            record = db.query(InventoryRecord).filter(InventoryRecord.product_id == product_id).first()
            if db.get(Product, product_id) is None:
                raise NotFoundError(f"product {product_id} not found")
            available = record.available if record else 0
        plan = self.evaluate(product_id, available, reason=job.payload.get("reason"))
        return {"product_id": product_id, "planned": len(plan), "success_count": len(plan)}

    async def handle_push(self, job: JobContext) -> dict:
        payload = job.payload
        product_id = payload["product_id"]
        account_id = payload["account_id"]
        quantity = int(payload["quantity"])

        with self._session_factory() as db:
            account = db.get(ChannelAccount, account_id)
            if account is None:
                raise NotFoundError(f"account {account_id} not found")
            if not account.is_syncable:
                raise RejectedError(f"account {account_id} is {account.state}", channel=account.channel_code)
            listing = (
                db.query(ChannelListing)
                .filter(ChannelListing.product_id == product_id, ChannelListing.account_id == account_id)
                .first()
            )
            if listing is None:
                raise NotFoundError(f"product {product_id} is not listed on account {account_id}")
            listing_id = listing.id
            ref = ListingRef(listing.external_product_id, listing.external_variant_id, listing.external_sku)

        result = await self._adapter(account).push_stock(ref, quantity)

        with self._session_factory() as db:
            listing = db.get(ChannelListing, listing_id)
            if listing is not None:
                listing.last_pushed_quantity = quantity
                listing.channel_stock = result.quantity
                listing.last_pushed_at = datetime.now(timezone.utc)
            account_row = db.get(ChannelAccount, account_id)
            if account_row is not None:
                account_row.last_synced_at = datetime.now(timezone.utc)
            db.commit()

        log.info(f"Pushed {quantity} for product {product_id} to {account.channel_code} account {account_id}")
        return {
            "product_id": product_id,
            "account_id": account_id,
            "channel_code": account.channel_code,
            "target_quantity": quantity,
            "external_id": result.external_id,
        }

    async def handle_pull_listings(self, job: JobContext) -> dict:
        """Refresh channel listings: link by SKU, record channel-side stock."""
        account_id = job.payload["account_id"]
        with self._session_factory() as db:
            account = db.get(ChannelAccount, account_id)
            if account is None:
                raise NotFoundError(f"account {account_id} not found")
            if not account.is_syncable:
                raise RejectedError(f"account {account_id} is {account.state}", channel=account.channel_code)

        channel_products = await self._adapter(account).list_products()

        linked = unmatched = drift = 0
        with self._session_factory() as db:
            by_sku = {
                p.sku: p
                for p in db.query(Product).filter(Product.merchant_id == account.merchant_id)
            }
            listings = db.query(ChannelListing).filter(ChannelListing.account_id == account_id).all()
            by_external = {(l.external_product_id, l.external_variant_id): l for l in listings}
            by_product = {l.product_id: l for l in listings if l.product_id is not None}

            for cp in channel_products:
                listing = by_external.get((cp.external_id, cp.variant_id))
                product = by_sku.get(cp.sku) if cp.sku else None
                if listing is None:
                    if product is None:
                        unmatched += 1
                        continue
                    listing = by_product.get(product.id)
                    if listing is None:
                        listing = ChannelListing(product_id=product.id, account_id=account_id)
                        db.add(listing)
                        by_product[product.id] = listing
                    listing.external_product_id = cp.external_id
                    listing.external_variant_id = cp.variant_id
                    linked += 1
                listing.external_sku = cp.sku
                listing.channel_stock = cp.stock
                if (
                    listing.last_pushed_quantity is not None
                    and cp.stock is not None
                    and cp.stock != listing.last_pushed_quantity
                ):
                    drift += 1
            account_row = db.get(ChannelAccount, account_id)
            if account_row is None:
                raise NotFoundError(f"account {account_id} was removed during the pull")
            account_row.last_synced_at = datetime.now(timezone.utc)
            db.commit()

        if drift:
            log.warning(f"Account {account_id}: {drift} listing(s) differ from last pushed stock")
        return {
            "account_id": account_id,
            "channel_code": account.channel_code,
            "fetched": len(channel_products),
            "linked": linked,
            "unmatched": unmatched,
            "drift": drift,
            "success_count": len(channel_products),
        }

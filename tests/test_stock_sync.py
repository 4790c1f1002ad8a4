"""
test_stock_sync.py — Tests for sync rule evaluation and stock push jobs

Covers: every strategy's target arithmetic, scope matching, clamping,
rule isolation, skipped accounts/listings, push dedup, the end-to-end
retry path through the backlog and ledger, manual trigger, listing pull.

Called by: pytest
Depends on: channelsync/stock_sync.py, conftest fixtures
"""

from types import SimpleNamespace

import pytest

from channelsync.backlog import PUSH_TARGET, STOCK
from channelsync.channels import ChannelProduct
from channelsync.errors import NotFoundError, RejectedError, RuleEvaluationError, TransientError
from channelsync.models import (
    AccountState,
    ChannelAccount,
    ChannelListing,
    JobStatus,
    Scope,
    Strategy,
    SyncJob,
    SyncLedgerEntry,
)
from channelsync.stock_sync import PUSH_JOB, compute_target, push_dedup_key


def _rule(strategy, parameter=None, expression=None):
    return SimpleNamespace(id=1, strategy=strategy, parameter=parameter, expression=expression)


def _queued_pushes(db_session):
    db_session.expire_all()
    return (
        db_session.query(SyncJob)
        .filter(SyncJob.job_type == PUSH_JOB, SyncJob.status == JobStatus.QUEUED)
        .order_by(SyncJob.id)
        .all()
    )


# ── compute_target ───────────────────────────────────────────────────


@pytest.mark.parametrize(
    "strategy,parameter,new,last,expected",
    [
        (Strategy.EXACT, None, 42, None, 42),
        (Strategy.PERCENTAGE, 50, 10, None, 5),
        (Strategy.PERCENTAGE, 50, 11, None, 5),
        (Strategy.PERCENTAGE, 80, 7, None, 5),
        (Strategy.OFFSET, -5, 20, None, 15),
        (Strategy.OFFSET, -5, 3, None, 0),
        (Strategy.OFFSET, 2, 3, None, 5),
        (Strategy.THRESHOLD, 5, 50, None, 50),
        (Strategy.THRESHOLD, 5, 54, 50, None),
        (Strategy.THRESHOLD, 5, 55, 50, 55),
        (Strategy.THRESHOLD, 5, 45, 50, 45),
        (Strategy.EXACT, None, -4, None, 0),
    ],
)
def test_compute_target(strategy, parameter, new, last, expected):
    assert compute_target(_rule(strategy, parameter), new, {}, last) == expected


def test_custom_expression_floored():
    rule = _rule(Strategy.CUSTOM, expression="available * 0.9 - reserved")
    assert compute_target(rule, 50, {"available": 45, "reserved": 5}, None) == 35


def test_custom_last_pushed_defaults_to_new_quantity():
    rule = _rule(Strategy.CUSTOM, expression="(quantity + last_pushed) / 2")
    assert compute_target(rule, 10, {"quantity": 10}, None) == 10
    assert compute_target(rule, 10, {"quantity": 10}, 20) == 15


@pytest.mark.parametrize(
    "rule",
    [
        _rule(Strategy.PERCENTAGE),
        _rule(Strategy.OFFSET),
        _rule(Strategy.THRESHOLD),
        _rule(Strategy.CUSTOM),
        _rule(Strategy.CUSTOM, expression="nope * 2"),
        _rule("MAGIC", 1),
    ],
)
def test_compute_target_errors(rule):
    with pytest.raises(RuleEvaluationError):
        compute_target(rule, 10, {"quantity": 10}, None)


# ── evaluate ─────────────────────────────────────────────────────────


def test_evaluate_queues_one_push_per_pair(ctx, db_session, make_account, make_product, make_listing, make_rule):
    shopee, lazada = make_account("SHOPEE"), make_account("LAZADA")
    product = make_product(quantity=100)
    make_listing(product, shopee)
    make_listing(product, lazada)
    make_rule([shopee.id], Strategy.EXACT)
    make_rule([lazada.id], Strategy.PERCENTAGE, parameter=50)

    plan = ctx.stock.evaluate(product.id, 80, reason="manual edit")

    assert {(p.account_id, p.quantity) for p in plan} == {(shopee.id, 80), (lazada.id, 40)}
    jobs = _queued_pushes(db_session)
    assert len(jobs) == 2
    assert {j.dedup_key for j in jobs} == {push_dedup_key(product.id, shopee.id), push_dedup_key(product.id, lazada.id)}
    payload = next(j.payload for j in jobs if j.payload["account_id"] == lazada.id)
    assert payload["channel_code"] == "LAZADA"
    assert payload["quantity"] == 40
    assert payload["reason"] == "manual edit"
    assert all(j.queue == PUSH_TARGET for j in jobs)


def test_evaluate_unknown_product(ctx):
    with pytest.raises(NotFoundError):
        ctx.stock.evaluate(9999, 10)


def test_scope_product_list_and_category(ctx, make_account, make_product, make_listing, make_rule):
    account = make_account()
    listed = make_product(category_id=7)
    other = make_product(category_id=8)
    for p in (listed, other):
        make_listing(p, account)
    make_rule([account.id], scope=Scope.PRODUCT_LIST, product_ids=[listed.id])
    make_rule([account.id], Strategy.OFFSET, parameter=-1, scope=Scope.CATEGORY, category_ids=[7])

    assert len(ctx.stock.evaluate(listed.id, 10)) == 2
    assert ctx.stock.evaluate(other.id, 10) == []


def test_inactive_rules_and_other_merchants_ignored(ctx, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product()
    make_listing(product, account)
    make_rule([account.id], is_active=False)
    make_rule([account.id], merchant_id=2)
    assert ctx.stock.evaluate(product.id, 10) == []


def test_failing_rule_does_not_block_siblings(ctx, make_account, make_product, make_listing, make_rule):
    a, b = make_account(), make_account("TOKOPEDIA")
    product = make_product()
    make_listing(product, a)
    make_listing(product, b)
    make_rule([a.id], Strategy.CUSTOM, expression="missing_field + 1")
    make_rule([b.id], Strategy.PERCENTAGE)  # no parameter
    good = make_rule([b.id], Strategy.EXACT)

    plan = ctx.stock.evaluate(product.id, 12)
    assert [(p.rule_id, p.account_id, p.quantity) for p in plan] == [(good.id, b.id, 12)]


def test_skips_unsyncable_accounts_and_missing_listings(ctx, make_account, make_product, make_listing, make_rule):
    connected = make_account()
    errored = make_account(state=AccountState.ERROR)
    disabled = make_account(is_active=False)
    unlisted = make_account("LAZADA")
    product = make_product()
    for account in (connected, errored, disabled):
        make_listing(product, account)
    make_rule([connected.id, errored.id, disabled.id, unlisted.id, 9999])

    plan = ctx.stock.evaluate(product.id, 5)
    assert [p.account_id for p in plan] == [connected.id]


def test_threshold_uses_last_pushed(ctx, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product()
    make_listing(product, account, last_pushed=50)
    make_rule([account.id], Strategy.THRESHOLD, parameter=5)

    assert ctx.stock.evaluate(product.id, 54) == []
    assert [p.quantity for p in ctx.stock.evaluate(product.id, 55)] == [55]


def test_newer_quantity_supersedes_queued_push(ctx, db_session, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product()
    make_listing(product, account)
    make_rule([account.id])

    first = ctx.stock.evaluate(product.id, 90)[0].job_id
    second = ctx.stock.evaluate(product.id, 85)[0].job_id

    assert first == second
    jobs = _queued_pushes(db_session)
    assert len(jobs) == 1
    assert jobs[0].payload["quantity"] == 85


# ── Push handler ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stock_change_retries_then_lands_once(
    ctx, db_session, fake_adapter, make_account, make_product, make_listing, make_rule
):
    account = make_account()
    product = make_product(quantity=100)
    listing = make_listing(product, account)
    make_rule([account.id])
    fake_adapter.push_errors = [TransientError("timeout"), TransientError("502")]

    snapshot = await ctx.inventory.set_quantity(product.id, 80)
    assert snapshot["pushes_queued"] == 1
    await ctx.backlog.run_until_idle()

    assert fake_adapter.pushes == [(listing.external_product_id, 80)]
    entries = db_session.query(SyncLedgerEntry).all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.success is True
    assert entry.status == JobStatus.COMPLETED
    assert entry.attempts == 3
    assert entry.target_quantity == 80
    assert entry.account_id == account.id

    db_session.expire_all()
    row = db_session.get(ChannelListing, listing.id)
    assert row.last_pushed_quantity == 80
    assert row.channel_stock == 80
    assert row.last_pushed_at is not None
    assert db_session.get(ChannelAccount, account.id).last_synced_at is not None


@pytest.mark.asyncio
async def test_push_to_disconnected_account_rejected(ctx, db_session, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product()
    make_listing(product, account)
    make_rule([account.id])
    job_id = ctx.stock.evaluate(product.id, 10)[0].job_id

    account.state = AccountState.DISCONNECTED
    db_session.commit()
    await ctx.backlog.run_until_idle()

    job = ctx.backlog.get_job(job_id)
    assert job["status"] == JobStatus.FAILED
    assert job["error_type"] == RejectedError.__name__


# ── Manual trigger & listing pull ────────────────────────────────────


@pytest.mark.asyncio
async def test_trigger_sync_queues_reevaluation(ctx, fake_adapter, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product(quantity=30, reserved=4)
    make_listing(product, account)
    make_rule([account.id])

    job_ids = ctx.stock.trigger_sync([product.id, 4242], reason="manual")
    assert len(job_ids) == 1
    assert ctx.backlog.get_job(job_ids[0])["queue"] == STOCK
    # a repeat trigger while queued is deduplicated
    assert ctx.stock.trigger_sync([product.id]) == job_ids

    await ctx.backlog.run_until_idle()
    # pushes the available quantity, not quantity on hand
    assert [q for _, q in fake_adapter.pushes] == [26]


@pytest.mark.asyncio
async def test_pull_listings_links_by_sku(ctx, db_session, fake_adapter, make_account, make_product, make_listing):
    account = make_account()
    linked = make_product(sku="RED-TEE")
    known = make_product(sku="BLUE-TEE")
    make_listing(known, account, external_product_id="900", last_pushed=10)
    fake_adapter.products = [
        ChannelProduct(external_id="800", sku="RED-TEE", name="Red tee", stock=5),
        ChannelProduct(external_id="900", sku="BLUE-TEE", name="Blue tee", stock=7),
        ChannelProduct(external_id="999", sku="GHOST", name="Ghost", stock=1),
    ]

    ctx.enqueue_listing_pulls()
    await ctx.backlog.run_until_idle()

    entry = db_session.query(SyncLedgerEntry).one()
    assert entry.details["fetched"] == 3
    assert entry.details["linked"] == 1
    assert entry.details["unmatched"] == 1
    assert entry.details["drift"] == 1

    db_session.expire_all()
    row = (
        db_session.query(ChannelListing)
        .filter(ChannelListing.product_id == linked.id, ChannelListing.account_id == account.id)
        .one()
    )
    assert row.external_product_id == "800"
    assert row.channel_stock == 5


@pytest.mark.asyncio
async def test_pull_listings_account_removed_mid_pull(ctx, db_session, fake_adapter, make_account):
    account = make_account()

    async def list_then_remove():
        db_session.delete(account)
        db_session.commit()
        return [ChannelProduct(external_id="800", sku="RED-TEE", name="Red tee", stock=5)]

    fake_adapter.list_products = list_then_remove
    with pytest.raises(NotFoundError):
        await ctx.stock.handle_pull_listings(SimpleNamespace(payload={"account_id": account.id}))

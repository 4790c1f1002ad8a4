"""
conftest.py — Shared Test Fixtures for ChannelSync

Provides an in-memory SQLite database, a SyncContext wired to a scripted
fake channel adapter, a FastAPI TestClient with the context overridden,
and factory fixtures for accounts, products, listings and sync rules.

Business Rules:
- All tests run against an isolated in-memory DB
- No test ever reaches a real channel: the adapter factory returns FakeAdapter
- Backoff is zeroed so retry paths run without sleeping

Called by: all test files via pytest autodiscovery
Depends on: channelsync.models (Base), channelsync.database (get_db), channelsync.context
"""

import os
os.environ["TESTING"] = "1"  # Must be set before importing channelsync modules

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from channelsync.channels import ChannelAdapter, PushResult
from channelsync.config import settings
from channelsync.context import SyncContext
from channelsync.models import (
    AccountState,
    Base,
    ChannelAccount,
    ChannelListing,
    InventoryRecord,
    Product,
    Scope,
    Strategy,
    SyncRule,
)

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fake channel ─────────────────────────────────────────────────────


class FakeAdapter(ChannelAdapter):
    """Scripted adapter: records calls, raises queued errors first."""

    code = "FAKE"

    def __init__(self):
        super().__init__(SimpleNamespace(credentials={}))
        self.pushes: list[tuple[str, int]] = []
        self.push_errors: list[Exception] = []
        self.products = []
        self.orders = []
        self.fetch_calls = []
        self.fetch_errors: list[Exception] = []
        self.fetch_resumes = []
        # resume tokens handed out by successive pulls, as if each stopped early
        self.resume_script: list = []
        self.status_updates: list[tuple[str, str]] = []
        self.connection_error: Exception | None = None

    async def list_products(self):
        return list(self.products)

    async def push_stock(self, listing, quantity):
        if self.push_errors:
            raise self.push_errors.pop(0)
        self.pushes.append((listing.external_product_id, quantity))
        return PushResult(external_id=listing.external_product_id, quantity=quantity)

    async def fetch_orders(self, since, until=None, resume=None):
        self.fetch_calls.append((since, until))
        self.fetch_resumes.append(resume)
        self.resume_token = None
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if self.resume_script:
            self.resume_token = self.resume_script.pop(0)
        return list(self.orders)

    async def update_order_status(self, order_ref, status):
        self.status_updates.append((order_ref, status))
        return {"order_ref": order_ref, "status": status}

    async def test_connection(self):
        if self.connection_error is not None:
            raise self.connection_error
        return {"shop_name": "Fake Shop"}


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    return TestSessionLocal


@pytest.fixture()
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def ctx(session_factory, fake_adapter) -> SyncContext:
    """A SyncContext on the test DB. Workers are not started; tests drive the backlog."""
    return SyncContext(
        session_factory,
        settings,
        adapter_factory=lambda account: fake_adapter,
        backlog_options={"backoff_base": 0, "jitter": 0, "poll_interval": 0.01},
    )


@pytest.fixture()
def make_account(db_session: Session):
    def _make(channel_code="SHOPEE", merchant_id=1, state=AccountState.CONNECTED, **kw) -> ChannelAccount:
        account = ChannelAccount(
            merchant_id=merchant_id,
            channel_code=channel_code,
            name=kw.pop("name", f"{channel_code.title()} Store"),
            shop_id=kw.pop("shop_id", "shop-1"),
            credentials=kw.pop("credentials", {"access_token": "tok"}),
            state=state,
            **kw,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture()
def make_product(db_session: Session):
    counter = {"n": 0}

    def _make(quantity=100, merchant_id=1, sku=None, category_id=None, min_threshold=0, reserved=0, price=10.0):
        counter["n"] += 1
        product = Product(
            merchant_id=merchant_id,
            sku=sku or f"SKU-{counter['n']:03d}",
            name=f"Product {counter['n']}",
            category_id=category_id,
            price=price,
        )
        db_session.add(product)
        db_session.flush()
        db_session.add(
            InventoryRecord(
                product_id=product.id,
                quantity=quantity,
                reserved=reserved,
                min_threshold=min_threshold,
            )
        )
        db_session.commit()
        return product

    return _make


@pytest.fixture()
def make_listing(db_session: Session):
    def _make(product, account, external_product_id=None, last_pushed=None, variant_id=None) -> ChannelListing:
        listing = ChannelListing(
            product_id=product.id,
            account_id=account.id,
            external_product_id=external_product_id or f"ext-{product.id}-{account.id}",
            external_variant_id=variant_id,
            external_sku=product.sku,
            last_pushed_quantity=last_pushed,
        )
        db_session.add(listing)
        db_session.commit()
        return listing

    return _make


@pytest.fixture()
def make_rule(db_session: Session):
    def _make(account_ids, strategy=Strategy.EXACT, parameter=None, scope=Scope.ALL_PRODUCTS, merchant_id=1, **kw):
        rule = SyncRule(
            merchant_id=merchant_id,
            name=kw.pop("name", f"{strategy} rule"),
            strategy=strategy,
            scope=scope,
            target_account_ids=list(account_ids),
            parameter=parameter,
            **kw,
        )
        db_session.add(rule)
        db_session.commit()
        return rule

    return _make


@pytest.fixture()
def client(db_session: Session, ctx: SyncContext) -> TestClient:
    """FastAPI TestClient with get_db and get_context overridden.

    Used without a ``with`` block so the lifespan (and a real context) never starts.
    """
    from channelsync.database import get_db
    from channelsync.dependencies import get_context
    from channelsync.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_context] = lambda: ctx
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

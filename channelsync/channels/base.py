"""
channels/base.py — Common capability interface for sales-channel clients

Every channel family implements ChannelAdapter. Callers (the stock and
order engines, the account service) only depend on this interface and on
the typed errors in errors.py, so adding a channel means writing one
subclass and registering it.

Business Rules:
- One adapter instance is bound to one ChannelAccount (credentials, shop id)
- Adapters never retry; retry policy lives in the job backlog
- With a gate bound (RateGovernor.gate), every HTTP request takes one slot
  first: GET spends the read budget, anything else the write budget
- Order pulls finish one page (list plus details) before the next
- A pull that stops at max_pages with more pages left, or runs out of rate
  budget after at least one page, sets resume_token; passing it back as
  `resume` continues where the pull stopped
- Every call carries a deadline; exceeding it raises TransientError
- HTTP 401/403 -> AuthError, 429 -> RateLimitedError, 5xx/408 -> TransientError,
  other 4xx -> RejectedError; channel-level error bodies are checked per family

Called by: channels/registry.py, stock_sync.py, order_sync.py, accounts.py
Depends on: errors.py, http_client.py, config.py, rate_governor.py (READ/WRITE)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from ..config import settings
from ..errors import AuthError, RateLimitedError, RejectedError, TransientError
from ..rate_governor import READ, WRITE
from ..utils import safe_float

log = logging.getLogger(__name__)


# ── Normalized channel records ───────────────────────────────────────


@dataclass
class ChannelProduct:
    external_id: str
    sku: str | None
    name: str
    stock: int | None = None
    price: float | None = None
    variant_id: str | None = None
    status: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class ListingRef:
    """Where a product lives on a channel: item id plus optional variant."""

    external_product_id: str
    external_variant_id: str | None = None
    sku: str | None = None


@dataclass
class PushResult:
    external_id: str
    quantity: int
    accepted: bool = True
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class ChannelOrderItem:
    external_product_id: str | None
    sku: str | None
    name: str
    quantity: int
    unit_price: float = 0.0
    external_variant_id: str | None = None

    @property
    def total_price(self) -> float:
        return round(self.unit_price * self.quantity, 2)


@dataclass
class ChannelOrder:
    external_id: str
    status: str
    total_amount: float = 0.0
    items: list[ChannelOrderItem] = field(default_factory=list)
    shipping_cost: float = 0.0
    currency: str | None = None
    ordered_at: datetime | None = None
    customer: dict = field(default_factory=dict)
    shipping_address: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)


# ── Adapter base ─────────────────────────────────────────────────────


class ChannelAdapter(ABC):
    """Client for one channel account."""

    code: str = ""
    BASE_URL: str = ""
    # Channel-native status -> canonical order status
    STATUS_MAP: dict[str, str] = {}
    # op class -> (calls, window seconds)
    RATE_LIMITS: dict[str, tuple[int, float]] = {"read": (10, 1.0), "write": (5, 1.0)}

    def __init__(self, account, client: httpx.AsyncClient | None = None, timeout: float | None = None):
        self.account = account
        self.credentials = dict(account.credentials or {})
        self.timeout = timeout or settings.channel_timeout_seconds
        self.page_size = settings.order_page_size
        self.max_pages = settings.order_pull_max_pages
        self._client = client
        self.gate = None
        self.resume_token = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        from ..http_client import channel_http

        return channel_http()

    # ── Capability interface ──

    @abstractmethod
    async def list_products(self) -> list[ChannelProduct]:
        pass

    @abstractmethod
    async def push_stock(self, listing: ListingRef, quantity: int) -> PushResult:
        pass

    @abstractmethod
    async def fetch_orders(
        self, since: datetime, until: datetime | None = None, resume=None
    ) -> list[ChannelOrder]:
        pass

    @abstractmethod
    async def update_order_status(self, order_ref: str, status: str) -> dict:
        pass

    @abstractmethod
    async def test_connection(self) -> dict:
        pass

    def _pause(self, exc: RateLimitedError, resume, pages_done: int) -> None:
        """Keep the pages already pulled when the budget runs out mid-pull."""
        if not pages_done:
            raise exc
        log.info(f"{self.code} order pull paused after {pages_done} pages (retry in {exc.retry_after:.1f}s)")
        self.resume_token = resume

    # ── Transport ──

    def _sign(self, method: str, path: str, params: dict, body) -> tuple[dict, dict]:
        """Return (headers, params) for the request. Override per channel."""
        return {"Content-Type": "application/json"}, params

    def _check_body(self, data: dict, path: str) -> None:
        """Raise a typed error for channel-level failures in a 2xx body."""

    async def _request(self, method: str, path: str, *, params: dict | None = None, json=None) -> dict:
        op_class = READ if method.upper() == "GET" else WRITE
        if self.gate is not None:
            await self.gate.acquire(op_class)
        headers, signed = self._sign(method, path, dict(params or {}), json)
        try:
            r = await asyncio.wait_for(
                self.client.request(
                    method,
                    f"{self.BASE_URL}{path}",
                    params=signed,
                    json=json,
                    headers=headers,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientError(f"{method} {path} timed out", channel=self.code) from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}", channel=self.code) from e

        try:
            self._raise_for_status(r, path)
        except RateLimitedError as e:
            if self.gate is not None:
                self.gate.penalize(op_class, e.retry_after)
            raise
        try:
            data = r.json()
        except ValueError as e:
            raise TransientError(f"{path} returned invalid JSON", channel=self.code) from e
        if not isinstance(data, dict):
            data = {"data": data}
        self._check_body(data, path)
        return data

    def _raise_for_status(self, r: httpx.Response, path: str) -> None:
        status = r.status_code
        if status < 400:
            return
        excerpt = r.text[:200]
        if status in (401, 403):
            raise AuthError(f"{path}: HTTP {status} {excerpt}", channel=self.code, status_code=status)
        if status == 429:
            retry_after = safe_float(r.headers.get("Retry-After")) or 1.0
            raise RateLimitedError(
                f"{path}: HTTP 429", channel=self.code, status_code=status, retry_after=retry_after
            )
        if status >= 500 or status == 408:
            raise TransientError(f"{path}: HTTP {status} {excerpt}", channel=self.code, status_code=status)
        raise RejectedError(f"{path}: HTTP {status} {excerpt}", channel=self.code, status_code=status)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} account={getattr(self.account, 'id', None)}>"

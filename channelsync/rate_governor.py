"""
rate_governor.py — Per-account outbound call budgets

One sliding-window limiter per (channel account, operation class). Workers
call acquire() before every channel call; when the window is full the
worker sleeps until the oldest call ages out instead of spinning. Read and
write classes have independent budgets.

Business Rules:
- N calls per window W, refilled continuously (timestamp log, not buckets)
- acquire() waits cooperatively; waiters are served in arrival order
- With a timeout, acquire() raises RateLimitedError as soon as it knows the
  slot will not free in time (retry_after tells the backlog when to retry)
- Limits come from the account's rate_limit_profile, else the adapter defaults
- penalize() blocks a bucket after the channel itself answered 429

Called by: channels/base.py (before every HTTP request, through AccountGate),
           stock_sync.py, order_sync.py, accounts.py (bind a gate to each adapter)
Depends on: errors.py, channels/registry.py
"""

import asyncio
import logging
import time
from collections import deque

from .errors import RateLimitedError

log = logging.getLogger(__name__)

READ = "read"
WRITE = "write"
DEFAULT_LIMITS = {READ: (10, 1.0), WRITE: (5, 1.0)}


class SlidingWindowLimiter:
    """Allows ``limit`` calls in any ``window`` seconds."""

    def __init__(self, limit: int, window: float, clock=time.monotonic, sleep=asyncio.sleep):
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window > 0")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - self.window:
            self._calls.popleft()

    def wait_time(self, now: float | None = None) -> float:
        """Seconds until a slot is free (0 if one is free now)."""
        now = self._clock() if now is None else now
        self._prune(now)
        wait = max(0.0, self._blocked_until - now)
        if len(self._calls) >= self.limit:
            wait = max(wait, self._calls[0] + self.window - now)
        return wait

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    def block_for(self, seconds: float) -> None:
        self._blocked_until = max(self._blocked_until, self._clock() + seconds)

    async def acquire(self, timeout: float | None = None) -> None:
        start = self._clock()
        if timeout is None:
            await self._lock.acquire()
        else:
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise RateLimitedError(
                    "timed out waiting for rate limit slot", retry_after=self.window
                ) from None
        try:
            while True:
                now = self._clock()
                wait = self.wait_time(now)
                if wait <= 0:
                    self._calls.append(now)
                    return
                if timeout is not None and (now - start) + wait > timeout:
                    raise RateLimitedError(
                        f"no slot within {timeout:.2f}s", retry_after=wait
                    )
                await self._sleep(wait)
        finally:
            self._lock.release()


class RateGovernor:
    """Registry of limiters keyed by (account id, op class)."""

    def __init__(self, clock=time.monotonic, sleep=asyncio.sleep):
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[tuple[int, str], SlidingWindowLimiter] = {}

    def _limits_for(self, account, op_class: str) -> tuple[int, float]:
        profile = account.rate_limit_profile or {}
        if op_class in profile:
            limit, window = profile[op_class]
            return int(limit), float(window)
        from .channels.registry import get_adapter_class, is_supported

        if is_supported(account.channel_code):
            limits = get_adapter_class(account.channel_code).RATE_LIMITS
            if op_class in limits:
                return limits[op_class]
        return DEFAULT_LIMITS.get(op_class, DEFAULT_LIMITS[READ])

    def limiter_for(self, account, op_class: str) -> SlidingWindowLimiter:
        key = (account.id, op_class)
        limiter = self._limiters.get(key)
        if limiter is None:
            limit, window = self._limits_for(account, op_class)
            limiter = SlidingWindowLimiter(limit, window, clock=self._clock, sleep=self._sleep)
            self._limiters[key] = limiter
        return limiter

    def configure(self, account, op_class: str, limit: int, window: float) -> None:
        """Replace the limiter for one account/op class (profile edits)."""
        self._limiters[(account.id, op_class)] = SlidingWindowLimiter(
            limit, window, clock=self._clock, sleep=self._sleep
        )

    async def acquire(self, account, op_class: str, timeout: float | None = None) -> None:
        limiter = self.limiter_for(account, op_class)
        try:
            await limiter.acquire(timeout)
        except RateLimitedError as e:
            e.channel = account.channel_code
            log.info(
                f"Rate governor: account {account.id} {op_class} saturated, retry in {e.retry_after:.2f}s"
            )
            raise

    def penalize(self, account, op_class: str, retry_after: float) -> None:
        self.limiter_for(account, op_class).block_for(retry_after)
        log.warning(f"Rate governor: account {account.id} {op_class} blocked for {retry_after:.1f}s")

    def forget(self, account_id: int) -> None:
        for key in [k for k in self._limiters if k[0] == account_id]:
            del self._limiters[key]

    def gate(self, account, timeout: float | None = None) -> "AccountGate":
        return AccountGate(self, account, timeout)


class AccountGate:
    """One account's view of the governor, handed to its adapter.

    The adapter calls acquire() before every HTTP request, so a paginated
    pull spends one slot per page, and penalize() when the channel answers 429.
    """

    def __init__(self, governor: RateGovernor, account, timeout: float | None = None):
        self.governor = governor
        self.account = account
        self.timeout = timeout

    async def acquire(self, op_class: str) -> None:
        await self.governor.acquire(self.account, op_class, timeout=self.timeout)

    def penalize(self, op_class: str, retry_after: float) -> None:
        self.governor.penalize(self.account, op_class, retry_after)

"""
errors.py — Typed failure taxonomy for the sync engine

Channel adapters translate every transport failure into one of these
types. The job backlog reads the type to decide between retry, reschedule
and terminal failure; the engines only ever see these classes.

Business Rules:
- AuthError: permanent, account flagged ERROR, never retried
- RateLimitedError: rescheduled after retry_after, does not consume an attempt
- TransientError: network/timeout/5xx, retried with backoff, consumes an attempt
- RejectedError: channel refused the payload, terminal, surfaced to the ledger
- RuleEvaluationError: confined to one sync rule, sibling rules still run

Called by: channels/*, rate_governor, backlog, stock_sync, order_sync
Depends on: nothing
"""


class SyncError(Exception):
    """Root of the engine's error taxonomy."""


class ChannelError(SyncError):
    """A channel call failed. Subclasses say how the backlog should react."""

    retryable = False

    def __init__(self, detail: str = "", *, channel: str | None = None, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.channel = channel
        self.status_code = status_code

    def __str__(self) -> str:
        prefix = f"[{self.channel}] " if self.channel else ""
        return f"{prefix}{self.detail}"


class AuthError(ChannelError):
    """Credentials rejected by the channel."""


class RateLimitedError(ChannelError):
    """Caller must back off for retry_after seconds."""

    retryable = True

    def __init__(self, detail: str = "rate limited", *, retry_after: float = 1.0, **kwargs):
        super().__init__(detail, **kwargs)
        self.retry_after = max(0.0, float(retry_after))


class TransientError(ChannelError):
    """Network error, timeout or 5xx."""

    retryable = True


class RejectedError(ChannelError):
    """Channel-side validation failure for this specific payload."""


class RuleEvaluationError(SyncError):
    """A single sync rule could not produce a target quantity."""

    def __init__(self, rule_id, detail: str):
        super().__init__(f"rule {rule_id}: {detail}")
        self.rule_id = rule_id
        self.detail = detail


class NotFoundError(SyncError):
    """A referenced product, account, order or job does not exist."""

"""
events.py — Best-effort notification events for the dashboard

The engine announces what happened (sync finished, stock low, order
received) without waiting on anyone to listen. In-process subscribers are
called directly; if an event webhook is configured the event is also
queued as a deliver-event job on the notification queue.

Business Rules:
- emit() never raises and never blocks the state transition that caused it
- A failing subscriber is logged and skipped; other subscribers still run
- Webhook delivery failures retry on the notification queue only; they
  never touch the originating job

Called by: backlog.py, inventory.py, order_sync.py
Depends on: http_client.py (webhook delivery), config.py
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable

import httpx
from loguru import logger

SYNC_COMPLETED = "sync-completed"
SYNC_FAILED = "sync-failed"
LOW_STOCK_ALERT = "low-stock-alert"
ORDER_RECEIVED = "order-received"
INVENTORY_UPDATED = "inventory-updated"

EVENT_NAMES = (SYNC_COMPLETED, SYNC_FAILED, LOW_STOCK_ALERT, ORDER_RECEIVED, INVENTORY_UPDATED)


class EventBus:
    def __init__(self, webhook_url: str = ""):
        self.webhook_url = webhook_url
        self._subscribers: dict[str, list[Callable]] = defaultdict(list)
        self._backlog = None

    def attach_backlog(self, backlog) -> None:
        """Route webhook delivery through the notification queue."""
        self._backlog = backlog

    def subscribe(self, name: str, callback: Callable[[str, dict], None]) -> None:
        """Register ``callback(name, payload)``; use "*" for every event."""
        self._subscribers[name].append(callback)

    def unsubscribe(self, name: str, callback: Callable) -> None:
        if callback in self._subscribers.get(name, []):
            self._subscribers[name].remove(callback)

    def emit(self, name: str, payload: dict) -> None:
        for callback in list(self._subscribers.get(name, [])) + list(self._subscribers.get("*", [])):
            try:
                callback(name, payload)
            except Exception as e:
                logger.warning("Event subscriber failed for {}: {}", name, e)

        if self.webhook_url and self._backlog is not None:
            try:
                self._backlog.enqueue(
                    "notification",
                    "deliver-event",
                    {
                        "event": name,
                        "payload": payload,
                        "emitted_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
            except Exception as e:
                logger.warning("Could not queue {} for webhook delivery: {}", name, e)


async def deliver_event(job_payload: dict, webhook_url: str, client=None) -> dict:
    """deliver-event handler body: POST the event to the configured webhook."""
    from .errors import RejectedError, TransientError

    if client is None:
        from .http_client import events_http

        client = events_http()

    try:
        r = await client.post(
            webhook_url,
            json={"event": job_payload.get("event"), "data": job_payload.get("payload") or {}},
        )
    except httpx.HTTPError as e:
        raise TransientError(f"event webhook unreachable: {e}") from e
    if r.status_code >= 500 or r.status_code == 429:
        raise TransientError(f"event webhook returned {r.status_code}")
    if r.status_code >= 400:
        raise RejectedError(f"event webhook returned {r.status_code}")
    return {"event": job_payload.get("event"), "status_code": r.status_code}

"""
http_client.py — Pooled outbound HTTP clients

Business Rules:
- Channel API calls share one pool: no redirects, CHANNEL_TIMEOUT_SECONDS
  default deadline (adapters may pass a per-request timeout)
- Event webhooks get a small separate pool so a slow dashboard cannot starve
  channel calls
- Clients are created on first use and re-created after close_clients(),
  so a context can be stopped and started again in one process

Called by: channels/base.py, events.py, context.py (shutdown)
Depends on: config.py
"""

import httpx

from .config import settings

USER_AGENT = "channelsync/1.0"

_clients: dict[str, httpx.AsyncClient] = {}


def _build(name: str) -> httpx.AsyncClient:
    if name == "events":
        return httpx.AsyncClient(
            timeout=10,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
        )
    return httpx.AsyncClient(
        timeout=settings.channel_timeout_seconds,
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=20, keepalive_expiry=30),
        headers={"User-Agent": USER_AGENT},
        follow_redirects=False,
    )


def _get(name: str) -> httpx.AsyncClient:
    client = _clients.get(name)
    if client is None or client.is_closed:
        client = _clients[name] = _build(name)
    return client


def channel_http() -> httpx.AsyncClient:
    return _get("channels")


def events_http() -> httpx.AsyncClient:
    return _get("events")


async def close_clients() -> None:
    """Close every open client. Safe to call when none were created."""
    while _clients:
        _, client = _clients.popitem()
        if not client.is_closed:
            await client.aclose()

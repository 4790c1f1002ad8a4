"""
rate_limit.py — Inbound API rate limiting (slowapi)

Business Rules:
- Limits are keyed per merchant (X-Merchant-Id header), per client IP otherwise
- POST /api/sync/trigger has its own tighter limit; it fans out into push jobs
- Storage is Redis when CACHE_BACKEND=redis and the server answers a ping,
  in-memory otherwise (limits then apply per process)
- Disabled when TESTING is set
- Outbound channel budgets are rate_governor.py's job, not this module's

Called by: main.py, routers/sync.py
Depends on: config.py, slowapi, redis
"""

import redis
from loguru import logger
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from .config import settings

MERCHANT_HEADER = "X-Merchant-Id"


def merchant_key(request: Request) -> str:
    merchant = (request.headers.get(MERCHANT_HEADER) or "").strip()
    if merchant.isdigit():
        return f"merchant:{merchant}"
    return get_remote_address(request)


def _resolve_storage() -> str | None:
    if settings.cache_backend != "redis" or not settings.redis_url:
        return None
    try:
        redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
    except (redis.RedisError, OSError) as e:
        logger.warning("Redis unavailable for rate limiting ({}), limits are per process", e)
        return None
    logger.info("Rate limiter using Redis storage")
    return settings.redis_url


limiter = Limiter(
    key_func=merchant_key,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled and not settings.testing,
    storage_uri=_resolve_storage(),
)

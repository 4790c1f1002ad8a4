"""
main.py — ChannelSync API application

Builds the FastAPI app, owns the SyncContext lifecycle and maps engine
errors to HTTP responses.

Business Rules:
- The lifespan builds one SyncContext; workers + scheduler start unless TESTING
- Shutdown drains in-flight jobs before stopping workers
- Every error body is an ErrorResponse (error, status_code, request_id, detail)
- NotFoundError -> 404, RateLimitedError -> 429 (Retry-After), other channel errors -> 502

Called by: uvicorn (channelsync.main:app)
Depends on: context.py, routers/*, rate_limit.py, logging_config.py
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .context import SyncContext
from .errors import ChannelError, NotFoundError, RateLimitedError
from .logging_config import setup_logging
from .rate_limit import limiter
from .routers import accounts, inventory, orders, rules, sync
from .schemas.errors import ErrorResponse

APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.is_production and settings.secret_key == "change-me":
        logger.warning("SECRET_KEY is the default; channel credentials are encrypted with a well-known key")
    ctx = SyncContext()
    app.state.ctx = ctx
    if not settings.testing:
        await ctx.start()
    logger.info("ChannelSync {} ready", APP_VERSION)
    yield
    if not settings.testing:
        await ctx.stop()
    app.state.ctx = None


app = FastAPI(title="ChannelSync", version=APP_VERSION, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


# ── Error handlers ───────────────────────────────────────────────────


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or uuid.uuid4().hex[:12]


def _error(request: Request, status_code: int, error: str, detail=None, headers=None, channel=None) -> JSONResponse:
    body = ErrorResponse(
        error=error, status_code=status_code, request_id=_request_id(request), channel=channel, detail=detail
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(request, exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    detail = [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]
    return _error(request, 422, "Validation error", detail=detail)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(request, 404, str(exc))


@app.exception_handler(RateLimitedError)
async def channel_rate_limited_handler(request: Request, exc: RateLimitedError):
    retry = max(1, round(exc.retry_after))
    return _error(request, 429, str(exc), headers={"Retry-After": str(retry)}, channel=exc.channel)


@app.exception_handler(ChannelError)
async def channel_error_handler(request: Request, exc: ChannelError):
    logger.warning("Channel error on {}: {}", request.url.path, exc)
    return _error(request, 502, str(exc), channel=exc.channel)


# ── Routers ──────────────────────────────────────────────────────────

app.include_router(sync.router)
app.include_router(rules.router)
app.include_router(inventory.router)
app.include_router(orders.router)
app.include_router(accounts.router)


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}

"""
dependencies.py — Shared FastAPI dependencies

Business Rules:
- The SyncContext is built once by the app lifespan and stored on app.state
- Routers never construct engines themselves; tests override get_context

Called by: all routers
Depends on: context.py
"""

from fastapi import HTTPException, Request

from .context import SyncContext


def get_context(request: Request) -> SyncContext:
    """Dependency: the running SyncContext, 503 if the app has not started one."""
    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise HTTPException(503, "Sync engine not started")
    return ctx

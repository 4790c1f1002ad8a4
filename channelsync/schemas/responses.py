"""
schemas/responses.py — Shared response models for OpenAPI documentation

Used as response_model= on router decorators.

Called by: routers/*.py
Depends on: pydantic
"""

from __future__ import annotations

from pydantic import BaseModel, Field


# ── Base Wrappers ───────────────────────────────────────────────────────


class OkResponse(BaseModel):
    ok: bool = True


# ── Sync ────────────────────────────────────────────────────────────────


class SyncTriggerResponse(BaseModel):
    ok: bool = True
    job_ids: list[int] = Field(default_factory=list)
    queued: int = 0


class SyncStatsResponse(BaseModel):
    time_range: str
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    success_rate: float = 0


class SyncLogsResponse(BaseModel):
    items: list[dict] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0
    has_next: bool = False
    has_prev: bool = False


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    stalled: int = 0
    cancelled: int = 0


class JobOut(BaseModel, extra="allow"):
    id: int
    queue: str
    job_type: str
    status: str
    attempts: int = 0
    max_attempts: int = 0


class JobEnqueuedResponse(BaseModel):
    ok: bool = True
    job_id: int


# ── Accounts ────────────────────────────────────────────────────────────


class AccountOut(BaseModel, extra="allow"):
    id: int
    merchant_id: int
    channel_code: str
    name: str
    state: str
    is_active: bool = True


class AccountListResponse(BaseModel):
    accounts: list[AccountOut] = Field(default_factory=list)
    total: int = 0


# ── Inventory & orders ──────────────────────────────────────────────────


class InventoryOut(BaseModel, extra="allow"):
    product_id: int
    quantity: int = 0
    reserved: int = 0
    available: int = 0
    oversold: bool = False
    pushes_queued: int = 0


class OrderOut(BaseModel, extra="allow"):
    id: int
    order_number: str
    status: str
    channel_status: str | None = None
    needs_review: bool = False

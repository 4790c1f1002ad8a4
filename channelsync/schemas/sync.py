"""
schemas/sync.py — Request bodies for sync, inventory and order endpoints

Business Rules:
- A trigger needs at least one product id (max 500 per call)
- An inventory edit sets an absolute quantity or applies a delta, not both
- Order status must be a canonical status

Called by: routers/sync.py, routers/inventory.py, routers/orders.py
Depends on: pydantic, order_status.py
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from ..order_status import STATUSES


class SyncTriggerRequest(BaseModel):
    product_ids: list[int] = Field(min_length=1, max_length=500)
    reason: str = Field(default="manual", max_length=255)

    @field_validator("product_ids")
    @classmethod
    def dedupe(cls, v: list[int]) -> list[int]:
        return list(dict.fromkeys(v))


class InventoryAdjustRequest(BaseModel):
    quantity: int | None = Field(default=None, ge=0)
    delta: int | None = None
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def one_of(self):
        if (self.quantity is None) == (self.delta is None):
            raise ValueError("provide exactly one of quantity or delta")
        if self.delta == 0:
            raise ValueError("delta must be non-zero")
        return self


class OrderStatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=500)
    push: bool = True

    @field_validator("status")
    @classmethod
    def canonical(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        return v

"""Inventory API — manual stock edits routed through the inventory service."""

from fastapi import APIRouter, Depends, HTTPException

from ..context import SyncContext
from ..dependencies import get_context
from ..models import MovementSource
from ..schemas.responses import InventoryOut
from ..schemas.sync import InventoryAdjustRequest

router = APIRouter(tags=["inventory"])


@router.get("/api/inventory/{product_id}", response_model=InventoryOut)
def get_inventory(product_id: int, ctx: SyncContext = Depends(get_context)):
    return ctx.inventory.get(product_id)


@router.post("/api/inventory/{product_id}/adjust", response_model=InventoryOut)
async def adjust_inventory(
    product_id: int,
    body: InventoryAdjustRequest,
    ctx: SyncContext = Depends(get_context),
):
    try:
        if body.quantity is not None:
            return await ctx.inventory.set_quantity(
                product_id, body.quantity, reason=body.reason, source=MovementSource.MANUAL
            )
        return await ctx.inventory.adjust(product_id, body.delta, reason=body.reason, source=MovementSource.MANUAL)
    except ValueError as e:
        raise HTTPException(400, str(e))

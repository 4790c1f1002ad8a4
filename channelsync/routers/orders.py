"""Orders API — order detail with timeline, merchant status changes."""

from fastapi import APIRouter, Depends

from ..context import SyncContext
from ..dependencies import get_context
from ..schemas.responses import OrderOut
from ..schemas.sync import OrderStatusUpdate

router = APIRouter(tags=["orders"])


@router.get("/api/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, ctx: SyncContext = Depends(get_context)):
    return ctx.orders.get_order(order_id)


@router.post("/api/orders/{order_id}/status", response_model=OrderOut)
async def set_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    ctx: SyncContext = Depends(get_context),
):
    """Merchant status change; pushed to the channel on the order queue unless push=false."""
    return await ctx.orders.set_order_status(order_id, body.status, reason=body.reason, push=body.push)

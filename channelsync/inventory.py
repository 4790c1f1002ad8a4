"""
inventory.py — Inventory service: the single write path for stock records

Every stock change (manual edit, order commit, reservation) goes through
here so that it is serialized per product, leaves a movement behind, and
fans out to the stock sync engine.

Business Rules:
- Writes to one product are serialized (asyncio lock + row lock where the DB has one)
- available = quantity - reserved; negative available is flagged oversold, not rejected
- Every write records a StockMovement
- Order deductions are idempotent per (order, product): the ORDER movement is the marker
- inventory-updated after every write; low-stock-alert when available <= min_threshold
- After commit, the new available quantity is handed to StockSyncEngine.evaluate

Called by: routers/inventory.py, order_sync.py (order commit)
Depends on: models/inventory.py, events.py, stock_sync.py
"""

import asyncio
import logging
from collections import defaultdict

from .errors import NotFoundError
from .events import INVENTORY_UPDATED, LOW_STOCK_ALERT
from .models import InventoryRecord, MovementSource, MovementType, Product, StockMovement

log = logging.getLogger(__name__)


class InventoryService:
    def __init__(self, session_factory, events=None, stock_engine=None):
        self._session_factory = session_factory
        self.events = events
        self.stock_engine = stock_engine
        self._locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, product_id: int) -> dict:
        with self._session_factory() as db:
            if db.get(Product, product_id) is None:
                raise NotFoundError(f"product {product_id} not found")
            record = db.query(InventoryRecord).filter(InventoryRecord.product_id == product_id).first()
            return _snapshot(product_id, record)

    async def set_quantity(
        self, product_id: int, quantity: int, reason: str | None = None, source: str = MovementSource.MANUAL
    ) -> dict:
        if quantity < 0:
            raise ValueError("quantity must be >= 0")

        def apply(record):
            record.quantity = quantity
            return MovementType.SET, quantity

        return await self._write(product_id, apply, reason, source)

    async def adjust(
        self,
        product_id: int,
        delta: int,
        reason: str | None = None,
        source: str = MovementSource.MANUAL,
        order_id: int | None = None,
    ) -> dict:
        if delta == 0:
            raise ValueError("delta must be non-zero")

        def apply(record):
            record.quantity = (record.quantity or 0) + delta
            return (MovementType.IN if delta > 0 else MovementType.OUT), abs(delta)

        return await self._write(product_id, apply, reason, source, order_id=order_id)

    async def deduct_for_order(self, product_id: int, qty: int, order_id: int, reason: str | None = None):
        """Take ``qty`` units out for an order, at most once per (order, product).

        Returns None when the order already deducted this product, so a
        retried commit only applies the lines that did not land.
        """
        if qty <= 0:
            raise ValueError("qty must be positive")

        def apply(record):
            record.quantity = (record.quantity or 0) - qty
            return MovementType.OUT, qty

        return await self._write(product_id, apply, reason, MovementSource.ORDER, order_id=order_id, once=True)

    async def reserve(self, product_id: int, qty: int, reason: str | None = None) -> dict:
        """Hold ``qty`` units (negative releases). Quantity on hand is unchanged."""
        if qty == 0:
            raise ValueError("qty must be non-zero")

        def apply(record):
            record.reserved = max(0, (record.reserved or 0) + qty)
            return (MovementType.OUT if qty > 0 else MovementType.IN), abs(qty)

        return await self._write(
            product_id, apply, reason or f"reserve {qty}", MovementSource.SYSTEM, track_available=True
        )

    async def _write(self, product_id, apply, reason, source, order_id=None, track_available=False, once=False):
        async with self._locks[product_id]:
            with self._session_factory() as db:
                if once and _already_moved(db, product_id, order_id, source):
                    log.info(f"Inventory {product_id}: order {order_id} already deducted, skipping")
                    return None
                q = db.query(InventoryRecord).filter(InventoryRecord.product_id == product_id)
                if db.bind.dialect.name == "postgresql":
                    q = q.with_for_update()
                record = q.first()
                if record is None:
                    if db.get(Product, product_id) is None:
                        raise NotFoundError(f"product {product_id} not found")
                    record = InventoryRecord(product_id=product_id, quantity=0, reserved=0, min_threshold=0)
                    db.add(record)
                    db.flush()

                # reservations log available before/after, everything else logs quantity
                before = record.available if track_available else (record.quantity or 0)
                movement_type, amount = apply(record)
                after = record.available if track_available else record.quantity
                was_oversold = record.oversold
                record.oversold = record.available < 0

                db.add(
                    StockMovement(
                        product_id=product_id,
                        movement_type=movement_type,
                        quantity=amount,
                        quantity_before=before,
                        quantity_after=after,
                        reason=reason,
                        source=source,
                        order_id=order_id,
                    )
                )
                db.commit()
                snapshot = _snapshot(product_id, record)

        available = snapshot["available"]
        if snapshot["oversold"] and not was_oversold:
            log.warning(f"Product {product_id} oversold: available {available}")
        log.info(f"Inventory {product_id}: {movement_type} {amount} ({source}) -> available {available}")

        if self.events is not None:
            self.events.emit(INVENTORY_UPDATED, {"productId": product_id, "newStock": available})
            if available <= snapshot["min_threshold"]:
                self.events.emit(LOW_STOCK_ALERT, {"productId": product_id, "currentStock": available})

        if self.stock_engine is not None:
            plan = self.stock_engine.evaluate(product_id, available, reason=reason)
            snapshot["pushes_queued"] = len(plan)
        return snapshot


def _snapshot(product_id: int, record: InventoryRecord | None) -> dict:
    if record is None:
        return {
            "product_id": product_id,
            "quantity": 0,
            "reserved": 0,
            "available": 0,
            "min_threshold": 0,
            "oversold": False,
        }
    return {
        "product_id": product_id,
        "quantity": record.quantity,
        "reserved": record.reserved,
        "available": record.available,
        "min_threshold": record.min_threshold,
        "oversold": bool(record.oversold),
    }


def _already_moved(db, product_id: int, order_id: int, source: str) -> bool:
    return (
        db.query(StockMovement.id)
        .filter(
            StockMovement.product_id == product_id,
            StockMovement.order_id == order_id,
            StockMovement.source == source,
        )
        .first()
        is not None
    )

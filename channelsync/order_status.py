"""
order_status.py — Canonical order states and channel status normalization

Business Rules:
- Canonical states: PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED
- Edges: PENDING->CONFIRMED->PROCESSING->SHIPPED->{DELIVERED, CANCELLED, REFUNDED}
- A change is forward when the target is reachable along the edges;
  any other change is still applied but flagged anomalous
- Orders reaching CONFIRMED or later on the fulfilment path commit inventory
- A raw status with no mapping is Unmapped: the order is flagged for review

Called by: order_sync.py, routers/orders.py
Depends on: channels/registry.py (per-channel STATUS_MAP)
"""

from dataclasses import dataclass

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
PROCESSING = "PROCESSING"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"

STATUSES = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED)

GRAPH: dict[str, tuple[str, ...]] = {
    PENDING: (CONFIRMED,),
    CONFIRMED: (PROCESSING,),
    PROCESSING: (SHIPPED,),
    SHIPPED: (DELIVERED, CANCELLED, REFUNDED),
    DELIVERED: (),
    CANCELLED: (),
    REFUNDED: (),
}

COMMITTING = frozenset({CONFIRMED, PROCESSING, SHIPPED, DELIVERED})


def is_forward(current: str, target: str) -> bool:
    """True if ``target`` is reachable from ``current`` (and differs from it)."""
    if current == target:
        return False
    seen, stack = set(), [current]
    while stack:
        for nxt in GRAPH.get(stack.pop(), ()):
            if nxt == target:
                return True
            if nxt not in seen:
                seen.add(nxt)
                stack.append(nxt)
    return False


@dataclass(frozen=True)
class Mapped:
    status: str
    raw: str


@dataclass(frozen=True)
class Unmapped:
    raw: str


def normalize_status(channel_code: str, raw: str | None) -> Mapped | Unmapped:
    from .channels.registry import get_adapter_class, is_supported

    raw = "" if raw is None else str(raw)
    if not is_supported(channel_code):
        return Unmapped(raw)
    status = get_adapter_class(channel_code).STATUS_MAP.get(raw)
    if status is None or status not in STATUSES:
        return Unmapped(raw)
    return Mapped(status, raw)

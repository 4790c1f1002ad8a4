"""Order models — canonical orders, items, status timeline, automation rules."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class Order(Base):
    """Canonical order. (account_id, channel_order_id) is the upsert key."""

    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("channel_accounts.id"), nullable=False)
    channel_order_id = Column(String(100), nullable=False)
    order_number = Column(String(150), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    channel_status = Column(String(100))
    needs_review = Column(Boolean, nullable=False, default=False)
    total_amount = Column(Float, default=0)
    shipping_cost = Column(Float, default=0)
    currency = Column(String(10))
    customer = Column(JSON, default=dict)
    shipping_address = Column(JSON, default=dict)
    ordered_at = Column(UTCDateTime)
    tags = Column(JSON, default=list)
    assigned_to = Column(String(255))
    inventory_committed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    account = relationship("ChannelAccount")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    events = relationship(
        "OrderStatusEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusEvent.id",
    )

    __table_args__ = (
        Index("ix_order_account_channel_id", "account_id", "channel_order_id", unique=True),
        Index("ix_order_merchant_status", "merchant_id", "status"),
    )

    def to_dict(self, with_timeline: bool = False) -> dict:
        d = {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "account_id": self.account_id,
            "channel_order_id": self.channel_order_id,
            "order_number": self.order_number,
            "status": self.status,
            "channel_status": self.channel_status,
            "needs_review": bool(self.needs_review),
            "total_amount": self.total_amount,
            "shipping_cost": self.shipping_cost,
            "currency": self.currency,
            "tags": list(self.tags or []),
            "assigned_to": self.assigned_to,
            "ordered_at": self.ordered_at.isoformat() if self.ordered_at else None,
            "inventory_committed_at": (
                self.inventory_committed_at.isoformat() if self.inventory_committed_at else None
            ),
        }
        if with_timeline:
            d["items"] = [
                {"product_id": i.product_id, "sku": i.sku, "name": i.name, "quantity": i.quantity}
                for i in self.items
            ]
            d["timeline"] = [e.to_dict() for e in self.events]
        return d


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"))
    external_product_id = Column(String(100))
    external_variant_id = Column(String(100))
    sku = Column(String(100))
    name = Column(String(255))
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, default=0)
    total_price = Column(Float, default=0)

    order = relationship("Order", back_populates="items")


class OrderStatusEvent(Base):
    """Timeline entry for an order: status changes and automation actions."""

    __tablename__ = "order_status_events"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    from_status = Column(String(20))
    to_status = Column(String(20))
    channel_status = Column(String(100))
    actor = Column(String(20), nullable=False, default="SYSTEM")
    reason = Column(Text)
    anomalous = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    order = relationship("Order", back_populates="events")

    __table_args__ = (Index("ix_order_event_order", "order_id", "created_at"),)

    def to_dict(self) -> dict:
        return {
            "from_status": self.from_status,
            "to_status": self.to_status,
            "channel_status": self.channel_status,
            "actor": self.actor,
            "reason": self.reason,
            "anomalous": bool(self.anomalous),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrderAutomationRule(Base):
    """Conditions are ANDed; actions run in order when all conditions hold."""

    __tablename__ = "order_automation_rules"
    id = Column(Integer, primary_key=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    conditions = Column(JSON, default=list)
    actions = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

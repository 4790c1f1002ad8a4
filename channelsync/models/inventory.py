"""Inventory models — products, stock records, movements, channel listings."""

from datetime import datetime, timezone

from sqlalchemy import (
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


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    sku = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    category_id = Column(Integer, index=True)
    price = Column(Float, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    inventory = relationship("InventoryRecord", back_populates="product", uselist=False)
    listings = relationship("ChannelListing", back_populates="product")

    __table_args__ = (
        Index("ix_product_merchant_sku", "merchant_id", "sku", unique=True),
    )


class InventoryRecord(Base):
    """Current stock for one product.

    available = quantity - reserved. A negative available is flagged via
    ``oversold`` rather than rejected, since channels can oversell.
    """

    __tablename__ = "inventory_records"
    id = Column(Integer, primary_key=True)
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    quantity = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    min_threshold = Column(Integer, nullable=False, default=0)
    oversold = Column(Boolean, nullable=False, default=False)
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    product = relationship("Product", back_populates="inventory")

    @property
    def available(self) -> int:
        return (self.quantity or 0) - (self.reserved or 0)


class MovementType:
    IN = "IN"
    OUT = "OUT"
    SET = "SET"


class MovementSource:
    MANUAL = "MANUAL"
    ORDER = "ORDER"
    CHANNEL = "CHANNEL"
    SYSTEM = "SYSTEM"


class StockMovement(Base):
    """Append-only history of every inventory write."""

    __tablename__ = "stock_movements"
    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    movement_type = Column(String(10), nullable=False)
    quantity = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reason = Column(Text)
    source = Column(String(20), nullable=False, default=MovementSource.MANUAL)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"))
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("ix_movement_product_time", "product_id", "created_at"),)


class ChannelListing(Base):
    """A product as listed on one channel account.

    last_pushed_quantity is the reference point for THRESHOLD rules.
    """

    __tablename__ = "channel_listings"
    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"))
    account_id = Column(
        Integer, ForeignKey("channel_accounts.id", ondelete="CASCADE"), nullable=False
    )
    external_product_id = Column(String(100), nullable=False)
    external_variant_id = Column(String(100))
    external_sku = Column(String(100))
    channel_stock = Column(Integer)
    last_pushed_quantity = Column(Integer)
    last_pushed_at = Column(UTCDateTime)
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    product = relationship("Product", back_populates="listings")

    __table_args__ = (
        Index("ix_listing_product_account", "product_id", "account_id", unique=True),
        Index(
            "ix_listing_account_external",
            "account_id",
            "external_product_id",
            "external_variant_id",
        ),
    )

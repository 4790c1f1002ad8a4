"""Sync rule model — how inventory changes propagate to channel accounts."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Float, Index, Integer, String, Text

from ..database import UTCDateTime
from .base import Base


class Strategy:
    EXACT = "EXACT"
    PERCENTAGE = "PERCENTAGE"
    OFFSET = "OFFSET"
    THRESHOLD = "THRESHOLD"
    CUSTOM = "CUSTOM"

    ALL = (EXACT, PERCENTAGE, OFFSET, THRESHOLD, CUSTOM)


class Scope:
    ALL_PRODUCTS = "ALL_PRODUCTS"
    PRODUCT_LIST = "PRODUCT_LIST"
    CATEGORY = "CATEGORY"

    ALL = (ALL_PRODUCTS, PRODUCT_LIST, CATEGORY)


class SyncRule(Base):
    """One numeric ``parameter`` per strategy; CUSTOM uses ``expression``."""

    __tablename__ = "sync_rules"
    id = Column(Integer, primary_key=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    strategy = Column(String(20), nullable=False, default=Strategy.EXACT)
    scope = Column(String(20), nullable=False, default=Scope.ALL_PRODUCTS)
    product_ids = Column(JSON, default=list)
    category_ids = Column(JSON, default=list)
    target_account_ids = Column(JSON, default=list)
    parameter = Column(Float)
    expression = Column(String(500))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (Index("ix_rule_merchant_active", "merchant_id", "is_active"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "name": self.name,
            "description": self.description,
            "strategy": self.strategy,
            "scope": self.scope,
            "product_ids": list(self.product_ids or []),
            "category_ids": list(self.category_ids or []),
            "target_account_ids": list(self.target_account_ids or []),
            "parameter": self.parameter,
            "expression": self.expression,
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def matches(self, product) -> bool:
        if self.scope == Scope.ALL_PRODUCTS:
            return True
        if self.scope == Scope.PRODUCT_LIST:
            return product.id in (self.product_ids or [])
        if self.scope == Scope.CATEGORY:
            return product.category_id is not None and product.category_id in (
                self.category_ids or []
            )
        return False

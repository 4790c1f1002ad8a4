"""Sync ledger model — immutable audit trail of sync outcomes."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text

from ..database import UTCDateTime
from .base import Base


class SyncLedgerEntry(Base):
    """Final outcome of one job. Rows are written once and never updated."""

    __tablename__ = "sync_ledger"
    id = Column(Integer, primary_key=True)
    created_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    job_id = Column(Integer, index=True)
    job_type = Column(String(50), nullable=False)
    queue = Column(String(30))
    account_id = Column(Integer)
    channel_code = Column(String(30))
    product_id = Column(Integer)
    order_id = Column(Integer)
    success = Column(Boolean, nullable=False)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    target_quantity = Column(Integer)
    error_type = Column(String(50))
    error_detail = Column(Text)
    details = Column(JSON)

    __table_args__ = (
        Index("ix_ledger_time", "created_at"),
        Index("ix_ledger_type_time", "job_type", "created_at"),
        Index("ix_ledger_product_time", "product_id", "created_at"),
        Index("ix_ledger_account_time", "account_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "account_id": self.account_id,
            "channel_code": self.channel_code,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "success": self.success,
            "status": self.status,
            "attempts": self.attempts,
            "target_quantity": self.target_quantity,
            "error_type": self.error_type,
            "error_detail": self.error_detail,
            "details": self.details or {},
        }

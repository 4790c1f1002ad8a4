"""Channel account model — one merchant's connection to one sales channel."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text

from ..database import UTCDateTime
from ..utils.encrypted_type import EncryptedJSON
from .base import Base


class AccountState:
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    PENDING = "PENDING"
    DISCONNECTED = "DISCONNECTED"


class ChannelAccount(Base):
    """Credentials and connection state for one channel.

    Never hard-deleted: disconnecting soft-disables the row so ledger
    entries keep a valid account reference.
    """

    __tablename__ = "channel_accounts"
    id = Column(Integer, primary_key=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    channel_code = Column(String(30), nullable=False)
    name = Column(String(255), nullable=False)
    shop_id = Column(String(100))
    credentials = Column(EncryptedJSON, default=dict)
    state = Column(String(20), nullable=False, default=AccountState.PENDING)
    rate_limit_profile = Column(JSON)
    last_synced_at = Column(UTCDateTime)
    last_order_pull_at = Column(UTCDateTime)
    last_error = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_account_merchant_channel", "merchant_id", "channel_code"),
        Index("ix_account_state", "state", "is_active"),
    )

    @property
    def is_syncable(self) -> bool:
        return bool(self.is_active) and self.state == AccountState.CONNECTED

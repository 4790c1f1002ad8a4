"""Database models — re-exports every model.

Import from here:  from channelsync.models import Product, SyncRule, ...
Or from submodules: from channelsync.models.orders import Order
"""

from .base import Base  # noqa: F401

# Channel accounts
from .accounts import AccountState, ChannelAccount  # noqa: F401

# Products & inventory
from .inventory import (  # noqa: F401
    ChannelListing,
    InventoryRecord,
    MovementSource,
    MovementType,
    Product,
    StockMovement,
)

# Sync rules
from .rules import Scope, Strategy, SyncRule  # noqa: F401

# Backlog & ledger
from .jobs import JobStatus, SyncJob  # noqa: F401
from .ledger import SyncLedgerEntry  # noqa: F401

# Orders
from .orders import Order, OrderAutomationRule, OrderItem, OrderStatusEvent  # noqa: F401

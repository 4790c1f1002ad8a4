"""Sales-channel adapters and the registry that resolves them by channel code."""

from .base import (  # noqa: F401
    ChannelAdapter,
    ChannelOrder,
    ChannelOrderItem,
    ChannelProduct,
    ListingRef,
    PushResult,
)
from .registry import create, get_adapter_class, is_supported, register, supported  # noqa: F401

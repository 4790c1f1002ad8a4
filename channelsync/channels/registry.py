"""
channels/registry.py — Channel code -> adapter class lookup

The engines ask the registry for an adapter bound to an account instead of
importing channel modules directly, so a new channel only has to register
its class here (or call register() at import time).

Called by: context.py (adapter factory), order_status.py, routers/accounts.py
Depends on: channels/shopee.py, channels/tokopedia.py, channels/lazada.py
"""

from .base import ChannelAdapter
from .lazada import LazadaAdapter
from .shopee import ShopeeAdapter
from .tokopedia import TokopediaAdapter

_ADAPTERS: dict[str, type[ChannelAdapter]] = {}


def register(code: str, adapter_cls: type[ChannelAdapter]) -> None:
    _ADAPTERS[code.upper()] = adapter_cls


def unregister(code: str) -> None:
    _ADAPTERS.pop(code.upper(), None)


def get_adapter_class(code: str) -> type[ChannelAdapter]:
    try:
        return _ADAPTERS[(code or "").upper()]
    except KeyError:
        raise ValueError(f"Unsupported channel: {code}") from None


def is_supported(code: str) -> bool:
    return (code or "").upper() in _ADAPTERS


def supported() -> list[str]:
    return sorted(_ADAPTERS)


def create(account, **kwargs) -> ChannelAdapter:
    """Build the adapter for ``account.channel_code`` bound to its credentials."""
    return get_adapter_class(account.channel_code)(account, **kwargs)


for _cls in (ShopeeAdapter, TokopediaAdapter, LazadaAdapter):
    register(_cls.code, _cls)

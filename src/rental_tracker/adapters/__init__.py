from typing import Dict, Optional, Type

import requests

from ..config import ProfileConfig
from .base import BaseAdapter

ADAPTER_REGISTRY: Dict[str, Type[BaseAdapter]] = {}


def register_adapter(name: str):
    """Decorator to register an adapter class under a watch-config source flag."""

    def decorator(cls: Type[BaseAdapter]):
        ADAPTER_REGISTRY[name] = cls
        return cls

    return decorator


def get_adapter(
    flag: str,
    settings: dict,
    profile: ProfileConfig,
    session: Optional[requests.Session] = None,
) -> BaseAdapter:
    """Factory function to create adapter instances."""
    adapter_class = ADAPTER_REGISTRY.get(flag)
    if not adapter_class:
        raise ValueError(f"Unknown source: {flag}. Available: {list_available_adapters()}")
    return adapter_class(settings, profile, session=session)


def list_available_adapters() -> list:
    """Return list of registered adapter names."""
    return list(ADAPTER_REGISTRY.keys())


from . import flatfox  # noqa: E402,F401  registers itself

__all__ = [
    "BaseAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "list_available_adapters",
    "register_adapter",
]

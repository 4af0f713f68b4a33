"""Adapter implementations for queue storage."""

from ossuary.backends.base import Adapter, BaseAdapter
from ossuary.backends.inmemory import InMemoryAdapter
from ossuary.backends.null import NullAdapter
from ossuary.backends.redis_backend import RedisAdapter
from ossuary.backends.registry import create_adapter

__all__ = [
    "Adapter",
    "BaseAdapter",
    "InMemoryAdapter",
    "NullAdapter",
    "RedisAdapter",
    "create_adapter",
]

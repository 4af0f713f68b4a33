"""Ossuary - Async backend-agnostic message queue facade for Python."""

from ossuary.backends import Adapter, BaseAdapter, InMemoryAdapter, NullAdapter, RedisAdapter
from ossuary.core import (
    BackendRuntimeError,
    Capability,
    DeliveryRecord,
    Envelope,
    EventManager,
    InvalidArgumentError,
    PollerStats,
    Queue,
    QueueError,
    QueueEvent,
    QueueNotFoundError,
    QueueOptions,
    ReceiveParameters,
    SendParameters,
    UnsupportedOperationError,
    supports,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Queue",
    "QueueOptions",
    "Envelope",
    "DeliveryRecord",
    "SendParameters",
    "ReceiveParameters",
    # Capabilities
    "Capability",
    "supports",
    # Events
    "EventManager",
    "QueueEvent",
    "PollerStats",
    # Errors
    "QueueError",
    "InvalidArgumentError",
    "QueueNotFoundError",
    "UnsupportedOperationError",
    "BackendRuntimeError",
    # Adapters
    "Adapter",
    "BaseAdapter",
    "InMemoryAdapter",
    "NullAdapter",
    "RedisAdapter",
    # Meta
    "__version__",
]

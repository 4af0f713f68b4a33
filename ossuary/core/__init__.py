"""Core components for the Ossuary queue facade.

This module exposes the primary types, constants, and utilities:

Types:
    Queue: Facade binding a named queue to an adapter.
    QueueOptions: Per-queue configuration.
    Envelope: Message content plus metadata.
    DeliveryRecord: Bookkeeping embedded into sent and received envelopes.
    StoredMessage: Typed backend record adapters decode storage into.
    SendParameters / ReceiveParameters: Option sets validated per adapter.

Capabilities:
    Capability: Enum of optional adapter behaviours.
    supports: Structural check for a capability.

Claims and waiting:
    claim_messages: Atomic claim protocol over a ClaimStore.
    AwaitPoller: Polling/Idle/Stopped state machine behind await_messages().
    EventManager / QueueEvent: receive and idle notifications.

Errors:
    QueueError and its subclasses InvalidArgumentError, QueueNotFoundError,
    UnsupportedOperationError, BackendRuntimeError.
"""

from ossuary.core.capabilities import (
    AwaitMessagesCapable,
    Capability,
    CountMessagesCapable,
    DeleteMessageCapable,
    ListQueuesCapable,
    capabilities_of,
    require,
    supports,
)
from ossuary.core.claim import Claim, ClaimStore, claim_messages
from ossuary.core.errors import (
    BackendRuntimeError,
    InvalidArgumentError,
    QueueError,
    QueueNotFoundError,
    UnsupportedOperationError,
)
from ossuary.core.events import EVENT_IDLE, EVENT_RECEIVE, EventManager, QueueEvent
from ossuary.core.message import (
    DEFAULT_METADATUM_KEY,
    MAX_CONTENT_SIZE,
    DeliveryRecord,
    Envelope,
    StoredMessage,
)
from ossuary.core.options import QueueOptions
from ossuary.core.params import (
    CLASS_FILTER,
    REPEATING_INTERVAL,
    SCHEDULE,
    ReceiveParameters,
    SendParameters,
)
from ossuary.core.poller import AwaitPoller, PollerState, PollerStats
from ossuary.core.queue import Queue

__all__ = [
    "Queue",
    "QueueOptions",
    "Envelope",
    "DeliveryRecord",
    "StoredMessage",
    "DEFAULT_METADATUM_KEY",
    "MAX_CONTENT_SIZE",
    "SendParameters",
    "ReceiveParameters",
    "SCHEDULE",
    "REPEATING_INTERVAL",
    "CLASS_FILTER",
    "Capability",
    "supports",
    "require",
    "capabilities_of",
    "DeleteMessageCapable",
    "CountMessagesCapable",
    "ListQueuesCapable",
    "AwaitMessagesCapable",
    "Claim",
    "ClaimStore",
    "claim_messages",
    "AwaitPoller",
    "PollerState",
    "PollerStats",
    "EventManager",
    "QueueEvent",
    "EVENT_RECEIVE",
    "EVENT_IDLE",
    "QueueError",
    "InvalidArgumentError",
    "QueueNotFoundError",
    "UnsupportedOperationError",
    "BackendRuntimeError",
]

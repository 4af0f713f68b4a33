"""Capability registry.

Optional adapter behaviours are declared structurally: an adapter supports a
capability by implementing the matching protocol (or, for scheduling, by
declaring the option name among its send parameters). The facade asks
``supports(adapter, capability)`` and never looks at concrete adapter types.
"""

from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ossuary.core.errors import UnsupportedOperationError
from ossuary.core.message import Envelope
from ossuary.core.params import REPEATING_INTERVAL, SCHEDULE, ReceiveParameters

if TYPE_CHECKING:
    from ossuary.core.queue import Queue

# Invoked by a native await implementation with each received batch.
# Returns True when a listener asked to stop awaiting.
AwaitHandler = Callable[[Sequence[Envelope]], Awaitable[bool]]


class Capability(Enum):
    """Optional behaviours an adapter may declare."""

    DELETE_MESSAGE = "delete_message"
    COUNT_MESSAGES = "count_messages"
    LIST_QUEUES = "list_queues"
    AWAIT_MESSAGES = "await_messages"
    SCHEDULE = "schedule"
    REPEATING_INTERVAL = "repeating_interval"


@runtime_checkable
class DeleteMessageCapable(Protocol):
    async def delete_message(self, queue: "Queue", envelope: Envelope) -> bool:
        """Delete a received (or sent) message. False if it was not deleted."""
        ...


@runtime_checkable
class CountMessagesCapable(Protocol):
    async def count_messages(self, queue: "Queue") -> int:
        """Return the approximate number of unclaimed messages in the queue."""
        ...


@runtime_checkable
class ListQueuesCapable(Protocol):
    async def list_queues(self) -> list[str]:
        """Return the names of all queues known to the backend."""
        ...


@runtime_checkable
class AwaitMessagesCapable(Protocol):
    async def await_messages(
        self,
        queue: "Queue",
        handler: AwaitHandler,
        params: ReceiveParameters | None = None,
        max_messages: int | None = None,
    ) -> None:
        """Block on the backend, passing batches of at most max_messages to
        handler until it returns True."""
        ...


_PROTOCOLS: dict[Capability, type] = {
    Capability.DELETE_MESSAGE: DeleteMessageCapable,
    Capability.COUNT_MESSAGES: CountMessagesCapable,
    Capability.LIST_QUEUES: ListQueuesCapable,
    Capability.AWAIT_MESSAGES: AwaitMessagesCapable,
}

_SEND_PARAMS: dict[Capability, str] = {
    Capability.SCHEDULE: SCHEDULE,
    Capability.REPEATING_INTERVAL: REPEATING_INTERVAL,
}


def _declared_send_params(adapter: Any) -> frozenset[str]:
    declared = getattr(adapter, "available_send_params", None)
    if declared is None:
        return frozenset()
    return frozenset(declared())


def supports(adapter: Any, capability: Capability) -> bool:
    """Return True if ``adapter`` implements ``capability``."""
    if capability in _PROTOCOLS:
        return isinstance(adapter, _PROTOCOLS[capability])
    return _SEND_PARAMS[capability] in _declared_send_params(adapter)


def capabilities_of(adapter: Any) -> frozenset[Capability]:
    """Return every capability ``adapter`` declares."""
    return frozenset(c for c in Capability if supports(adapter, c))


def require(adapter: Any, capability: Capability, operation: str) -> None:
    """Raise UnsupportedOperationError unless ``adapter`` supports ``capability``."""
    if not supports(adapter, capability):
        raise UnsupportedOperationError(operation, capability)

"""Queue notifications.

The await poller publishes ``receive`` and ``idle`` events through an
EventManager. Listeners are plain callables (sync or async) taking the
QueueEvent; the manager outlives any single await call, so listeners stay
attached until detached.
"""

import inspect
import itertools
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from ossuary.core.message import Envelope
from ossuary.core.params import ReceiveParameters

if TYPE_CHECKING:
    from ossuary.core.queue import Queue

EVENT_RECEIVE = "receive"
EVENT_IDLE = "idle"


@dataclass
class QueueEvent:
    """Notification raised by the await poller.

    Attributes:
        name: EVENT_RECEIVE or EVENT_IDLE.
        queue: The queue being awaited.
        messages: Received batch (empty for idle events).
        params: Receive parameters of the await call.
    """

    name: str
    queue: "Queue"
    messages: list[Envelope] = field(default_factory=list)
    params: ReceiveParameters | None = None
    _stop_requested: bool = field(default=False, repr=False)

    def stop_await(self, flag: bool = True) -> None:
        """Ask the poller to stop once listeners have run."""
        self._stop_requested = flag

    @property
    def await_stopped(self) -> bool:
        return self._stop_requested


Listener = Callable[[QueueEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ListenerHandle:
    """Returned by attach(); pass it to detach()."""

    event_name: str
    listener: Listener
    priority: int
    sequence: int


class EventManager:
    """Minimal publish/subscribe registry for queue events.

    Listeners with a higher priority run first; equal priorities run in
    attach order. Exceptions raised by listeners propagate to the trigger
    caller.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[ListenerHandle]] = defaultdict(list)
        self._sequence = itertools.count()

    def attach(self, event_name: str, listener: Listener, priority: int = 1) -> ListenerHandle:
        if not callable(listener):
            raise TypeError(f"listener must be callable, got {type(listener).__name__}")
        handle = ListenerHandle(event_name, listener, priority, next(self._sequence))
        self._listeners[event_name].append(handle)
        return handle

    def detach(self, handle: ListenerHandle) -> bool:
        listeners = self._listeners.get(handle.event_name, [])
        if handle in listeners:
            listeners.remove(handle)
            return True
        return False

    def listeners(self, event_name: str) -> list[ListenerHandle]:
        return sorted(
            self._listeners.get(event_name, []),
            key=lambda h: (-h.priority, h.sequence),
        )

    async def trigger(self, event: QueueEvent) -> QueueEvent:
        """Run every listener attached to ``event.name``, awaiting async ones."""
        for handle in self.listeners(event.name):
            result = handle.listener(event)
            if inspect.isawaitable(result):
                await result
        return event

    def clear(self, event_name: str | None = None) -> None:
        if event_name is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event_name, None)

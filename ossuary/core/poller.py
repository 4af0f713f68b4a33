"""Await poller: blocking-wait on top of a non-blocking receive.

If the adapter implements await_messages() natively the poller delegates to
it. Otherwise it emulates waiting by polling receive(), raising a
``receive`` event for every non-empty batch and an ``idle`` event for every
empty one. Cancellation is cooperative: a listener calls
``event.stop_await()`` (or anyone calls ``poller.stop()``) and the loop
exits between iterations.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ossuary.core.capabilities import Capability, supports
from ossuary.core.errors import BackendRuntimeError, UnsupportedOperationError
from ossuary.core.events import EVENT_IDLE, EVENT_RECEIVE, QueueEvent
from ossuary.core.message import Envelope
from ossuary.core.params import ReceiveParameters, normalize_max_messages

if TYPE_CHECKING:
    from ossuary.core.queue import Queue


class PollerState(Enum):
    POLLING = "polling"
    IDLE = "idle"
    STOPPED = "stopped"


@dataclass
class PollerStats:
    """Statistics from a single await run."""

    iterations: int = 0
    idle_count: int = 0
    batches_received: int = 0
    messages_received: int = 0
    native: bool = False
    final_state: PollerState = PollerState.STOPPED


class AwaitPoller:
    """Drive the Polling/Idle/Stopped state machine for one queue."""

    def __init__(
        self,
        queue: "Queue",
        params: ReceiveParameters | None = None,
        max_messages: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.queue = queue
        self.params = ReceiveParameters.coerce(params)
        self.max_messages = normalize_max_messages(
            max_messages if max_messages is not None else queue.options.await_max_messages
        )
        self.poll_interval = queue.options.poll_interval if poll_interval is None else poll_interval
        self._stop = asyncio.Event()
        self._state = PollerState.STOPPED
        self._stats = PollerStats()
        self._listener_error: Exception | None = None
        self._log = queue.logger

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request a stop; observed between iterations."""
        self._stop.set()

    def _transition(self, state: PollerState) -> None:
        if state is not self._state:
            self._log.debug(
                f"Await poller {self._state.value} -> {state.value}",
                extra={"queue": self.queue.name, "state": state.value},
            )
        self._state = state

    async def _dispatch(self, messages: Sequence[Envelope]) -> bool:
        """Raise the notification for one batch. Returns True if a stop was requested."""
        if messages:
            self._transition(PollerState.POLLING)
            self._stats.batches_received += 1
            self._stats.messages_received += len(messages)
            event = QueueEvent(EVENT_RECEIVE, self.queue, list(messages), self.params)
        else:
            self._transition(PollerState.IDLE)
            self._stats.idle_count += 1
            event = QueueEvent(EVENT_IDLE, self.queue, [], self.params)

        try:
            await self.queue.events.trigger(event)
        except Exception as e:
            self._listener_error = e
            raise
        if event.await_stopped:
            self.stop()
        return self._stop.is_set()

    async def _backoff(self) -> None:
        if self.poll_interval <= 0:
            # Still yield so other tasks (and stop()) get a chance to run
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def run(self) -> PollerStats:
        adapter = self.queue.adapter
        self._stop.clear()
        self._stats = PollerStats()
        self._listener_error = None

        if supports(adapter, Capability.AWAIT_MESSAGES):
            self._stats.native = True
            self._transition(PollerState.POLLING)
            self._log.info(
                "Delegating await to adapter",
                extra={"queue": self.queue.name, "adapter": adapter.name},
            )
            try:
                await self.queue.invoke(
                    "await_messages",
                    adapter.await_messages,
                    self.queue,
                    self._dispatch,
                    self.params,
                    self.max_messages,
                )
            except BackendRuntimeError as e:
                # Listener failures surface unwrapped, as they do when emulating
                if self._listener_error is not None and e.original is self._listener_error:
                    raise self._listener_error from None
                raise
            finally:
                self._transition(PollerState.STOPPED)
            return self._stats

        if not self.queue.options.enable_await_emulation:
            raise UnsupportedOperationError(
                "await_messages",
                Capability.AWAIT_MESSAGES,
                reason="await_messages() is not supported: adapter cannot await "
                "and await emulation is disabled",
            )

        self._log.info(
            "Emulating await by polling",
            extra={"queue": self.queue.name, "adapter": adapter.name},
        )
        self._transition(PollerState.POLLING)
        try:
            while not self._stop.is_set():
                self._stats.iterations += 1
                messages = await self.queue.receive(self.max_messages, self.params)
                if await self._dispatch(messages):
                    break
                if not messages:
                    await self._backoff()
        finally:
            self._transition(PollerState.STOPPED)
            self._stats.final_state = self._state

        return self._stats

"""Queue facade for Ossuary.

The Queue is the single entry point applications use. It:
- Validates call parameters against the vocabulary the adapter declares
- Checks capabilities before dispatching optional operations
- Layers scheduling and await emulation on top of the adapter contract
- Wraps unexpected backend failures in BackendRuntimeError

IMPORTANT: Queue holds no locks and stores no messages. Cross-receiver
safety comes from the adapter's atomic claim primitive.
"""

import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from ossuary.core.capabilities import Capability, capabilities_of, require, supports
from ossuary.core.errors import (
    BackendRuntimeError,
    InvalidArgumentError,
    QueueError,
    UnsupportedOperationError,
)
from ossuary.core.events import EventManager
from ossuary.core.logging import configure_queue_logger
from ossuary.core.message import DeliveryRecord, Envelope
from ossuary.core.options import QueueOptions
from ossuary.core.params import (
    REPEATING_INTERVAL,
    SCHEDULE,
    ReceiveParameters,
    SendParameters,
    normalize_max_messages,
)
from ossuary.core.poller import AwaitPoller, PollerStats

if TYPE_CHECKING:
    from ossuary.backends.base import Adapter

T = TypeVar("T")

_ENVELOPE_FIELDS = frozenset({"content", "metadata"})


def _coerce_options(options: QueueOptions | Mapping[str, Any] | None) -> QueueOptions:
    if options is None:
        return QueueOptions()
    if isinstance(options, QueueOptions):
        return options
    if isinstance(options, Mapping):
        try:
            return QueueOptions.model_validate(dict(options))
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid queue options: {e}") from e
    raise InvalidArgumentError(
        f"Queue options must be a mapping or QueueOptions, got {type(options).__name__}"
    )


def _to_timestamp(when: float | datetime | None) -> float:
    if when is None:
        return time.time()
    if isinstance(when, datetime):
        return when.timestamp()
    if isinstance(when, bool) or not isinstance(when, (int, float)):
        raise InvalidArgumentError(
            f"schedule time must be a UNIX timestamp or datetime, got {type(when).__name__}"
        )
    return float(when)


class Queue:
    """A named queue bound to an adapter."""

    def __init__(
        self,
        name: str,
        adapter: "Adapter",
        options: QueueOptions | Mapping[str, Any] | None = None,
        events: EventManager | None = None,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgumentError("Queue name must be a non-empty string")
        self._name = name
        self._adapter = adapter
        self._options = _coerce_options(options)
        self.events = events or EventManager()
        self._log = configure_queue_logger()

    @classmethod
    def factory(cls, config: Mapping[str, Any]) -> "Queue":
        """Build a queue from a config mapping.

        Example::

            Queue.factory({
                "name": "jobs",
                "adapter": {"adapter": "memory", "options": {"visibility_timeout": 30}},
                "options": {"poll_interval": 0.5},
            })
        """
        from ossuary.backends.registry import create_adapter

        if not isinstance(config, Mapping):
            raise InvalidArgumentError(
                f"Queue config must be a mapping, got {type(config).__name__}"
            )
        name = config.get("name")
        if not name:
            raise InvalidArgumentError("Queue config requires a 'name'")
        if "adapter" not in config:
            raise InvalidArgumentError("Queue config requires an 'adapter'")
        options = config.get("options")
        if options is not None and not isinstance(options, (Mapping, QueueOptions)):
            raise InvalidArgumentError(
                f"Queue config 'options' must be a mapping, got {type(options).__name__}"
            )
        return cls(name, create_adapter(config["adapter"]), options)

    def __repr__(self) -> str:
        return f"Queue(name={self._name!r}, adapter={self._adapter.name!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def adapter(self) -> "Adapter":
        return self._adapter

    @property
    def options(self) -> QueueOptions:
        return self._options

    @options.setter
    def options(self, options: QueueOptions | Mapping[str, Any]) -> None:
        self._options = _coerce_options(options)

    @property
    def logger(self):
        return self._log

    @property
    def metadatum_key(self) -> str:
        return self._options.message_metadatum_key

    async def invoke(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call an adapter coroutine, wrapping non-queue failures.

        QueueError subclasses raised by the adapter propagate unchanged; any
        other exception is re-raised as BackendRuntimeError.
        """
        try:
            return await func(*args)
        except QueueError:
            raise
        except Exception as e:
            self._log.error(
                f"{operation}() failed on adapter {self._adapter.name}: {e}",
                extra={"queue": self._name, "adapter": self._adapter.name, "error": str(e)},
            )
            raise BackendRuntimeError(
                f"{operation}() failed on queue {self._name!r}", original=e
            ) from e

    # ------------------------------------------------------------------
    # Capability predicates
    # ------------------------------------------------------------------

    def can_delete_message(self) -> bool:
        return supports(self._adapter, Capability.DELETE_MESSAGE)

    def can_count_messages(self) -> bool:
        return supports(self._adapter, Capability.COUNT_MESSAGES)

    def can_list_queues(self) -> bool:
        return supports(self._adapter, Capability.LIST_QUEUES)

    def can_await(self) -> bool:
        return supports(self._adapter, Capability.AWAIT_MESSAGES) or self._options.enable_await_emulation

    def is_await_emulation(self) -> bool:
        """True when await_messages() would poll instead of using the adapter."""
        return (
            not supports(self._adapter, Capability.AWAIT_MESSAGES)
            and self._options.enable_await_emulation
        )

    def is_send_param_supported(self, name: str) -> bool:
        return name in self._adapter.available_send_params()

    def is_receive_param_supported(self, name: str) -> bool:
        return name in self._adapter.available_receive_params()

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    async def ensure_queue(self) -> bool:
        """Create the queue in the backend unless it already exists."""
        if await self.invoke("queue_exists", self._adapter.queue_exists, self._name):
            return True
        return await self.invoke("create_queue", self._adapter.create_queue, self._name)

    async def delete_queue(self) -> bool:
        """Delete the queue and all of its messages."""
        deleted = await self.invoke("delete_queue", self._adapter.delete_queue, self._name)
        if deleted:
            self._log.info(
                f"Deleted queue {self._name}",
                extra={"queue": self._name, "adapter": self._adapter.name},
            )
        return deleted

    async def count(self) -> int:
        require(self._adapter, Capability.COUNT_MESSAGES, "count")
        return await self.invoke("count", self._adapter.count_messages, self)

    async def list_queues(self) -> list[str]:
        require(self._adapter, Capability.LIST_QUEUES, "list_queues")
        return await self.invoke("list_queues", self._adapter.list_queues)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _to_envelope(self, message: Any) -> Envelope:
        if isinstance(message, Envelope):
            return message
        message_class = self._options.message_class
        try:
            if isinstance(message, Mapping):
                if not message:
                    raise InvalidArgumentError("message mapping is empty")
                if "content" in message and set(message) <= _ENVELOPE_FIELDS:
                    return message_class.model_validate(dict(message))
            return message_class(content=message)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid message: {e}") from e

    def get_message_info(self, message: Envelope) -> DeliveryRecord | None:
        """Return the delivery record embedded in ``message``, if any."""
        return message.get_delivery(self.metadatum_key)

    async def send(
        self,
        message: Any,
        params: SendParameters | Mapping[str, Any] | None = None,
    ) -> Envelope:
        """Send a message.

        Args:
            message: An Envelope, a mapping whose only keys are ``content``
                and optionally ``metadata``, or any other JSON-serializable
                content. Mappings with other keys are sent as content.
            params: Send options; every name must be declared by the adapter.

        Returns:
            The sent envelope, carrying a fresh delivery record.
        """
        envelope = self._to_envelope(message)
        params = SendParameters.coerce(params)
        params.check_supported(self._adapter.available_send_params())

        envelope.clear_delivery(self.metadatum_key)
        sent = await self.invoke("send", self._adapter.send_message, self, envelope, params)

        record = self.get_message_info(sent)
        self._log.debug(
            f"Sent message to {self._name}",
            extra={
                "queue": self._name,
                "adapter": self._adapter.name,
                "message_id": record.message_id if record else None,
            },
        )
        return sent

    async def receive(
        self,
        max_messages: int | None = None,
        params: ReceiveParameters | Mapping[str, Any] | None = None,
    ) -> list[Envelope]:
        """Claim and return up to ``max_messages`` messages (default 1)."""
        max_messages = normalize_max_messages(max_messages)
        params = ReceiveParameters.coerce(params)
        params.check_supported(self._adapter.available_receive_params())

        messages = await self.invoke(
            "receive", self._adapter.receive_messages, self, max_messages, params
        )
        if messages:
            self._log.debug(
                f"Received {len(messages)} message(s) from {self._name}",
                extra={"queue": self._name, "adapter": self._adapter.name},
            )
        return list(messages)

    async def delete(self, message: Envelope) -> bool:
        """Delete a message previously sent or received through this queue.

        Returns False when the backend refused, e.g. because the message has
        been claimed again since it was received.
        """
        require(self._adapter, Capability.DELETE_MESSAGE, "delete")
        record = self.get_message_info(message)
        if record is not None and record.queue_name != self._name:
            raise InvalidArgumentError(
                f"Message belongs to queue {record.queue_name!r}, not {self._name!r}"
            )
        return await self.invoke("delete", self._adapter.delete_message, self, message)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(
        self,
        message: Any,
        when: float | datetime | None = None,
        repeating_interval: int | None = None,
    ) -> Envelope:
        """Send a message that must not be delivered before ``when``.

        Args:
            message: Anything send() accepts.
            when: UNIX timestamp or datetime. None means now.
            repeating_interval: Seconds between repeated deliveries.
        """
        if not self.is_send_param_supported(SCHEDULE):
            raise UnsupportedOperationError("schedule", Capability.SCHEDULE)
        if repeating_interval is not None and not self.is_send_param_supported(REPEATING_INTERVAL):
            raise InvalidArgumentError(
                f"Adapter {self._adapter.name} does not support '{REPEATING_INTERVAL}'"
            )

        params = SendParameters.coerce(
            {SCHEDULE: _to_timestamp(when), REPEATING_INTERVAL: repeating_interval}
        )
        return await self.send(message, params)

    async def unschedule(self, message: Envelope) -> bool:
        """Cancel a scheduled message.

        Deletes the stored message through a copy of its delivery record with
        the scheduling options stripped. For a repeating message this also
        ends the series, removing its pending occurrence. The stripped record
        replaces the message's record only if something was removed; the
        return value says whether it was.
        """
        if not self.is_send_param_supported(SCHEDULE):
            raise UnsupportedOperationError("unschedule", Capability.SCHEDULE)
        require(self._adapter, Capability.DELETE_MESSAGE, "unschedule")

        record = self.get_message_info(message)
        if record is None:
            raise UnsupportedOperationError(
                "unschedule",
                reason="unschedule() requires a message previously sent through a queue",
            )

        stripped = record.model_copy(deep=True)
        stripped.options.pop(SCHEDULE, None)
        stripped.options.pop(REPEATING_INTERVAL, None)
        message.set_delivery(stripped, self.metadatum_key)

        deleted = False
        try:
            deleted = await self.delete(message)
        finally:
            if not deleted:
                message.set_delivery(record, self.metadatum_key)
        return deleted

    # ------------------------------------------------------------------
    # Await
    # ------------------------------------------------------------------

    async def await_messages(
        self,
        params: ReceiveParameters | Mapping[str, Any] | None = None,
        max_messages: int | None = None,
    ) -> PollerStats:
        """Wait for messages, raising ``receive``/``idle`` events until stopped.

        Attach listeners through ``queue.events`` before calling; a listener
        stops the wait with ``event.stop_await()``.
        """
        params = ReceiveParameters.coerce(params)
        params.check_supported(self._adapter.available_receive_params())
        poller = AwaitPoller(self, params=params, max_messages=max_messages)
        return await poller.run()

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def debug_info(self) -> dict[str, Any]:
        options = self._options.model_dump()
        options["message_class"] = self._options.message_class.class_path()
        return {
            "name": self._name,
            "adapter": self._adapter.name,
            "adapter_class": type(self._adapter).__qualname__,
            "capabilities": sorted(c.value for c in capabilities_of(self._adapter)),
            "send_params": sorted(self._adapter.available_send_params()),
            "receive_params": sorted(self._adapter.available_receive_params()),
            "await_emulation": self.is_await_emulation(),
            "options": options,
        }

"""Adapter contract for queue backends.

ALL storage logic lives in adapters, not in Queue. The facade validates,
checks capabilities and delegates; adapters store, claim and delete.

Required operations are listed on the ``Adapter`` protocol. Optional
operations (delete, count, list, native await) are opted into by
implementing the matching protocol in ``ossuary.core.capabilities``.
"""

import copy
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable
from uuid import uuid4

from ossuary.core.claim import Claim
from ossuary.core.errors import InvalidArgumentError
from ossuary.core.message import DeliveryRecord, Envelope, StoredMessage
from ossuary.core.params import (
    REPEATING_INTERVAL,
    SCHEDULE,
    ReceiveParameters,
    SendParameters,
    normalize_max_messages,
)

if TYPE_CHECKING:
    from ossuary.core.queue import Queue


@runtime_checkable
class Adapter(Protocol):
    """Operations every backend must implement."""

    name: str

    async def connect(self) -> bool:
        """Ensure the backend is reachable."""
        ...

    async def queue_exists(self, name: str) -> bool: ...

    async def create_queue(self, name: str) -> bool:
        """Create a queue. False if it already exists."""
        ...

    async def delete_queue(self, name: str) -> bool:
        """Delete a queue and all of its messages. False if it was not found."""
        ...

    async def get_queue_id(self, name: str) -> str | None: ...

    async def send_message(
        self,
        queue: "Queue",
        envelope: Envelope,
        params: SendParameters | None = None,
    ) -> Envelope:
        """Store a message and embed a delivery record (handle None) into it."""
        ...

    async def receive_messages(
        self,
        queue: "Queue",
        max_messages: int | None = None,
        params: ReceiveParameters | None = None,
    ) -> Sequence[Envelope]:
        """Claim and return at most ``max_messages`` envelopes."""
        ...

    def available_send_params(self) -> frozenset[str]: ...

    def available_receive_params(self) -> frozenset[str]: ...


class BaseAdapter(ABC):
    """Shared behaviour for adapters.

    Handles option merging, delivery-record bookkeeping and the arithmetic
    for repeating messages. Subclasses implement the abstract storage
    operations.

    Args:
        options: Adapter options. ``driver_options`` is merged key by key
            into any previously set driver options.
        **kwargs: Additional options, merged over ``options``.
    """

    name: ClassVar[str] = "base"
    default_options: ClassVar[dict[str, Any]] = {"driver_options": {}}

    def __init__(self, options: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._options: dict[str, Any] = {}
        if options is not None and not isinstance(options, Mapping):
            raise InvalidArgumentError(
                f"Adapter options must be a mapping, got {type(options).__name__}"
            )
        self.set_options({**(options or {}), **kwargs})

    def set_options(self, options: Mapping[str, Any]) -> "BaseAdapter":
        if not isinstance(options, Mapping):
            raise InvalidArgumentError(
                f"Adapter options must be a mapping, got {type(options).__name__}"
            )

        driver_options = dict(self._options.get("driver_options", {}))
        if "driver_options" in options:
            extra = options["driver_options"]
            if not isinstance(extra, Mapping):
                raise InvalidArgumentError("driver_options must be a mapping")
            driver_options.update(extra)

        self._options = {**self.default_options, **options}
        self._options["driver_options"] = driver_options
        return self

    @property
    def options(self) -> dict[str, Any]:
        return dict(self._options)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    def available_send_params(self) -> frozenset[str]:
        return frozenset()

    def available_receive_params(self) -> frozenset[str]:
        return frozenset()

    async def get_queue_id(self, name: str) -> str | None:
        """The queue name is the only id most backends have."""
        if await self.queue_exists(name):
            return name
        return None

    @abstractmethod
    async def connect(self) -> bool: ...

    @abstractmethod
    async def queue_exists(self, name: str) -> bool: ...

    @abstractmethod
    async def create_queue(self, name: str) -> bool: ...

    @abstractmethod
    async def delete_queue(self, name: str) -> bool: ...

    @abstractmethod
    async def send_message(
        self,
        queue: "Queue",
        envelope: Envelope,
        params: SendParameters | None = None,
    ) -> Envelope: ...

    @abstractmethod
    async def receive_messages(
        self,
        queue: "Queue",
        max_messages: int | None = None,
        params: ReceiveParameters | None = None,
    ) -> Sequence[Envelope]: ...

    # ------------------------------------------------------------------
    # Delivery record bookkeeping
    # ------------------------------------------------------------------

    def build_delivery_record(
        self,
        handle: str | None,
        message_id: str,
        queue: "Queue",
        queue_id: str | None,
        options: Mapping[str, Any] | None = None,
        series_id: str | None = None,
    ) -> DeliveryRecord:
        return DeliveryRecord(
            handle=handle,
            message_id=message_id,
            queue_id=queue_id,
            queue_name=queue.name,
            adapter_name=self.name,
            options=dict(options or {}),
            series_id=series_id,
        )

    def embed_delivery_record(self, queue: "Queue", envelope: Envelope, record: DeliveryRecord) -> None:
        envelope.set_delivery(record, queue.metadatum_key)

    def get_delivery_record(self, queue: "Queue", envelope: Envelope) -> DeliveryRecord | None:
        """Only sent or received messages carry a record."""
        return envelope.get_delivery(queue.metadatum_key)

    def clean_delivery_record(self, queue: "Queue", envelope: Envelope) -> None:
        envelope.clear_delivery(queue.metadatum_key)

    @staticmethod
    def cancels_series(record: DeliveryRecord) -> bool:
        """True when deleting through ``record`` must also stop its repetition.

        Queue.unschedule() strips ``repeating_interval`` from the record before
        deleting; an ordinary delete of a received occurrence keeps it.
        """
        return record.series_id is not None and REPEATING_INTERVAL not in record.options

    # ------------------------------------------------------------------
    # Record conversion
    # ------------------------------------------------------------------

    @staticmethod
    def new_message_id() -> str:
        return uuid4().hex

    @staticmethod
    def normalize_max_messages(max_messages: int | None) -> int:
        return normalize_max_messages(max_messages)

    def build_stored_message(
        self,
        queue: "Queue",
        envelope: Envelope,
        params: SendParameters,
        message_id: str,
    ) -> StoredMessage:
        """Decode an outgoing envelope into the typed backend record.

        Content and metadata are copied so later changes to the sender's
        objects never reach the stored message.
        """
        return StoredMessage(
            id=message_id,
            series_id=message_id if params.repeating_interval else None,
            content=copy.deepcopy(envelope.content),
            metadata=copy.deepcopy(envelope.application_metadata(queue.metadatum_key)),
            message_class=type(envelope).class_path(),
            schedule=params.schedule,
            repeating_interval=params.repeating_interval,
            options=params.to_dict(),
        )

    def stored_to_record(
        self,
        queue: "Queue",
        stored: StoredMessage,
        queue_id: str | None,
        handle: str | None = None,
    ) -> DeliveryRecord:
        return self.build_delivery_record(
            handle, stored.id, queue, queue_id, stored.options, stored.series_id
        )

    def claim_to_envelope(self, queue: "Queue", claim: Claim, queue_id: str | None) -> Envelope:
        """Build the envelope returned by receive, with a fresh delivery record."""
        stored = claim.message
        envelope = queue.options.message_class(
            content=copy.deepcopy(stored.content),
            metadata=copy.deepcopy(stored.metadata),
        )
        record = self.stored_to_record(queue, stored, queue_id, claim.handle)
        self.embed_delivery_record(queue, envelope, record)
        return envelope

    def next_occurrence(self, stored: StoredMessage, now: float | None = None) -> StoredMessage | None:
        """Return the next occurrence of a repeating message, or None.

        The copy gets a new id and keeps the ``series_id`` of its predecessor.
        """
        if not stored.repeating_interval:
            return None
        if now is None:
            now = time.time()

        due = stored.schedule if stored.schedule is not None else now
        due += stored.repeating_interval
        if due <= now:
            # Skip occurrences missed while nobody was receiving
            missed = int((now - due) // stored.repeating_interval) + 1
            due += missed * stored.repeating_interval

        options = dict(stored.options)
        options[SCHEDULE] = due
        return stored.model_copy(
            update={
                "id": self.new_message_id(),
                "handle": None,
                "claimed_at": None,
                "created_at": now,
                "schedule": due,
                "options": options,
            },
            deep=True,
        )

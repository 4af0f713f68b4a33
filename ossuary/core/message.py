"""Message envelope model for Ossuary."""

import json
import time
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from ossuary.core.errors import InvalidArgumentError

# Metadata slot holding the delivery record. Queues may override it through
# QueueOptions.message_metadatum_key; it must not collide with application keys.
DEFAULT_METADATUM_KEY = "__queue"

# Maximum content size (1MB)
MAX_CONTENT_SIZE = 1_000_000


class DeliveryRecord(BaseModel):
    """Queue bookkeeping embedded into a sent or received envelope.

    Attributes:
        handle: Claim token. None for a message that was sent but not received.
        message_id: Backend identifier of the stored message.
        queue_id: Backend identifier of the queue, if the backend has one.
        queue_name: Name of the queue the message belongs to.
        adapter_name: Name of the adapter that produced the record.
        options: Send parameters the message was stored with.
        series_id: Id shared by every occurrence of a repeating message.
            None for messages that do not repeat.
    """

    handle: str | None = None
    message_id: str
    queue_id: str | None = None
    queue_name: str
    adapter_name: str
    options: dict[str, Any] = Field(default_factory=dict)
    series_id: str | None = None

    model_config = {"extra": "forbid"}

    @property
    def claimed(self) -> bool:
        return self.handle is not None


class Envelope(BaseModel):
    """A message: opaque content plus a mutable metadata map.

    Content is frozen once the envelope is built. Metadata stays mutable so
    the queue can embed, rewrite and strip its delivery record.
    """

    content: Any = Field(frozen=True)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: Any) -> Any:
        """Ensure content is strictly JSON-serializable and within size limits."""
        try:
            serialized = json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"content must be JSON-serializable: {e}") from e

        byte_length = len(serialized.encode("utf-8"))
        if byte_length > MAX_CONTENT_SIZE:
            raise ValueError(
                f"content exceeds maximum size of {MAX_CONTENT_SIZE} bytes "
                f"(got {byte_length} bytes)"
            )
        return v

    @classmethod
    def class_path(cls) -> str:
        """Dotted import path used to record and filter the message class."""
        return f"{cls.__module__}.{cls.__qualname__}"

    def get_delivery(self, key: str = DEFAULT_METADATUM_KEY) -> DeliveryRecord | None:
        """Return the typed delivery record, or None if the message carries none.

        A plain mapping stored under ``key`` (for example after the envelope
        was rebuilt from JSON) is decoded once and replaced by the typed record.
        """
        value = self.metadata.get(key)
        if value is None:
            return None
        if isinstance(value, DeliveryRecord):
            return value
        if isinstance(value, Mapping):
            try:
                record = DeliveryRecord.model_validate(dict(value))
            except ValidationError as e:
                raise InvalidArgumentError(f"Malformed delivery record under {key!r}: {e}") from e
            self.metadata[key] = record
            return record
        raise InvalidArgumentError(
            f"Metadata key {key!r} is reserved for the delivery record, "
            f"got {type(value).__name__}"
        )

    def set_delivery(self, record: DeliveryRecord, key: str = DEFAULT_METADATUM_KEY) -> None:
        self.metadata[key] = record

    def clear_delivery(self, key: str = DEFAULT_METADATUM_KEY) -> None:
        self.metadata.pop(key, None)

    def application_metadata(self, key: str = DEFAULT_METADATUM_KEY) -> dict[str, Any]:
        """Metadata without the reserved delivery slot."""
        return {k: v for k, v in self.metadata.items() if k != key}


class StoredMessage(BaseModel):
    """Typed backend record. Adapters decode raw storage into this shape.

    ``handle`` is None while the message is unclaimed. ``series_id`` links the
    occurrences of a repeating message.
    """

    id: str
    series_id: str | None = None
    content: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    message_class: str
    handle: str | None = None
    claimed_at: float | None = None
    created_at: float = Field(default_factory=time.time)
    schedule: float | None = None
    repeating_interval: int | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    def is_due(self, now: float) -> bool:
        return self.schedule is None or self.schedule <= now

    def claim_expired(self, now: float, visibility_timeout: float | None) -> bool:
        """True when a claim is older than the adapter's visibility timeout."""
        if self.handle is None or visibility_timeout is None or self.claimed_at is None:
            return False
        return self.claimed_at + visibility_timeout <= now

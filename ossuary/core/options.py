"""Queue configuration."""

import importlib
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ossuary.core.message import DEFAULT_METADATUM_KEY, Envelope


def import_object(path: str) -> Any:
    """Import ``package.module.Name`` and return ``Name``."""
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"expected a dotted import path, got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"cannot import {module_name!r}: {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"{module_name!r} has no attribute {attr!r}") from e


class QueueOptions(BaseModel):
    """Per-queue options.

    Attributes:
        message_class: Envelope subclass built for received messages. A dotted
            import path is accepted and resolved on validation.
        message_metadatum_key: Metadata key reserved for the delivery record.
        enable_await_emulation: Emulate await_messages() by polling when the
            adapter has no native support.
        poll_interval: Seconds to wait between idle polls during emulation.
        await_max_messages: Batch size used by each emulated poll.
    """

    message_class: type[Envelope] = Envelope
    message_metadatum_key: str = DEFAULT_METADATUM_KEY
    enable_await_emulation: bool = True
    poll_interval: float = Field(default=1.0, ge=0)
    await_max_messages: int = Field(default=1, gt=0)

    model_config = {"extra": "forbid", "validate_assignment": True}

    @field_validator("message_class", mode="before")
    @classmethod
    def resolve_message_class(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = import_object(v)
        if not (isinstance(v, type) and issubclass(v, Envelope)):
            raise ValueError(f"message_class must be an Envelope subclass, got {v!r}")
        return v

    @field_validator("message_metadatum_key")
    @classmethod
    def validate_metadatum_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message_metadatum_key must not be empty")
        return v

"""Send and receive parameter sets.

Parameter names are validated against the vocabulary the bound adapter
declares; sending an undeclared name is a contract violation.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ossuary.core.errors import InvalidArgumentError

SCHEDULE = "schedule"
REPEATING_INTERVAL = "repeating_interval"
CLASS_FILTER = "class_filter"


class _Parameters(BaseModel):
    model_config = {"extra": "allow"}

    def to_dict(self) -> dict[str, Any]:
        """Return only the options that are actually set."""
        return self.model_dump(exclude_none=True)

    def names(self) -> frozenset[str]:
        return frozenset(self.to_dict())

    @classmethod
    def coerce(cls, value: "_Parameters | Mapping[str, Any] | None"):
        """Build a parameter set from None, a mapping or an existing instance."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            try:
                return cls.model_validate(dict(value))
            except ValidationError as e:
                raise InvalidArgumentError(f"Invalid {cls.__name__}: {e}") from e
        raise InvalidArgumentError(
            f"{cls.__name__} must be a mapping or {cls.__name__}, got {type(value).__name__}"
        )

    def check_supported(self, supported: Iterable[str]) -> None:
        """Raise InvalidArgumentError if any set option is not in ``supported``."""
        unsupported = sorted(self.names() - frozenset(supported))
        if unsupported:
            raise InvalidArgumentError(
                f"{type(self).__name__} option(s) not supported by adapter: {', '.join(unsupported)}"
            )


class SendParameters(_Parameters):
    """Options for send().

    Attributes:
        schedule: UNIX time before which the message must not be delivered.
        repeating_interval: Seconds between deliveries of a repeating message.
    """

    schedule: float | None = None
    repeating_interval: int | None = Field(default=None, gt=0)


class ReceiveParameters(_Parameters):
    """Options for receive().

    Attributes:
        class_filter: Only return messages sent with this message class path.
    """

    class_filter: str | None = None


def normalize_max_messages(max_messages: int | None) -> int:
    """Default ``None`` to 1 and reject anything that is not a positive int."""
    if max_messages is None:
        return 1
    if isinstance(max_messages, bool) or not isinstance(max_messages, int):
        raise InvalidArgumentError(
            f"max_messages must be an integer or None, got {type(max_messages).__name__}"
        )
    if max_messages <= 0:
        raise InvalidArgumentError(f"max_messages must be greater than 0, got {max_messages}")
    return max_messages

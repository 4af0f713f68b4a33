"""Adapter lookup by short name or import path."""

from collections.abc import Mapping
from typing import Any

from ossuary.core.errors import InvalidArgumentError
from ossuary.core.options import import_object

ADAPTERS: dict[str, str] = {
    "memory": "ossuary.backends.inmemory.InMemoryAdapter",
    "null": "ossuary.backends.null.NullAdapter",
    "redis": "ossuary.backends.redis_backend.RedisAdapter",
}


def resolve_adapter_class(name: str) -> type:
    path = ADAPTERS.get(name.lower(), name)
    if "." not in path:
        raise InvalidArgumentError(
            f"Unknown adapter {name!r}; expected one of {sorted(ADAPTERS)} or a dotted path"
        )
    try:
        return import_object(path)
    except ValueError as e:
        raise InvalidArgumentError(f"Cannot load adapter {name!r}: {e}") from e


def create_adapter(config: Any):
    """Build an adapter from a name, a config mapping, or pass an instance through.

    Mapping form: ``{"adapter": "memory", "options": {...}}``. The ``adapter``
    value may also be an adapter class.
    """
    if isinstance(config, str):
        return resolve_adapter_class(config)()

    if isinstance(config, Mapping):
        kind = config.get("adapter")
        if not kind:
            raise InvalidArgumentError("Adapter config requires an 'adapter' key")
        options = config.get("options", {})
        if not isinstance(options, Mapping):
            raise InvalidArgumentError(
                f"Adapter 'options' must be a mapping, got {type(options).__name__}"
            )
        adapter_class = resolve_adapter_class(kind) if isinstance(kind, str) else kind
        if not isinstance(adapter_class, type):
            raise InvalidArgumentError(f"Adapter must be a name or class, got {kind!r}")
        return adapter_class(dict(options))

    if hasattr(config, "receive_messages") and hasattr(config, "send_message"):
        return config

    raise InvalidArgumentError(
        f"Adapter config must be a name, mapping or adapter instance, got {type(config).__name__}"
    )

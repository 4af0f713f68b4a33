"""Error taxonomy for Ossuary.

Every error raised by the facade or an adapter derives from QueueError so
callers can catch the whole family at once.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class InvalidArgumentError(QueueError, ValueError):
    """Raised for malformed or out-of-range call parameters."""


class QueueNotFoundError(QueueError):
    """Raised when an operation targets a queue absent from the backend."""

    def __init__(self, queue_name: str, message: str | None = None):
        self.queue_name = queue_name
        super().__init__(message or f"Queue does not exist: {queue_name}")


class UnsupportedOperationError(QueueError):
    """Raised when the bound adapter does not implement an operation.

    Attributes:
        operation: Name of the facade operation that was attempted.
        capability: The missing capability, if the operation is capability-gated.
    """

    def __init__(self, operation: str, capability: object | None = None, reason: str | None = None):
        self.operation = operation
        self.capability = capability
        if reason is None:
            if capability is not None:
                label = getattr(capability, "value", capability)
                reason = f"{operation}() is not supported: adapter lacks '{label}' capability"
            else:
                reason = f"{operation}() is not supported by this adapter"
        super().__init__(reason)


class BackendRuntimeError(QueueError):
    """Raised when the backend's own operation failed.

    Attributes:
        original: The exception raised by the backend.
    """

    def __init__(self, message: str, original: Exception):
        self.original = original
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (backend error: {self.original!r})"

class ValidationError(ValueError):
    """Raised when a request carries no usable stock symbol."""


class UpstreamError(RuntimeError):
    """Raised when the finance data provider fails or returns no history."""


class StorageReadError(OSError):
    """The persisted collection exists but cannot be read or parsed."""


class StorageWriteError(OSError):
    """The collection could not be written back to storage."""

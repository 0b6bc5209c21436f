"""Error types raised inside the financial data cache."""


class CacheError(Exception):
    """Base class for all cache errors."""


class InputValidationError(CacheError):
    """A key or option failed validation. Raised before any side effect."""

    def __init__(self, field: str, message: str = None):
        self.field = field
        super().__init__(message or f"{field} is required")


class ConfigurationError(InputValidationError):
    """An unknown or invalid configuration option."""

    def __init__(self, field: str, message: str = None):
        super().__init__(field, message or f"Unknown cache option: {field}")


class FetchError(CacheError):
    """The external record source was unreachable or rejected the request."""

    def __init__(self, symbol: str, message: str, status_code: int = None):
        self.symbol = symbol
        self.status_code = status_code
        super().__init__(message)


class StorageError(CacheError):
    """A storage backend failed to read or write."""

    def __init__(self, backend: str, operation: str, cause: Exception = None):
        self.backend = backend
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{backend} {operation} failed{detail}")


class CompressionError(CacheError):
    """Compaction of a record failed; the record is stored uncompacted."""


class DetectionError(CacheError):
    """Publication cadence detection failed; staleness falls back to TTL only."""

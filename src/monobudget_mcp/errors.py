"""Error types for monobudget-mcp."""


class MonoBudgetError(Exception):
    """Base class for all monobudget errors."""

    pass


class Unauthorized(MonoBudgetError):
    """No authenticated user for the operation."""

    pass


class ValidationError(MonoBudgetError):
    """Malformed input to a public operation."""

    pass


class SyncError(MonoBudgetError):
    """Error during synchronization with Monobank API."""

    pass


class RateLimitedError(SyncError):
    """Monobank API answered 429 Too Many Requests."""

    pass


class MonobankAuthError(SyncError):
    """Monobank rejected the access token."""

    pass


class ConversionUnavailable(MonoBudgetError):
    """No exchange rate for the requested currency."""

    pass


class StoreUnavailable(MonoBudgetError):
    """The transaction store failed to complete an operation."""

    pass

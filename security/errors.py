class AttemptLimiterError(Exception):
    """Base class for attempt-limiter failures."""


class InvalidKey(AttemptLimiterError, ValueError):
    """Empty identity or unknown operation type. Raised before any storage access."""


class StorageUnavailable(AttemptLimiterError):
    """The attempt ledger could not complete a read or write."""


class RateLimiterUnavailable(AttemptLimiterError):
    """
    Service-level failure wrapping StorageUnavailable.
    No partial verdict is ever returned alongside it; the caller picks
    fail-open or fail-closed.
    """

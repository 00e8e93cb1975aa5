class OutboxError(Exception):
    """Base class for integration outbox errors."""


class InvalidRequest(OutboxError):
    """Raised when an enqueue or operator request is missing required fields."""


class NotFound(OutboxError):
    """Raised when an outbox record or integration does not exist."""


class ProviderFailure(OutboxError):
    """Raised by adapters for a generic delivery failure."""


class ProviderRateLimited(OutboxError):
    """Raised by adapters when the provider asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class SweepTimeout(OutboxError):
    """Raised inside a reconciliation run when its wall-clock budget is spent."""


class SweepFailure(OutboxError):
    """Raised by the scheduled task when a reconciliation run ended failed."""

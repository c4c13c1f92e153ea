"""Exception hierarchy for the assistant core."""
from typing import Optional

# HTTP codes a provider reports for conditions that may clear up on retry
RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class ShopAssistError(Exception):
    """Base exception for all assistant core errors."""
    pass


class ValidationError(ShopAssistError):
    """Raised when caller input or content is malformed."""
    pass


class NotFoundError(ShopAssistError):
    """Raised when a referenced chunk or content item does not exist."""
    pass


class ProviderError(ShopAssistError):
    """Raised when the embedding or completion provider fails."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableProviderError(ProviderError):
    """Timeouts, connection errors, rate limits and provider-side 5xx."""

    retryable = True


class FatalProviderError(ProviderError):
    """Authentication failures, rejected requests and malformed responses."""

    retryable = False


class QuotaExceededError(ShopAssistError):
    """Raised when a license or usage limit has been reached."""

    def __init__(self, metric: str, limit: Optional[int] = None, used: Optional[int] = None):
        message = f"Quota exceeded for '{metric}'"
        if limit is not None:
            message += f" ({used}/{limit})"
        super().__init__(message)
        self.metric = metric
        self.limit = limit
        self.used = used


class PartialFailure(ShopAssistError):
    """Raised by IndexReport.raise_for_errors() when items failed.

    Indexing itself never raises this; the batch completes and records
    per-item errors on the report.
    """

    def __init__(self, report):
        super().__init__(
            f"{len(report.errors)} error(s) while indexing {report.total_items} item(s)"
        )
        self.report = report


def provider_error_from_status(status_code: int, message: str) -> ProviderError:
    """Map a provider-reported HTTP status onto the retryable/fatal split."""
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return RetryableProviderError(message, status_code=status_code)
    return FatalProviderError(message, status_code=status_code)

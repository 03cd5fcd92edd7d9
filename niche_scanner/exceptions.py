"""Exception hierarchy for scans, marketplace calls and persistence."""

from typing import Optional


class ScannerError(Exception):
    """Base class for all scanner errors."""
    pass


class ValidationError(ScannerError):
    """Raised when scan parameters are malformed. No state is changed."""
    pass


class ConflictError(ScannerError):
    """Raised when a scan is requested while another one is running."""
    pass


class PersistenceError(ScannerError):
    """Raised when a storage operation or transaction fails. Scan-fatal."""
    pass


# ==========================================================================
# Marketplace failures
# ==========================================================================


class ExternalServiceError(ScannerError):
    """Base class for failures talking to the marketplace."""
    pass


class RequestTimeoutError(ExternalServiceError):
    """Raised when a call exceeds its hard timeout and was cancelled."""

    def __init__(self, url: str, timeout_ms: int):
        super().__init__(f"Request to {url} timed out after {timeout_ms}ms")
        self.url = url
        self.timeout_ms = timeout_ms


class TransportError(ExternalServiceError):
    """Raised on connection-level failures and responses httpx cannot read."""
    pass


class RateLimitedError(ExternalServiceError):
    """Raised when the marketplace answers 429."""

    def __init__(self, url: str, retry_after: Optional[int] = None):
        super().__init__(f"Rate limited by {url}")
        self.url = url
        self.retry_after = retry_after


class HTTPStatusFailure(ExternalServiceError):
    """Raised on any other non-2xx response."""

    def __init__(self, url: str, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code} from {url}: {body[:200]}")
        self.url = url
        self.status_code = status_code
        self.body = body


class MalformedResponseError(ExternalServiceError):
    """Raised when a response cannot be parsed into the expected shape."""
    pass


class AuthenticationError(ExternalServiceError):
    """Raised when no bearer token can be obtained."""
    pass

from typing import Any, Optional


class YieldSentryError(Exception):
    """Base class for engine errors."""


class ConfigurationError(YieldSentryError):
    pass


class AdapterFetchError(YieldSentryError):
    """Upstream fetch failed. Retryable."""

    def __init__(self, source: str, message: str):
        super().__init__(f"Failed to fetch data from {source}: {message}")
        self.source = source


class SourceTimeoutError(AdapterFetchError):
    def __init__(self, source: str, timeout_sec: float):
        super().__init__(source, f"timed out after {timeout_sec}s")
        self.timeout_sec = timeout_sec


class DataTransformError(YieldSentryError):
    """
    Upstream payload did not match the expected shape.
    Not retryable; the offending payload is kept for diagnosis.
    """

    def __init__(self, source: str, message: str, payload: Optional[Any] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.payload = payload


class CircuitOpenError(YieldSentryError):
    def __init__(self, adapter: str, retry_after_sec: float):
        super().__init__(f"Circuit breaker open for {adapter} (retry in {retry_after_sec:.1f}s)")
        self.adapter = adapter
        self.retry_after_sec = retry_after_sec


class InsufficientSourcesError(YieldSentryError):
    """Not enough healthy sources to serve the call. Shown to users as 'no data available'."""

    def __init__(self, message: str = "no data available", available: int = 0, required: int = 1):
        super().__init__(message)
        self.available = available
        self.required = required


class AdapterNotFoundError(YieldSentryError):
    def __init__(self, name: str):
        super().__init__(f"No adapter registered for '{name}'")
        self.name = name


class OpportunityNotFoundError(YieldSentryError):
    def __init__(self, opportunity_id: str):
        super().__init__(f"Opportunity not found: {opportunity_id}")
        self.opportunity_id = opportunity_id

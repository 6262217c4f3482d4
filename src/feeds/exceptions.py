"""
Custom exceptions for the market data feeds.

This module defines a hierarchy of exceptions for the failure modes of the
streaming and polling feeds. Feeds never raise these across their public
coroutines; they are delivered to listeners through ``on_error``.
"""


class FeedError(Exception):
    """Base exception for all feed-related errors."""

    def __init__(self, message: str, error_code: str = None, details: dict = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConfigurationError(FeedError):
    """
    Exception raised when a feed is missing required configuration.

    Example: connecting the streaming feed without an API key.
    These errors are reported once and never retried.
    """

    def __init__(self, message: str = "Feed is not configured", details: dict = None):
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details)


class AuthenticationError(FeedError):
    """
    Exception raised when the data provider rejects the credential.

    Reconnection is disabled after this error; retrying with the same
    key cannot succeed.
    """

    def __init__(self, message: str = "Authentication failed", details: dict = None):
        super().__init__(message, error_code="AUTHENTICATION_ERROR", details=details)


class TransportError(FeedError):
    """
    Exception raised for transport-level failures.

    Examples: connection refused, open timeout, send on a closed socket.
    These errors are transient and handled by the reconnect logic.
    """

    def __init__(self, message: str = "Transport error occurred", details: dict = None):
        super().__init__(message, error_code="TRANSPORT_ERROR", details=details)


class MaxRetriesExceededError(FeedError):
    """
    Exception raised when the streaming feed gives up reconnecting.

    Only an explicit ``connect()`` call restarts the client after this.
    """

    def __init__(
        self,
        message: str = "Max reconnection attempts reached",
        attempts: int = None,
        details: dict = None
    ):
        super().__init__(message, error_code="MAX_RETRIES_EXCEEDED", details=details)
        self.attempts = attempts


class DataSourceError(FeedError):
    """
    Exception raised when a request/response data source fails.

    Examples: HTTP error status, unreachable host, empty history bootstrap.
    """

    def __init__(
        self,
        message: str = "Data source request failed",
        status: int = None,
        details: dict = None
    ):
        super().__init__(message, error_code="DATA_SOURCE_ERROR", details=details)
        self.status = status


class PollerError(FeedError):
    """
    Exception raised when the candle poller stops after sustained failure.

    A new ``start()`` call is required to resume polling.
    """

    def __init__(
        self,
        message: str = "Too many consecutive poll errors",
        consecutive_errors: int = None,
        details: dict = None
    ):
        super().__init__(message, error_code="POLLER_STOPPED", details=details)
        self.consecutive_errors = consecutive_errors

"""
Custom exceptions for the web extraction engine.

This module defines all custom exceptions used throughout the application
for better error handling and debugging.
"""

from typing import Any, Optional


class WebExtractError(Exception):
    """Base exception for all extraction-engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# URL Validation Exceptions
# =============================================================================


class ValidationError(WebExtractError):
    """Base exception for rejected fetch targets. Never retried."""

    pass


class InvalidUrlError(ValidationError):
    """URL could not be parsed or has no host."""

    def __init__(self, url: str, reason: str = "malformed url") -> None:
        """Initialize with the offending url."""
        super().__init__(f"Invalid URL '{url}': {reason}", {"url": url, "reason": reason})


class UnsupportedSchemeError(ValidationError):
    """URL scheme is not http or https."""

    def __init__(self, url: str, scheme: str) -> None:
        """Initialize with scheme information."""
        message = f"Scheme '{scheme}' not allowed for '{url}'"
        super().__init__(message, {"url": url, "scheme": scheme})


class BlockedUrlError(ValidationError):
    """URL points at a blocked host or a private/reserved address."""

    def __init__(self, url: str, reason: str) -> None:
        """Initialize with block reason."""
        super().__init__(f"Blocked URL '{url}': {reason}", {"url": url, "reason": reason})


# =============================================================================
# Fetch Exceptions
# =============================================================================


class FetchError(WebExtractError):
    """Base exception for fetch failures. Retryable at the ingestor boundary."""

    pass


class FetchTimeoutError(FetchError):
    """Fetch exceeded its per-request timeout."""

    def __init__(self, url: str, timeout: float) -> None:
        """Initialize with timeout information."""
        message = f"Fetching '{url}' timed out after {timeout} seconds"
        super().__init__(message, {"url": url, "timeout": timeout})


class FetchConnectionError(FetchError):
    """Connection to the remote failed or the response body was cut off."""

    def __init__(self, url: str, reason: str) -> None:
        """Initialize with the connection failure."""
        super().__init__(f"Connection error fetching '{url}': {reason}", {"url": url, "reason": reason})


class HttpStatusError(FetchError):
    """Remote returned a non-success status."""

    def __init__(self, url: str, status: int) -> None:
        """Initialize with status information."""
        super().__init__(f"HTTP {status} for '{url}'", {"url": url, "status": status})

    @property
    def is_transient(self) -> bool:
        """Whether retrying may succeed (rate limited or server error)."""
        status = self.details.get("status", 0)
        return status == 429 or status >= 500


# =============================================================================
# Page Store Exceptions
# =============================================================================


class StoreError(WebExtractError):
    """Base exception for page store operations."""

    pass


class StoreConnectionError(StoreError):
    """Failed to connect to the storage backend."""

    pass


class StoreNotInitializedError(StoreError):
    """Storage backend used before initialize()."""

    pass


class PageNotFoundError(StoreError):
    """Page absent from the store."""

    def __init__(self, url: str) -> None:
        """Initialize with page url."""
        super().__init__(f"Page '{url}' not found in store", {"url": url})


# =============================================================================
# Reasoning Capability Exceptions
# =============================================================================


class ReasoningError(WebExtractError):
    """Base exception for language-model failures. Fatal for the current call only."""

    pass


class CompletionError(ReasoningError):
    """Completion request failed."""

    pass


class EmbeddingError(ReasoningError):
    """Embedding request failed."""

    pass


class ResponseParseError(ReasoningError):
    """Model output could not be parsed into the expected structure."""

    def __init__(self, message: str, raw: str = "") -> None:
        """Initialize with a preview of the raw response."""
        super().__init__(message, {"raw_preview": raw[:200]})


# =============================================================================
# Index Pipeline Exceptions
# =============================================================================


class ExtractionError(WebExtractError):
    """Base exception for index pipeline errors."""

    pass


class PartitionError(ExtractionError):
    """Partition extraction failed."""

    def __init__(self, title: str, error: str) -> None:
        """Initialize with partition information."""
        message = f"Extraction for partition '{title}' failed: {error}"
        super().__init__(message, {"partition": title, "error": error})


class OperationCancelledError(WebExtractError):
    """Caller cancelled a long-running operation. Terminal, never retried."""

    def __init__(self, operation: str) -> None:
        """Initialize with operation name."""
        super().__init__(f"Operation '{operation}' was cancelled", {"operation": operation})


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigurationError(WebExtractError):
    """Configuration error."""

    pass


class MissingConfigurationError(ConfigurationError):
    """Required configuration missing."""

    def __init__(self, config_name: str) -> None:
        """Initialize with config name."""
        message = f"Required configuration '{config_name}' is missing"
        super().__init__(message, {"config_name": config_name})

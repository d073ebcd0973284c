from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class InputError(RuntimeError):
    """Raised when a webhook payload is malformed or lacks a dataset reference."""


class DatasetError(RuntimeError):
    """Raised when an Apify dataset cannot be read."""


class ValidationError(RuntimeError):
    """Raised when a post or an extracted listing is missing required fields."""


class LLMError(RuntimeError):
    """Raised when a completion call or its JSON payload fails."""


class RateLimitError(LLMError):
    """Raised when the completion endpoint reports a rate limit (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(LLMError):
    """Raised for non rate-limit completion failures: network, HTTP status, empty output."""


class ConflictError(RuntimeError):
    """Raised when a listing identifier already exists and may not be rewritten."""


class StorageError(RuntimeError):
    """Raised when reading or writing listings in SQLite fails."""

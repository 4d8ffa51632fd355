"""
Error Types

Exception hierarchy shared by the transcription, AI and storage layers.
"""

import re
from typing import Any, Dict, Optional


# Messages that indicate the upstream is throttling or temporarily down.
RETRYABLE_PATTERN = re.compile(
    r"429|quota|rate[ _-]?limit|\brate\b|\b5\d\d\b|unavailable|overloaded",
    re.IGNORECASE,
)

# Embedding providers only back off on throttling, not on 5xx.
RATE_LIMIT_PATTERN = re.compile(r"429|quota|rate[ _-]?limit|\brate\b", re.IGNORECASE)


class ClassPartnerError(Exception):
    """Base exception for all core operations."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        provider: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CLASSPARTNER_ERROR"
        self.provider = provider
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "provider": self.provider,
            "details": self.details,
        }


class ConfigurationError(ClassPartnerError):
    """Required credentials or settings are missing or invalid."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="CONFIGURATION_ERROR", **kwargs)


# =============================================================================
# Transcription
# =============================================================================


class TranscriptionError(ClassPartnerError):
    """Error on the streaming transcription connection."""

    def __init__(self, message: str, code: str = "TRANSCRIPTION_ERROR", **kwargs):
        super().__init__(message, code=code, **kwargs)


class ConnectionTimeoutError(TranscriptionError):
    """The provider did not accept the connection in time."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="CONNECTION_TIMEOUT", **kwargs)


class ProviderConnectionError(TranscriptionError):
    """Failed to connect to provider."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="PROVIDER_CONNECTION_ERROR", **kwargs)


# =============================================================================
# AI Providers
# =============================================================================


class LLMProviderError(ClassPartnerError):
    """Error returned by a language model provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, code="LLM_PROVIDER_ERROR", **kwargs)
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        if self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        ):
            return True
        return bool(RETRYABLE_PATTERN.search(self.message))


class EmbeddingError(ClassPartnerError):
    """Error returned by an embedding provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, code="EMBEDDING_ERROR", **kwargs)
        self.status_code = status_code


class PendingRequestTimeout(ClassPartnerError):
    """A correlated cross-task request was not answered in time."""

    def __init__(self, message: str, request_id: Optional[str] = None, **kwargs):
        super().__init__(message, code="REQUEST_TIMEOUT", **kwargs)
        self.request_id = request_id


class StorageError(ClassPartnerError):
    """Persistence operation failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="STORAGE_ERROR", **kwargs)


# =============================================================================
# Utility Functions
# =============================================================================


def is_retryable_error(error: BaseException) -> bool:
    """Whether an error from a chat provider should trigger failover."""
    if isinstance(error, LLMProviderError):
        return error.is_retryable
    return bool(RETRYABLE_PATTERN.search(str(error)))


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether an embedding failure looks like throttling or quota exhaustion."""
    status = getattr(error, "status_code", None)
    if status == 429:
        return True
    return bool(RATE_LIMIT_PATTERN.search(str(error)))


__all__ = [
    "ClassPartnerError",
    "ConfigurationError",
    "TranscriptionError",
    "ConnectionTimeoutError",
    "ProviderConnectionError",
    "LLMProviderError",
    "EmbeddingError",
    "PendingRequestTimeout",
    "StorageError",
    "is_retryable_error",
    "is_rate_limit_error",
]

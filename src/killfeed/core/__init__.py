"""
Killfeed Core Module

Shared infrastructure for the ingestion services.
"""

from .circuit_breaker import BreakerOpenError, BreakerState, CircuitBreaker
from .config import KillfeedSettings, get_settings, reset_settings
from .logging import get_logger
from .retry import (
    InvalidUpstreamPayload,
    RetryResult,
    UpstreamUnavailable,
    is_retryable_error,
    retry_async,
)

__all__ = [
    # Config
    "KillfeedSettings",
    "get_settings",
    "reset_settings",
    # Logging
    "get_logger",
    # Retry
    "RetryResult",
    "retry_async",
    "is_retryable_error",
    "UpstreamUnavailable",
    "InvalidUpstreamPayload",
    # Circuit breaker
    "CircuitBreaker",
    "BreakerOpenError",
    "BreakerState",
]

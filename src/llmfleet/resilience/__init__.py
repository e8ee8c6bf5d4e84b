# src/llmfleet/resilience/__init__.py
"""
Resilience primitives: rate limiting and retry with backoff.
"""

from .rate_limiter import RateLimiter
from .retry import (
    CONTENT_REJECTED_MARKERS,
    ErrorClass,
    RetryContext,
    RetryExecutor,
    RetryPolicy,
    classify_error,
)

__all__ = [
    "RateLimiter",
    "RetryExecutor",
    "RetryPolicy",
    "RetryContext",
    "ErrorClass",
    "classify_error",
    "CONTENT_REJECTED_MARKERS",
]

"""Resilience patterns for collaborator calls

Retry with exponential backoff for the course service and other
potentially-latent external calls.
"""

from learnquest.resilience.retry import (
    retry_with_backoff,
    is_retryable_error,
)

__all__ = [
    "retry_with_backoff",
    "is_retryable_error",
]

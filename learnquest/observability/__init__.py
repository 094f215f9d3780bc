"""Observability for the gamification engine (Prometheus metrics)"""

from learnquest.observability.metrics import (
    record_award,
    record_award_failure,
    record_unlock,
    record_warning,
)

__all__ = [
    "record_award",
    "record_award_failure",
    "record_unlock",
    "record_warning",
]

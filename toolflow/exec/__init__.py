"""
Execution helpers for toolflow.
Handles retry and backoff of remote provider calls.
"""

from .retry import RetryPolicy

__all__ = [
    "RetryPolicy",
]

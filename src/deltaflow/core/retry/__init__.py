"""
Retry framework for transient action failures.
"""

from deltaflow.core.retry.manager import RetryManager
from deltaflow.core.retry.policy import (
    DEFAULT_RETRY_POLICY,
    FAST_RETRY_POLICY,
    NO_RETRY_POLICY,
    RetryPolicy,
    RetryState,
)

__all__ = [
    # Policy
    "RetryPolicy",
    "RetryState",
    "DEFAULT_RETRY_POLICY",
    "FAST_RETRY_POLICY",
    "NO_RETRY_POLICY",
    # Manager
    "RetryManager",
]

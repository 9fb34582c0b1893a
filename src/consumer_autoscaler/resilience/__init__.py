"""
Resilience helpers for the operator.

- Backoff policies: exponential and constant delays with jitter and a cap
"""

from .retry import (
    BackoffConfig,
    BackoffPolicy,
    BackoffStrategy,
    BackoffStrategyType,
    ConstantBackoff,
    ExponentialBackoff,
)

__all__ = [
    "BackoffConfig",
    "BackoffPolicy",
    "BackoffStrategy",
    "BackoffStrategyType",
    "ConstantBackoff",
    "ExponentialBackoff",
]

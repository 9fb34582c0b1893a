"""
Backoff Policy Implementation

Provides configurable delay calculation with exponential growth, a bounded
maximum interval and optional jitter. Used to space out reconcile retries
for a key that keeps failing with a transient error.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class BackoffStrategyType(Enum):
    """Backoff strategy types."""

    EXPONENTIAL = "exponential"
    CONSTANT = "constant"


@dataclass
class BackoffConfig:
    """Configuration for retry spacing."""

    # Delay before the first retry (seconds)
    base_delay: float = 1.0

    # Upper bound on any single delay (seconds)
    max_delay: float = 300.0

    strategy: BackoffStrategyType = BackoffStrategyType.EXPONENTIAL

    # Exponential backoff multiplier
    backoff_multiplier: float = 2.0

    # Add random jitter to prevent thundering herd
    jitter: bool = True

    # Maximum jitter factor (0.0 to 1.0)
    jitter_factor: float = 0.1


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    @abstractmethod
    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        """Calculate delay for given attempt number (1-based)."""

    def _apply_jitter(self, delay: float, max_delay: float) -> float:
        if not self.jitter:
            return delay
        jitter_range = delay * self.jitter_factor
        jitter_value = random.uniform(-jitter_range, jitter_range)
        return min(max_delay, max(0.0, delay + jitter_value))


class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff with optional jitter."""

    def __init__(self, multiplier: float = 2.0, jitter: bool = True, jitter_factor: float = 0.1):
        self.multiplier = multiplier
        self.jitter = jitter
        self.jitter_factor = jitter_factor

    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        """Calculate exponential backoff delay."""
        exponent = max(0, attempt - 1)
        try:
            delay = base_delay * (self.multiplier**exponent)
        except OverflowError:
            delay = max_delay
        delay = min(delay, max_delay)
        return self._apply_jitter(delay, max_delay)


class ConstantBackoff(BackoffStrategy):
    """Constant delay with optional jitter."""

    def __init__(self, jitter: bool = True, jitter_factor: float = 0.1):
        self.jitter = jitter
        self.jitter_factor = jitter_factor

    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        """Calculate constant backoff delay."""
        return self._apply_jitter(min(base_delay, max_delay), max_delay)


class BackoffPolicy:
    """Turns an attempt count into a delay according to a BackoffConfig."""

    def __init__(self, config: BackoffConfig | None = None):
        self.config = config or BackoffConfig()
        self._strategy = self._create_strategy()

    def _create_strategy(self) -> BackoffStrategy:
        if self.config.strategy == BackoffStrategyType.CONSTANT:
            return ConstantBackoff(jitter=self.config.jitter, jitter_factor=self.config.jitter_factor)
        return ExponentialBackoff(
            multiplier=self.config.backoff_multiplier,
            jitter=self.config.jitter,
            jitter_factor=self.config.jitter_factor,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt``; attempts are unbounded."""
        return self._strategy.calculate_delay(attempt, self.config.base_delay, self.config.max_delay)

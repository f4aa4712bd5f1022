"""
Backoff policy for settlement job retries
"""
import random
from typing import Optional

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: Optional[float] = None,
        exponential_base: float = 2.0,
        jitter: bool = False
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_millis(cls, max_attempts: int, base_delay_ms: int) -> "RetryConfig":
        return cls(max_attempts=max_attempts, base_delay=base_delay_ms / 1000.0)

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait before the retry that follows failed attempt number `attempt` (1-based)"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    if config.max_delay is not None:
        delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

"""
Retry utilities for handling transient failures
"""
import random
import time
from typing import Callable, Any, Optional, List
import logging

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [Exception]

def calculate_delay(attempt: int, config: RetryConfig, hint: Optional[float] = None) -> float:
    """Calculate delay for exponential backoff with jitter.

    A server-provided hint (e.g. a Retry-After header) replaces the computed
    backoff but is still capped by ``max_delay``.
    """
    if hint is not None:
        return min(max(hint, 0.0), config.max_delay)

    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Retry wrapper with exponential backoff"""
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            # Check if exception is retryable
            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {getattr(func, '__name__', func)}")
                break

            delay = calculate_delay(attempt, config, getattr(e, "retry_after", None))
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {getattr(func, '__name__', func)}: {e}. Retrying in {delay:.2f}s")
            if delay > 0:
                time.sleep(delay)

    # All attempts failed
    raise last_exception

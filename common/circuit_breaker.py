"""
Circuit breaker for outbound calls to Discord
"""
import time
from enum import Enum
from typing import Callable, Any
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"            # failing fast until reset_timeout passes
    HALF_OPEN = "HALF_OPEN"  # letting trial calls through

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5   # consecutive failures that open the circuit
    reset_timeout: float = 60.0  # seconds open before a trial call
    success_threshold: int = 3   # trial successes that close it again

class CircuitBreakerException(Exception):
    """Raised instead of calling through while the circuit is open"""
    pass

class CircuitBreaker:
    """Counts consecutive failures of ``call``.

    Only exceptions count as failures; callers that want an HTTP status to
    trip the breaker must raise for it inside ``func``.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0

    def _move_to(self, state: CircuitState, reason: str) -> None:
        self.state = state
        self.success_count = 0
        if state == CircuitState.OPEN:
            self.opened_at = time.time()
            logger.warning(f"Circuit {self.name} open: {reason}")
        else:
            if state == CircuitState.CLOSED:
                self.failure_count = 0
            logger.info(f"Circuit {self.name} {state.value.lower()}: {reason}")

    def _admit(self) -> None:
        if self.state != CircuitState.OPEN:
            return
        if time.time() - self.opened_at >= self.config.reset_timeout:
            self._move_to(CircuitState.HALF_OPEN, "reset timeout elapsed")
            return
        raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        self._admit()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "trial call failed")
            elif self.failure_count >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN, f"{self.failure_count} consecutive failures")
            raise

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._move_to(CircuitState.CLOSED, "recovered")
        else:
            self.failure_count = 0
        return result

    def get_state(self) -> dict:
        return {"name": self.name, "state": self.state.value, "failure_count": self.failure_count}

DISCORD_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=30.0,
    success_threshold=2,
)

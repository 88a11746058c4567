"""
Circuit Breaker Pattern for External API Calls
Stops hammering a collaborator (aggregator, oracle, ledger RPC) that keeps failing
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    Per-process circuit breaker owned by one API adapter

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests blocked until recovery_timeout elapses
    - HALF_OPEN: Trial requests; success_threshold successes close the circuit
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.last_failure_time: Optional[float] = None
        self.stats = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "blocked_calls": 0,
        }

    async def async_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self.stats["total_calls"] += 1

        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.half_open_successes = 0
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            else:
                self.stats["blocked_calls"] += 1
                raise ExternalServiceError(
                    f"Circuit breaker {self.name} is OPEN. Service unavailable.",
                    service=self.name,
                )

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self) -> None:
        self.stats["successful_calls"] += 1
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info(f"Circuit {self.name} recovered - now CLOSED")
        else:
            self.failure_count = 0

    def _on_failure(self) -> None:
        self.stats["failed_calls"] += 1
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.failure_count >= self.failure_threshold and self.state != CircuitState.OPEN:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} failures")

    def reset(self) -> None:
        """Manually reset the circuit breaker"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.last_failure_time = None
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "stats": dict(self.stats),
        }

"""
Bounded retry policy shared by the refund sweep, the credit sweep and
external API calls
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Maximum attempts plus exponential backoff between them"""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def can_attempt(self, attempts_made: int) -> bool:
        """True while another attempt is allowed after attempts_made tries"""
        return attempts_made < self.max_attempts

    def remaining(self, attempts_made: int) -> int:
        return max(0, self.max_attempts - attempts_made)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)"""
        delay = self.backoff_seconds * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_backoff_seconds)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        name: str = "operation",
    ) -> T:
        """Run an async operation in-process, retrying on the given exceptions"""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except retry_on as e:
                if not self.can_attempt(attempt):
                    logger.error(f"❌ RETRY_EXHAUSTED: {name} failed after {attempt} attempt(s): {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(f"🔄 RETRY: {name} attempt {attempt} failed ({e}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)



# Credit sweep retries transient database errors inside one pass
CREDIT_SWEEP_RETRY_POLICY = RetryPolicy(max_attempts=3, backoff_seconds=1.0)

# Idempotent reads against external APIs
API_READ_RETRY_POLICY = RetryPolicy(max_attempts=3, backoff_seconds=0.5, max_backoff_seconds=5.0)

# intake_agent/retry.py
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .config import RETRY_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY, MODEL_TIMEOUT
from .errors import AIServiceError, ExternalServiceError, IntakeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Only typed service errors flagged retryable, timeouts and transport failures qualify."""
    if isinstance(error, (AIServiceError, ExternalServiceError)):
        return bool(error.retryable)
    if isinstance(error, IntakeError):
        return False
    return isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    multiplier: float = 2.0
    max_delay: float = RETRY_MAX_DELAY
    jitter: float = 0.1
    timeout: Optional[float] = MODEL_TIMEOUT  # per attempt
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1, timeout=None)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to policy.max_attempts times.
    Non-retryable errors propagate immediately; the last error propagates once attempts run out.
    A per-attempt timeout surfaces as a retryable AIServiceError.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except asyncio.TimeoutError as e:
            error: BaseException = AIServiceError(
                f"{operation_name} timed out after {policy.timeout}s",
                context={"attempt": attempt}, original_error=e,
            )
        except Exception as e:
            error = e

        if not policy.is_retryable(error):
            logger.warning("Non-transient error in %s, not retrying: %s", operation_name, error)
            raise error
        if attempt >= attempts:
            logger.error("%s failed after %d attempts: %s", operation_name, attempts, error)
            raise error

        delay = policy.delay_for(attempt)
        logger.warning(
            "Transient error in %s (attempt %d/%d), retrying in %.0fms: %s",
            operation_name, attempt, attempts, delay * 1000, error,
        )
        await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover

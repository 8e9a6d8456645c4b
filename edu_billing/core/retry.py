"""
Retrying fetch primitive for read paths.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

import structlog

from edu_billing.core.exceptions import NetworkError
from edu_billing.core.settings import settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration: attempts, exponential delay, retryable statuses."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    retry_on_status: FrozenSet[int] = field(default_factory=lambda: frozenset({429, 502, 503, 504}))
    
    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
    
    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.read_retry_attempts,
            base_delay=settings.read_retry_base_delay_seconds,
            retry_on_status=frozenset(settings.read_retry_statuses),
        )
    
    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
    
    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, NetworkError):
            return False
        # Transport failures carry no upstream status
        if error.upstream_status is None:
            return True
        return error.upstream_status in self.retry_on_status


# Single attempt, for write paths that must surface failures
NO_RETRY = RetryPolicy(max_attempts=1)


async def fetch_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "fetch",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying retryable failures per policy.
    
    Non-retryable errors propagate immediately; the last retryable error
    propagates once attempts are exhausted.
    """
    policy = policy or RetryPolicy.from_settings()
    
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not policy.is_retryable(e) or attempt + 1 >= policy.max_attempts:
                if policy.is_retryable(e):
                    logger.error(
                        "Fetch failed permanently",
                        description=description,
                        total_attempts=attempt + 1,
                        error=str(e)
                    )
                raise
            
            retry_delay = policy.delay_for(attempt)
            logger.warning(
                "Fetch failed, will retry",
                description=description,
                attempt=attempt + 1,
                retry_delay_seconds=retry_delay,
                error=str(e)
            )
            await sleep(retry_delay)
    
    raise AssertionError("unreachable")

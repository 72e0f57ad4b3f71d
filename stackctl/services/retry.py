"""
Retry logic with bounded exponential backoff for provider calls
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from config.logging import get_logger
from ..models.exceptions import ProviderFatalError, ProviderTransientError

logger = get_logger("retry")


@dataclass
class RetryConfig:
    """Configuration for retry logic"""
    max_retries: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


class RetryHandler:
    """Retries transient provider errors; anything else propagates at once"""

    def __init__(self, config: RetryConfig, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self._sleep = sleep

    async def execute_with_retry(self, func, *args, **kwargs):
        """Execute function with retry logic

        Raises:
            ProviderFatalError: When retries are exhausted
        """
        for attempt in range(self.config.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except ProviderTransientError as e:
                if attempt == self.config.max_retries:
                    logger.error(f"All {attempt + 1} attempts failed: {e}")
                    raise ProviderFatalError(
                        f"Gave up after {attempt + 1} attempts: {e.message}",
                        address=e.address,
                        action=e.action,
                        provider_code=e.provider_code,
                        details={"attempts": attempt + 1}
                    ) from e

                delay = self._calculate_delay(attempt)
                logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s")
                await self._sleep(delay)

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for exponential backoff"""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            delay *= (0.5 + random.random() * 0.5)  # 50-100% of the computed delay

        return delay

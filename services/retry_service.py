"""
Retry Service with Exponential Backoff
Bounded retries for calls to the external payment capability
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from config import Config

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        exceptions: tuple = (Exception,),
        operation_name: Optional[str] = None,
    ) -> T:
        """
        Retry an async function with exponential backoff

        Args:
            func: Zero-argument coroutine function to retry
            max_attempts: Maximum number of attempts (>= 1)
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            exceptions: Tuple of exceptions to catch and retry; anything else propagates at once
            operation_name: Label used in log lines
        """
        name = operation_name or getattr(func, "__name__", repr(func))
        attempts = max(1, max_attempts)
        delay = initial_delay

        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except exceptions as e:
                if attempt >= attempts:
                    logger.error(f"Max retry attempts ({attempts}) reached for {name}: {e}")
                    raise

                # Calculate next delay with exponential backoff
                actual_delay = delay * (0.5 + random.random()) if jitter else delay

                logger.warning(
                    f"Attempt {attempt}/{attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                await asyncio.sleep(actual_delay)
                delay = min(delay * exponential_base, max_delay)

        raise RuntimeError(f"{name} failed after {attempts} attempts")

    async def run_with_strategy(
        self,
        func: Callable[[], Awaitable[T]],
        strategy: str,
        exceptions: tuple,
        operation_name: Optional[str] = None,
    ) -> T:
        """retry_async with one of RETRY_STRATEGIES"""
        return await self.retry_async(
            func,
            exceptions=exceptions,
            operation_name=operation_name,
            **get_retry_strategy(strategy),
        )


def get_retry_strategy(name: str) -> dict:
    """Resolve a strategy at call time so configuration overrides apply"""
    if name not in RETRY_STRATEGIES:
        raise KeyError(f"Unknown retry strategy: {name}")
    return {
        'max_attempts': Config.PAYMENT_RETRY_MAX_ATTEMPTS + RETRY_STRATEGIES[name]['extra_attempts'],
        'initial_delay': Config.PAYMENT_RETRY_INITIAL_DELAY,
        'max_delay': Config.PAYMENT_RETRY_MAX_DELAY,
        'exponential_base': Config.PAYMENT_RETRY_EXPONENTIAL_BASE,
    }


# Predefined retry strategies on top of the configured payment policy
RETRY_STRATEGIES = {
    'payment': {'extra_attempts': 0},
    # Compensating voids of orphaned holds try harder before escalating
    'compensation': {'extra_attempts': 2},
}


# Global retry service instance
retry_service = RetryService()

"""
Retry Service with Exponential Backoff
Retries exchange calls on transient failures only
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from config import Config
from models import FailureLeg
from services.exchange_error_classifier import ExchangeErrorClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters; max_attempts counts the first call"""
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=Config.EXCHANGE_MAX_RETRIES + 1,
            initial_delay=Config.EXCHANGE_RETRY_INITIAL_DELAY,
            max_delay=Config.EXCHANGE_RETRY_MAX_DELAY,
            exponential_base=Config.EXCHANGE_RETRY_BACKOFF_BASE,
            jitter=Config.EXCHANGE_RETRY_JITTER,
        )

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt"""
        delay = min(self.initial_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        operation: str = "exchange_call",
        leg: FailureLeg = FailureLeg.PURCHASE,
        provider: Optional[str] = None,
    ) -> Any:
        """
        Retry an async exchange call with exponential backoff

        Args:
            func: Zero-argument coroutine function performing one attempt
            policy: Attempt ceiling and backoff parameters
            operation: Name used in log lines
            leg: Processing leg recorded on classified errors
            provider: Exchange provider recorded on classified errors

        Every failure is classified first. Permanent errors are raised on the
        spot; transient ones are retried until the ceiling, after which the
        last classified error is raised.
        """
        policy = policy or RetryPolicy.from_config()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await func()
                if attempt > 1:
                    logger.info(f"✅ RETRY_SUCCESS: {operation} succeeded on attempt {attempt}/{policy.max_attempts}")
                return result
            except Exception as e:
                error = ExchangeErrorClassifier.classify(e, leg=leg, provider=provider)

                if not ExchangeErrorClassifier.is_retryable(error):
                    logger.error(f"❌ RETRY_PERMANENT: {operation} failed with {error.code.value}: {error.message}")
                    if error is e:
                        raise
                    raise error from e

                if attempt >= policy.max_attempts:
                    logger.error(
                        f"❌ RETRY_EXHAUSTED: Max retry attempts ({policy.max_attempts}) reached for {operation}: "
                        f"{error.message}"
                    )
                    if error is e:
                        raise
                    raise error from e

                delay = policy.delay_for_attempt(attempt)
                logger.warning(
                    f"🔄 RETRY: Attempt {attempt}/{policy.max_attempts} failed for {operation}: {error.message}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)


# Global retry service instance
retry_service = RetryService()

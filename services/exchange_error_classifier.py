"""
Exchange Error Classification Service
Maps raw provider and transport failures onto the exchange failure taxonomy
so the retry wrapper can tell transient errors from permanent ones
"""

import asyncio
import logging
import re
from typing import List, Optional, Tuple, Type

import aiohttp

from models import FailureLeg
from services.exchange_client import (
    ExchangeError,
    ExchangeNetworkError,
    ExchangeTimeoutError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidInstrumentError,
    OrderRejectedError,
    PriceUnavailableError,
    RateLimitError,
    UnknownExchangeError,
)

logger = logging.getLogger(__name__)


class ExchangeErrorClassifier:
    """Classifies exchange errors for retry decisions and failure records"""

    # Checked first: retrying can never fix these
    PERMANENT_ERROR_PATTERNS: List[Tuple[str, Type[ExchangeError]]] = [
        (r"insufficient.*funds|insufficient.*balance|balance.*too.*low", InsufficientFundsError),
        (r"unknown.*asset.*pair|unknown.*asset|invalid.*pair|unsupported.*pair", InvalidInstrumentError),
        (r"unknown.*withdraw.*key|invalid.*address|address.*format|address.*not.*found", InvalidAddressError),
        (r"price.*unavailable|no.*price|ticker.*unavailable", PriceUnavailableError),
        (r"order.*minimum|invalid.*arguments|invalid.*amount|order.*rejected|rejected", OrderRejectedError),
        (r"permission.*denied|invalid.*key|invalid.*signature|unauthorized|\b401\b|\b403\b", OrderRejectedError),
    ]

    TRANSIENT_ERROR_PATTERNS: List[Tuple[str, Type[ExchangeError]]] = [
        (r"rate.*limit|too.*many.*requests|\b429\b|temporary.*lockout", RateLimitError),
        (r"timeout|timed.*out", ExchangeTimeoutError),
        (r"invalid.*nonce", ExchangeNetworkError),
        (r"econnreset|etimedout|connection.*reset|connection.*refused|connection.*error|network.*error",
         ExchangeNetworkError),
        (r"service.*unavailable|service.*busy|eservice:|\b50[234]\b", ExchangeNetworkError),
    ]

    @classmethod
    def classify(
        cls,
        exception: BaseException,
        leg: FailureLeg = FailureLeg.PURCHASE,
        provider: Optional[str] = None,
    ) -> ExchangeError:
        """Return a typed ExchangeError for any exception raised by a provider call"""
        if isinstance(exception, ExchangeError):
            if exception.provider is None:
                exception.provider = provider
            return exception

        upstream = str(exception) or type(exception).__name__

        if isinstance(exception, asyncio.TimeoutError):
            return ExchangeTimeoutError(
                "Exchange request timed out", leg=leg, upstream_message=upstream, provider=provider
            )

        if isinstance(exception, aiohttp.ClientResponseError):
            return cls.classify_http_status(exception.status, upstream, leg=leg, provider=provider)

        if isinstance(exception, (aiohttp.ClientError, ConnectionError)):
            return ExchangeNetworkError(
                f"Exchange connection failed: {upstream}", leg=leg, upstream_message=upstream, provider=provider
            )

        return cls.classify_message(upstream, leg=leg, provider=provider)

    @classmethod
    def classify_message(
        cls,
        message: str,
        leg: FailureLeg = FailureLeg.PURCHASE,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> ExchangeError:
        """Pattern-match an upstream error message"""
        lowered = message.lower()

        for pattern, error_class in cls.PERMANENT_ERROR_PATTERNS:
            if re.search(pattern, lowered):
                return error_class(
                    message, leg=leg, upstream_message=message, status_code=status_code, provider=provider
                )

        for pattern, error_class in cls.TRANSIENT_ERROR_PATTERNS:
            if re.search(pattern, lowered):
                return error_class(
                    message, leg=leg, upstream_message=message, status_code=status_code, provider=provider
                )

        logger.warning(f"⚠️ EXCHANGE_ERROR_UNCLASSIFIED: {message}")
        return UnknownExchangeError(
            message, leg=leg, upstream_message=message, status_code=status_code, provider=provider
        )

    @classmethod
    def classify_http_status(
        cls,
        status: int,
        body: str,
        leg: FailureLeg = FailureLeg.PURCHASE,
        provider: Optional[str] = None,
    ) -> ExchangeError:
        """Non-200 HTTP responses: 429 and 5xx are transient, the rest go through message patterns"""
        message = f"HTTP {status}: {body}"
        if status == 429:
            return RateLimitError(message, leg=leg, upstream_message=body, status_code=status, provider=provider)
        if status >= 500:
            return ExchangeNetworkError(message, leg=leg, upstream_message=body, status_code=status, provider=provider)
        return cls.classify_message(message, leg=leg, provider=provider, status_code=status)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return isinstance(error, ExchangeError) and error.retryable


# Global classifier instance
exchange_error_classifier = ExchangeErrorClassifier()

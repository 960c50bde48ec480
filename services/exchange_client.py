"""
Exchange client interface, result types and failure taxonomy.

The treasury processor is written against ExchangeClient only; concrete
providers (Kraken, the deterministic mock) live in their own modules and are
selected by services.exchange_factory.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from models import ExchangeErrorCode, FailureLeg

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Normalised exchange order states"""
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ExchangeWithdrawalStatus(Enum):
    """Normalised exchange withdrawal states"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class MarketOrderResult:
    """Outcome of a market buy as reported by the exchange"""
    order_id: str
    status: OrderStatus
    filled_fiat: Decimal
    filled_crypto: Decimal
    price_per_unit: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    requested_fiat: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        if self.status == OrderStatus.PARTIALLY_FILLED:
            return True
        return self.requested_fiat is not None and self.filled_fiat < self.requested_fiat


@dataclass
class WithdrawalResult:
    """Outcome of a withdrawal request"""
    withdrawal_id: str
    status: ExchangeWithdrawalStatus
    fee: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# FAILURE TAXONOMY
# ============================================================================

class ExchangeError(Exception):
    """Base exchange failure carrying everything a ProcessingFailure row needs"""

    code = ExchangeErrorCode.UNKNOWN
    retryable = False

    def __init__(
        self,
        message: str,
        leg: FailureLeg = FailureLeg.PURCHASE,
        upstream_message: Optional[str] = None,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.leg = leg
        self.upstream_message = upstream_message or message
        self.status_code = status_code
        self.provider = provider

    def to_details(self) -> Dict[str, Any]:
        """Structured context persisted alongside the failure record"""
        return {
            "code": self.code.value,
            "leg": self.leg.value,
            "retryable": self.retryable,
            "provider": self.provider,
            "status_code": self.status_code,
            "upstream_message": self.upstream_message,
            "error_type": type(self).__name__,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value}, leg={self.leg.value}, message={self.message!r})"


class InsufficientFundsError(ExchangeError):
    code = ExchangeErrorCode.INSUFFICIENT_FUNDS


class OrderRejectedError(ExchangeError):
    code = ExchangeErrorCode.ORDER_REJECTED


class InvalidInstrumentError(OrderRejectedError):
    """Unknown or unsupported trading pair"""
    pass


class InvalidAddressError(OrderRejectedError):
    """Withdrawal destination rejected"""
    pass


class PriceUnavailableError(ExchangeError):
    code = ExchangeErrorCode.PRICE_UNAVAILABLE


class ExchangeNetworkError(ExchangeError):
    """Transport-level failure - the only retryable class"""
    code = ExchangeErrorCode.NETWORK_ERROR
    retryable = True


class ExchangeTimeoutError(ExchangeNetworkError):
    pass


class RateLimitError(ExchangeNetworkError):
    pass


class UnknownExchangeError(ExchangeError):
    code = ExchangeErrorCode.UNKNOWN


# ============================================================================
# INTERFACE
# ============================================================================

class ExchangeClient(ABC):
    """Capability interface implemented once per exchange provider"""

    provider_name: str = "unknown"

    @abstractmethod
    async def create_market_order(
        self,
        fiat_amount: Decimal,
        pair: str,
        client_order_id: Optional[str] = None,
    ) -> MarketOrderResult:
        """Spend `fiat_amount` of the quote currency buying the base asset"""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> MarketOrderResult:
        """Current fill state of a previously placed order"""

    @abstractmethod
    async def withdraw(
        self,
        crypto_amount: Decimal,
        address: str,
        reference: Optional[str] = None,
    ) -> WithdrawalResult:
        """Request a transfer of `crypto_amount` BTC to `address`"""

    @abstractmethod
    async def get_current_price(self, pair: str) -> Decimal:
        """Last trade price for `pair`"""

    async def close(self) -> None:
        """Release provider resources (HTTP sessions)"""
        return None


def trading_pair(currency: str, asset: str = "BTC") -> str:
    """Canonical pair name used across providers, e.g. BTC/AUD"""
    return f"{asset.upper()}/{currency.upper()}"

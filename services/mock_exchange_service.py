"""
Deterministic mock exchange for tests, demos and sandbox tenants.

Prices do not drift, order and withdrawal ids are sequential, and every
failure mode is switched on explicitly through MockExchangeConfig.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Optional

from config import Config
from models import FailureLeg
from services.exchange_client import (
    ExchangeClient,
    ExchangeNetworkError,
    ExchangeWithdrawalStatus,
    InsufficientFundsError,
    InvalidAddressError,
    MarketOrderResult,
    OrderRejectedError,
    OrderStatus,
    PriceUnavailableError,
    RateLimitError,
    UnknownExchangeError,
    WithdrawalResult,
)
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass
class MockExchangeConfig:
    """Behaviour switches for MockExchangeService"""
    mock_price: Decimal = field(default_factory=lambda: Config.MOCK_BTC_PRICE)
    fiat_balance: Decimal = Decimal("100000")
    btc_balance: Decimal = Decimal("2")
    order_fill_rate: Decimal = Decimal("1")
    network_latency: float = 0.0

    should_fail_get_price: bool = False
    should_fail_create_order: bool = False
    should_fail_withdraw: bool = False
    simulate_insufficient_funds: bool = False
    simulate_invalid_address: bool = False
    simulate_rate_limit: bool = False
    simulate_network_error: bool = False

    # Fail this many create_market_order calls with a network error, then succeed
    transient_order_failures: int = 0
    withdrawal_status: ExchangeWithdrawalStatus = ExchangeWithdrawalStatus.PENDING


MOCK_SCENARIOS: Dict[str, MockExchangeConfig] = {
    "success": MockExchangeConfig(),
    "high_latency": MockExchangeConfig(network_latency=2.0),
    "price_service_down": MockExchangeConfig(should_fail_get_price=True),
    "trading_down": MockExchangeConfig(should_fail_create_order=True),
    "withdrawal_down": MockExchangeConfig(should_fail_withdraw=True),
    "insufficient_funds": MockExchangeConfig(simulate_insufficient_funds=True, fiat_balance=Decimal("100")),
    "invalid_address": MockExchangeConfig(simulate_invalid_address=True),
    "rate_limited": MockExchangeConfig(simulate_rate_limit=True),
    "network_error": MockExchangeConfig(simulate_network_error=True),
    "partial_fills": MockExchangeConfig(order_fill_rate=Decimal("0.5")),
    "flaky_network": MockExchangeConfig(transient_order_failures=2),
}


class MockExchangeService(ExchangeClient):
    """In-memory exchange implementing the ExchangeClient contract"""

    provider_name = "mock"

    def __init__(self, config: Optional[MockExchangeConfig] = None):
        self.config = config or MockExchangeConfig()
        self.fiat_balance = self.config.fiat_balance
        self.btc_balance = self.config.btc_balance

        self.orders: Dict[str, MarketOrderResult] = {}
        self.withdrawals: Dict[str, WithdrawalResult] = {}
        self.order_calls = 0
        self.withdraw_calls = 0
        self.price_calls = 0
        self.client_order_ids: List[Optional[str]] = []

        self._order_counter = 1000
        self._withdrawal_counter = 5000
        self._transient_failures_left = self.config.transient_order_failures

        logger.info(f"🧪 Mock exchange initialized (price={self.config.mock_price})")

    @classmethod
    def from_scenario(cls, name: str, **overrides) -> "MockExchangeService":
        """Build a mock from a named scenario, optionally overriding fields"""
        if name not in MOCK_SCENARIOS:
            raise ValueError(f"Unknown mock scenario: {name}")
        return cls(replace(MOCK_SCENARIOS[name], **overrides))

    async def _simulate_latency(self) -> None:
        if self.config.network_latency > 0:
            await asyncio.sleep(self.config.network_latency)

    def _check_for_simulated_errors(self, leg: FailureLeg) -> None:
        if self.config.simulate_network_error:
            raise ExchangeNetworkError("Mock: Network connection failed (ECONNRESET)", leg=leg, provider=self.provider_name)
        if self.config.simulate_rate_limit:
            raise RateLimitError("Mock: Rate limit exceeded", leg=leg, status_code=429, provider=self.provider_name)

    async def get_current_price(self, pair: str) -> Decimal:
        self.price_calls += 1
        await self._simulate_latency()
        self._check_for_simulated_errors(FailureLeg.PURCHASE)

        if self.config.should_fail_get_price:
            raise PriceUnavailableError("Mock: Price service unavailable", provider=self.provider_name)
        return self.config.mock_price

    async def create_market_order(
        self,
        fiat_amount: Decimal,
        pair: str,
        client_order_id: Optional[str] = None,
    ) -> MarketOrderResult:
        self.order_calls += 1
        self.client_order_ids.append(client_order_id)
        await self._simulate_latency()
        self._check_for_simulated_errors(FailureLeg.PURCHASE)

        if self._transient_failures_left > 0:
            self._transient_failures_left -= 1
            raise ExchangeNetworkError("Mock: Connection reset by peer", provider=self.provider_name)

        if self.config.should_fail_create_order:
            raise OrderRejectedError("Mock: Order rejected by exchange", provider=self.provider_name)

        if self.config.simulate_insufficient_funds or fiat_amount > self.fiat_balance:
            raise InsufficientFundsError(
                f"Mock: Insufficient funds (balance {self.fiat_balance}, requested {fiat_amount})",
                provider=self.provider_name
            )

        if fiat_amount <= 0:
            raise OrderRejectedError(f"Mock: Invalid order amount {fiat_amount}", provider=self.provider_name)

        filled_fiat = MonetaryDecimal.quantize_rate(fiat_amount * self.config.order_fill_rate)
        filled_crypto = MonetaryDecimal.quantize_crypto(filled_fiat / self.config.mock_price)
        if filled_fiat >= fiat_amount:
            status = OrderStatus.FILLED
        elif filled_fiat > 0:
            status = OrderStatus.PARTIALLY_FILLED
        else:
            status = OrderStatus.CANCELLED

        self._order_counter += 1
        order = MarketOrderResult(
            order_id=f"MOCK-ORDER-{self._order_counter}",
            status=status,
            filled_fiat=filled_fiat,
            filled_crypto=filled_crypto,
            price_per_unit=self.config.mock_price,
            requested_fiat=fiat_amount,
            raw={"pair": pair, "client_order_id": client_order_id},
        )
        self.orders[order.order_id] = order
        self.fiat_balance -= filled_fiat
        self.btc_balance += filled_crypto

        logger.info(f"🧪 MOCK_ORDER: {order.order_id} {status.value} fiat={filled_fiat} btc={filled_crypto}")
        return order

    async def get_order_status(self, order_id: str) -> MarketOrderResult:
        await self._simulate_latency()
        order = self.orders.get(order_id)
        if order is None:
            raise UnknownExchangeError(f"Mock: Order {order_id} not found", provider=self.provider_name)
        return order

    async def withdraw(
        self,
        crypto_amount: Decimal,
        address: str,
        reference: Optional[str] = None,
    ) -> WithdrawalResult:
        self.withdraw_calls += 1
        await self._simulate_latency()
        self._check_for_simulated_errors(FailureLeg.WITHDRAWAL)

        if self.config.should_fail_withdraw:
            raise UnknownExchangeError(
                "Mock: Withdrawal service unavailable", leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
            )
        if self.config.simulate_invalid_address:
            raise InvalidAddressError(
                f"Mock: Invalid address {address}", leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
            )
        if crypto_amount > self.btc_balance:
            raise InsufficientFundsError(
                f"Mock: Insufficient BTC (balance {self.btc_balance}, requested {crypto_amount})",
                leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
            )

        self._withdrawal_counter += 1
        result = WithdrawalResult(
            withdrawal_id=f"MOCK-WD-{self._withdrawal_counter}",
            status=self.config.withdrawal_status,
            fee=Decimal("0.0001"),
            raw={"address": address, "reference": reference},
        )
        self.withdrawals[result.withdrawal_id] = result
        self.btc_balance -= crypto_amount

        logger.info(f"🧪 MOCK_WITHDRAW: {result.withdrawal_id} {crypto_amount} BTC to {address[:10]}...")
        return result

    def set_order_state(self, order_id: str, status: OrderStatus,
                        filled_fiat: Optional[Decimal] = None,
                        filled_crypto: Optional[Decimal] = None) -> None:
        """Simulate a later settlement change on an existing order"""
        order = self.orders[order_id]
        self.orders[order_id] = replace(
            order,
            status=status,
            filled_fiat=order.filled_fiat if filled_fiat is None else filled_fiat,
            filled_crypto=order.filled_crypto if filled_crypto is None else filled_crypto,
        )

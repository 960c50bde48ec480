#!/usr/bin/env python3
"""
Decimal Precision Utilities for Treasury Calculations
Enforces Decimal-only arithmetic and currency minor-unit rounding
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union, Optional

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, Decimal]

# ISO 4217 minor units for currencies that do not use 2 decimal places
CURRENCY_MINOR_UNITS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
}
DEFAULT_MINOR_UNITS = 2


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places for BTC
    RATE_PRECISION = Decimal("0.00000001")  # 8 decimal places for prices

    @classmethod
    def to_decimal(cls, value: Optional[Numeric], context: str = "monetary") -> Decimal:
        """Convert a value to Decimal, rejecting floats and malformed input"""
        if value is None:
            raise ValueError(f"Missing numeric value in context {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        elif isinstance(value, float):
            # Floats never enter monetary math
            raise TypeError(f"Float value {value!r} not allowed in context {context}")
        else:
            try:
                decimal_value = Decimal(str(value))
            except InvalidOperation as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValueError(f"Invalid numeric value {value!r} in context {context}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite value {decimal_value} in context {context}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def optional_decimal(cls, value: Optional[Numeric], context: str = "monetary") -> Optional[Decimal]:
        """Like to_decimal, but passes None through"""
        if value is None:
            return None
        return cls.to_decimal(value, context)

    @staticmethod
    def minor_unit_exponent(currency: str) -> Decimal:
        """Quantization exponent for a currency's minor unit (e.g. 0.01 for AUD)"""
        places = CURRENCY_MINOR_UNITS.get((currency or "").upper(), DEFAULT_MINOR_UNITS)
        return Decimal(1).scaleb(-places)

    @classmethod
    def quantize_fiat(cls, amount: Numeric, currency: str) -> Decimal:
        """Round to the currency's minor unit (round-half-up)"""
        decimal_amount = cls.to_decimal(amount, currency)
        return decimal_amount.quantize(cls.minor_unit_exponent(currency), rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_crypto(cls, amount: Numeric) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        decimal_amount = cls.to_decimal(amount, "crypto")
        return decimal_amount.quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        """Quantize a price to rate precision (8 decimal places)"""
        decimal_rate = cls.to_decimal(rate, "exchange_rate")
        return decimal_rate.quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Numeric, percentage: Numeric) -> Decimal:
        """amount * percentage / 100 with no intermediate rounding"""
        amount_decimal = cls.to_decimal(amount, "percentage_amount")
        percentage_decimal = cls.to_decimal(percentage, "percentage_rate")
        return amount_decimal * percentage_decimal / Decimal("100")

    @classmethod
    def divide_precise(
        cls,
        dividend: Numeric,
        divisor: Numeric,
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Divide with proper precision and zero protection"""
        dividend_decimal = cls.to_decimal(dividend, "divide_dividend")
        divisor_decimal = cls.to_decimal(divisor, "divide_divisor")

        if divisor_decimal == 0:
            logger.error(f"Division by zero attempted: {dividend} / {divisor}")
            return Decimal("0")

        result = dividend_decimal / divisor_decimal
        return result.quantize(result_precision or cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def format_fiat(cls, amount: Numeric, currency: str) -> str:
        """Format a fiat amount for log output"""
        return f"{cls.quantize_fiat(amount, currency):,} {currency.upper()}"

    @classmethod
    def format_crypto(cls, amount: Numeric, currency: str = "BTC") -> str:
        """Format amount as crypto string with trailing zeros removed"""
        amount_decimal = cls.quantize_crypto(amount)
        formatted = f"{amount_decimal:f}".rstrip("0").rstrip(".")
        return f"{formatted or '0'} {currency}"

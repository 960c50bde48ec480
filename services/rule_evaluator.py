"""
Treasury rule evaluation - decides how much fiat to convert for a transaction.

Pure: no I/O. Threshold rules consume the AccumulatorUpdate produced by the
data store's atomic increment-and-compare.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from config import Config
from models import RuleType, TreasuryRule
from services.tenant_data_store import AccumulatorUpdate
from services.treasury_errors import RuleConfigurationError
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionDecision:
    should_convert: bool
    amount: Decimal = Decimal("0")
    reason: str = ""

    @classmethod
    def no_conversion(cls, reason: str) -> "ConversionDecision":
        return cls(should_convert=False, amount=Decimal("0"), reason=reason)


class RuleEvaluator:
    """Percentage and threshold conversion policies"""

    def __init__(self, max_percentage: Optional[Decimal] = None):
        self.max_percentage = Config.MAX_CONVERSION_PERCENTAGE if max_percentage is None else max_percentage

    def evaluate(
        self,
        amount: Decimal,
        currency: str,
        rule: TreasuryRule,
        accumulator: Optional[AccumulatorUpdate] = None,
    ) -> ConversionDecision:
        """Return the fiat amount to convert for a transaction of `amount`"""
        amount = MonetaryDecimal.to_decimal(amount, "transaction_amount")
        if amount <= 0:
            return ConversionDecision.no_conversion("non-positive transaction amount")

        if rule.rule_type == RuleType.PERCENTAGE.value:
            target = self._percentage_amount(amount, rule)
        elif rule.rule_type == RuleType.THRESHOLD.value:
            if accumulator is None:
                raise RuleConfigurationError(
                    f"Threshold rule {rule.id} evaluated without an accumulator update"
                )
            target = self._threshold_amount(amount, rule, accumulator)
        else:
            raise RuleConfigurationError(f"Unknown rule type: {rule.rule_type!r}")

        if target is None or target <= 0:
            return ConversionDecision.no_conversion(
                "threshold not reached" if rule.rule_type == RuleType.THRESHOLD.value else "zero conversion amount"
            )

        return self._apply_limits(target, currency, rule)

    def threshold_for(self, rule: TreasuryRule) -> Decimal:
        """Validated threshold of a threshold rule (needed before touching the accumulator)"""
        threshold = self._rule_value(rule, "threshold_amount", required=True)
        if threshold <= 0:
            raise RuleConfigurationError(f"Threshold amount must be positive (rule {rule.id})")
        return threshold

    def _percentage_amount(self, amount: Decimal, rule: TreasuryRule) -> Optional[Decimal]:
        percentage = self._rule_value(rule, "conversion_percentage", required=True)
        if percentage < 0 or percentage > 100:
            raise RuleConfigurationError(f"Conversion percentage {percentage} outside 0-100 (rule {rule.id})")
        if percentage > self.max_percentage:
            logger.warning(
                f"⚠️ RULE_POLICY: Rule {rule.id} percentage {percentage}% exceeds policy maximum "
                f"{self.max_percentage}% - not converting"
            )
            return None
        return MonetaryDecimal.percentage_of(amount, percentage)

    def _threshold_amount(self, amount: Decimal, rule: TreasuryRule,
                          accumulator: AccumulatorUpdate) -> Optional[Decimal]:
        threshold = self.threshold_for(rule)
        buffer_amount = self._rule_value(rule, "buffer_amount") or Decimal("0")

        if not accumulator.triggered:
            logger.info(
                f"📊 THRESHOLD_ACCUMULATING: Rule {rule.id} balance {accumulator.new_balance}/{threshold}"
            )
            return None

        # Convert what the crossing transaction brought in, less any buffer kept back
        excess = accumulator.new_balance - buffer_amount
        target = min(amount, excess)
        logger.info(
            f"🎯 THRESHOLD_CROSSED: Rule {rule.id} balance {accumulator.new_balance} >= {threshold}, "
            f"converting {target}"
        )
        return target

    def _apply_limits(self, target: Decimal, currency: str, rule: TreasuryRule) -> ConversionDecision:
        minimum = self._rule_value(rule, "minimum_purchase")
        maximum = self._rule_value(rule, "maximum_purchase")

        if minimum is not None and maximum is not None and maximum < minimum:
            raise RuleConfigurationError(f"Maximum purchase {maximum} below minimum {minimum} (rule {rule.id})")

        if minimum is not None and target < minimum:
            return ConversionDecision.no_conversion(f"amount {target} below minimum {minimum}")

        if maximum is not None and target > maximum:
            target = maximum

        # Single rounding step, at the very end
        final_amount = MonetaryDecimal.quantize_fiat(target, currency)
        if final_amount <= 0:
            return ConversionDecision.no_conversion("amount rounds to zero")

        return ConversionDecision(should_convert=True, amount=final_amount, reason=rule.rule_type)

    @staticmethod
    def _rule_value(rule: TreasuryRule, field_name: str, required: bool = False) -> Optional[Decimal]:
        value = getattr(rule, field_name)
        if value is None:
            if required:
                raise RuleConfigurationError(f"Rule {rule.id} is missing {field_name}")
            return None
        try:
            decimal_value = MonetaryDecimal.to_decimal(value, field_name)
        except (TypeError, ValueError) as e:
            raise RuleConfigurationError(f"Rule {rule.id} has invalid {field_name}: {value!r}") from e
        if decimal_value < 0:
            raise RuleConfigurationError(f"Rule {rule.id} has negative {field_name}: {decimal_value}")
        return decimal_value

"""
Treasury Transaction Processor
==============================

Single entry point that turns a confirmed payment into (at most) one Bitcoin
purchase for the tenant:

    eligibility -> active rule -> idempotency claim -> conversion decision
    -> market order (with retry) -> purchase row -> optional withdrawal

Outcomes:
- None: nothing to do (ineligible, no rule, below minimum, under threshold)
- PurchaseResult: exactly one persisted bitcoin_purchases row
- exception: a permanent failure, also persisted as a processing_failures row
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from config import Config
from models import (
    BitcoinPurchase,
    FailureCategory,
    FailureLeg,
    PurchaseStatus,
    RuleType,
    Transaction,
    TreasuryRule,
)
from services.exchange_client import (
    ExchangeClient,
    ExchangeError,
    MarketOrderResult,
    OrderRejectedError,
    OrderStatus,
    trading_pair,
)
from services.exchange_factory import tenant_exchange_resolver
from services.failure_recorder import FailureRecorder
from services.idempotency_guard import ClaimResolution, IdempotencyGuard
from services.retry_service import RetryPolicy, RetryService
from services.rule_evaluator import RuleEvaluator
from services.tenant_data_store import AccumulatorUpdate, TenantDataStore
from services.treasury_errors import (
    ManualReviewRequiredError,
    OrderNotSettledError,
    PurchasePersistenceError,
    RuleConfigurationError,
)
from services.withdrawal_coordinator import WithdrawalCoordinator, WithdrawalOutcome
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

# Stable exchange-side reference per (tenant, transaction)
CLIENT_ORDER_NAMESPACE = uuid.UUID("a3d9f0c4-51b7-4e2a-8c6d-9b0e1f2a7c35")


@dataclass(frozen=True)
class PaymentTransaction:
    """Confirmed payment event as delivered by the ingestion layer"""
    id: str
    tenant_id: str
    amount: Decimal
    currency: str
    status: str
    should_convert: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, transaction: Transaction) -> "PaymentTransaction":
        return cls(
            id=transaction.id,
            tenant_id=transaction.tenant_id,
            amount=MonetaryDecimal.to_decimal(transaction.amount, "transaction_amount"),
            currency=transaction.currency.upper(),
            status=transaction.status,
            should_convert=bool(transaction.should_convert),
            metadata=dict(transaction.provider_metadata or {}),
        )

    @property
    def is_eligible(self) -> bool:
        return self.should_convert and self.status == Config.ELIGIBLE_TRANSACTION_STATUS


@dataclass
class PurchaseResult:
    purchase_id: int
    transaction_id: str
    tenant_id: str
    amount_fiat: Decimal
    currency: str
    bitcoin_amount: Decimal
    price_per_btc: Decimal
    status: str
    exchange_provider: str
    exchange_order_id: str
    duplicate: bool = False
    withdrawal: Optional[WithdrawalOutcome] = None

    @classmethod
    def from_purchase(cls, purchase: BitcoinPurchase, duplicate: bool = False,
                      withdrawal: Optional[WithdrawalOutcome] = None) -> "PurchaseResult":
        return cls(
            purchase_id=purchase.id,
            transaction_id=purchase.transaction_id,
            tenant_id=purchase.tenant_id,
            amount_fiat=purchase.amount_fiat,
            currency=purchase.currency,
            bitcoin_amount=purchase.bitcoin_amount,
            price_per_btc=purchase.price_per_btc,
            status=purchase.status,
            exchange_provider=purchase.exchange_provider,
            exchange_order_id=purchase.exchange_order_id,
            duplicate=duplicate,
            withdrawal=withdrawal,
        )


@dataclass
class _ClaimProgress:
    """How far a claimed transaction got; decides how an interrupted run is cleaned up"""
    accumulator: Optional[AccumulatorUpdate] = None
    order_submitted: bool = False
    exchange_order_id: Optional[str] = None


class TreasuryProcessor:
    """Orchestrates rule evaluation, exchange execution and persistence for one tenant"""

    def __init__(
        self,
        store: TenantDataStore,
        exchange_resolver: Optional[Callable[[Optional[str]], ExchangeClient]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rule_evaluator: Optional[RuleEvaluator] = None,
        guard: Optional[IdempotencyGuard] = None,
    ):
        self.store = store
        self.tenant_id = store.tenant_id
        self.exchange_resolver = exchange_resolver or tenant_exchange_resolver(store)
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.rule_evaluator = rule_evaluator or RuleEvaluator()
        self.guard = guard or IdempotencyGuard(store)
        self.failure_recorder = FailureRecorder(store)
        self.withdrawal_coordinator = WithdrawalCoordinator(store, self.failure_recorder)

    async def process_transaction(
        self, transaction: Union[PaymentTransaction, Transaction]
    ) -> Optional[PurchaseResult]:
        tx = transaction if isinstance(transaction, PaymentTransaction) else PaymentTransaction.from_model(transaction)

        if tx.tenant_id != self.tenant_id:
            raise ValueError(f"Transaction {tx.id} belongs to tenant {tx.tenant_id}, not {self.tenant_id}")

        if not tx.is_eligible:
            logger.debug(
                f"⏭️ TREASURY_SKIP: tx {tx.id} not eligible (status={tx.status}, should_convert={tx.should_convert})"
            )
            return None

        existing = self.store.find_purchase(tx.id)
        if existing is not None:
            logger.info(f"🔁 TREASURY_DUPLICATE: tx {tx.id} already converted (purchase {existing.id})")
            return PurchaseResult.from_purchase(existing, duplicate=True)

        # Nothing is written for a tenant without an active rule
        rule = self.store.get_active_rule()
        if rule is None:
            logger.info(f"⏭️ TREASURY_NO_RULE: tenant {self.tenant_id} has no active treasury rule (tx {tx.id})")
            return None

        if not self.guard.try_claim(self.tenant_id, tx.id):
            outcome = await self.guard.wait_for_outcome(self.tenant_id, tx.id)
            if outcome.resolution == ClaimResolution.PURCHASED:
                logger.info(f"🔁 TREASURY_DUPLICATE: tx {tx.id} converted concurrently (purchase {outcome.purchase.id})")
                return PurchaseResult.from_purchase(outcome.purchase, duplicate=True)
            if outcome.resolution == ClaimResolution.SKIPPED:
                return None
            if outcome.resolution == ClaimResolution.REVIEW:
                raise ManualReviewRequiredError(
                    f"Transaction {tx.id} is awaiting manual reconciliation", transaction_id=tx.id
                )

        progress = _ClaimProgress()
        try:
            return await self._process_claimed(tx, rule, progress)
        except BaseException as e:
            # Cancellation or an unexpected error before an outcome was recorded
            if self.guard.holds_claim(self.tenant_id, tx.id):
                self._abort_claimed(tx, rule, progress, e)
            raise

    def _abort_claimed(self, tx: PaymentTransaction, rule: TreasuryRule,
                       progress: _ClaimProgress, error: BaseException) -> None:
        reason = f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
        if progress.order_submitted:
            logger.critical(
                f"🚨 TREASURY_INTERRUPTED: tx {tx.id} stopped after order submission ({reason}); "
                f"flagged for review"
            )
            self._fail_for_review(
                tx, FailureCategory.UNKNOWN,
                f"Processing interrupted after order submission: {reason}",
                details={"exchange_order_id": progress.exchange_order_id, "interruption": type(error).__name__},
            )
            return

        logger.error(f"❌ TREASURY_ABORTED: tx {tx.id} released after unexpected exit ({reason})")
        if progress.accumulator is not None:
            self._undo_accumulation(tx, rule, progress.accumulator)
        self.guard.release(self.tenant_id, tx.id)

    async def _process_claimed(self, tx: PaymentTransaction, rule: TreasuryRule,
                               progress: _ClaimProgress) -> Optional[PurchaseResult]:
        if rule.currency and rule.currency.upper() != tx.currency:
            logger.info(
                f"⏭️ TREASURY_CURRENCY_MISMATCH: rule {rule.id} is {rule.currency}, tx {tx.id} is {tx.currency}"
            )
            self.guard.skip(self.tenant_id, tx.id)
            return None

        accumulator: Optional[AccumulatorUpdate] = None
        try:
            if rule.rule_type == RuleType.THRESHOLD.value:
                threshold = self.rule_evaluator.threshold_for(rule)
                accumulator = self.store.accumulate_threshold(rule.id, tx.amount, threshold)
                progress.accumulator = accumulator
            decision = self.rule_evaluator.evaluate(tx.amount, tx.currency, rule, accumulator)
            exchange = self._resolve_exchange(rule)
        except RuleConfigurationError as e:
            e.transaction_id = tx.id
            self._fail_and_release(
                tx, rule, accumulator, FailureCategory.RULE_CONFIGURATION, e.message,
                leg=FailureLeg.PROCESSING, details={"rule_id": rule.id},
            )
            raise

        if not decision.should_convert:
            logger.info(f"⏭️ TREASURY_NO_CONVERSION: tx {tx.id} under rule {rule.id}: {decision.reason}")
            if accumulator is not None and accumulator.triggered:
                self._keep_accumulated_balance(tx, rule, accumulator)
            self.guard.skip(self.tenant_id, tx.id)
            return None

        pair = trading_pair(tx.currency)
        client_order_id = self.client_order_id(tx.id)
        logger.info(
            f"💱 TREASURY_CONVERT: tx {tx.id} converting {MonetaryDecimal.format_fiat(decision.amount, tx.currency)} "
            f"via {exchange.provider_name} (rule {rule.id}, {decision.reason}, ref {client_order_id})"
        )

        progress.order_submitted = True
        try:
            order = await RetryService.retry_async(
                lambda: exchange.create_market_order(decision.amount, pair, client_order_id),
                policy=self.retry_policy,
                operation=f"create_market_order[{client_order_id}]",
                provider=exchange.provider_name,
            )
        except ExchangeError as e:
            self._fail_and_release(
                tx, rule, accumulator, FailureCategory(e.code.value), e.message,
                leg=FailureLeg.PURCHASE, details=e.to_details(),
            )
            raise
        progress.exchange_order_id = order.order_id

        if order.filled_crypto <= 0:
            if order.status in (OrderStatus.PENDING, OrderStatus.OPEN):
                self._fail_for_review(
                    tx, FailureCategory.UNKNOWN,
                    f"Order {order.order_id} accepted but not filled within settlement window",
                    details={"exchange_order_id": order.order_id, "order_status": order.status.value},
                )
                raise OrderNotSettledError(
                    f"Order {order.order_id} for tx {tx.id} has not settled",
                    transaction_id=tx.id, exchange_order_id=order.order_id,
                )
            error = OrderRejectedError(
                f"Order {order.order_id} ended {order.status.value} with no fill",
                provider=exchange.provider_name,
            )
            self._fail_and_release(
                tx, rule, accumulator, FailureCategory.ORDER_REJECTED, error.message,
                leg=FailureLeg.PURCHASE, details=error.to_details(),
            )
            raise error

        price = await self._execution_price(tx, order, exchange, pair)

        try:
            purchase, created = self.store.insert_purchase_if_absent(
                tx.id,
                rule_id=rule.id,
                amount_fiat=MonetaryDecimal.quantize_fiat(order.filled_fiat, tx.currency),
                currency=tx.currency,
                bitcoin_amount=MonetaryDecimal.quantize_crypto(order.filled_crypto),
                price_per_btc=price,
                exchange_provider=exchange.provider_name,
                exchange_order_id=order.order_id,
                status=(PurchaseStatus.PARTIALLY_FILLED if order.is_partial else PurchaseStatus.FILLED).value,
            )
        except SQLAlchemyError as e:
            self._fail_for_review(
                tx, FailureCategory.PERSISTENCE_ERROR,
                f"Order {order.order_id} filled but purchase could not be saved: {e}",
                details={"exchange_order_id": order.order_id, "filled_fiat": str(order.filled_fiat),
                         "filled_crypto": str(order.filled_crypto)},
            )
            raise PurchasePersistenceError(
                f"Purchase for tx {tx.id} not persisted", transaction_id=tx.id, exchange_order_id=order.order_id
            ) from e

        self.guard.complete(self.tenant_id, tx.id, purchase.id)

        if not created:
            # Another worker took over our claim and bought too; keep their row, flag ours
            self._record_failure_safely(
                tx.id, FailureCategory.UNKNOWN,
                f"Duplicate exchange order {order.order_id} for tx {tx.id}; purchase {purchase.id} kept",
                leg=FailureLeg.PURCHASE, details={"exchange_order_id": order.order_id},
            )
            return PurchaseResult.from_purchase(purchase, duplicate=True)

        logger.info(
            f"✅ TREASURY_PURCHASE: tx {tx.id} bought {MonetaryDecimal.format_crypto(purchase.bitcoin_amount)} "
            f"for {MonetaryDecimal.format_fiat(purchase.amount_fiat, tx.currency)} "
            f"(purchase {purchase.id}, order {order.order_id}, {purchase.status})"
        )

        withdrawal = None
        if rule.withdrawal_address and purchase.bitcoin_amount > 0:
            try:
                withdrawal = await self.withdrawal_coordinator.withdraw(purchase, rule.withdrawal_address, exchange)
            except Exception as e:
                # Purchase already succeeded and must be reported as such
                logger.critical(
                    f"🚨 WITHDRAWAL_UNRECORDED: tx {tx.id} purchase {purchase.id} withdrawal bookkeeping failed: {e}",
                    exc_info=True,
                )

        return PurchaseResult.from_purchase(purchase, withdrawal=withdrawal)

    def client_order_id(self, transaction_id: str) -> str:
        """Deterministic UUID reference sent with the market order (exchanges cap free-text ids)"""
        return str(uuid.uuid5(CLIENT_ORDER_NAMESPACE, f"{self.tenant_id}:{transaction_id}"))

    def _keep_accumulated_balance(self, tx: PaymentTransaction, rule: TreasuryRule,
                                  accumulator: AccumulatorUpdate) -> None:
        # The crossing reset the balance but nothing was bought; the total carries over
        logger.info(
            f"📊 THRESHOLD_CARRIED_OVER: rule {rule.id} keeps balance {accumulator.new_balance} (tx {tx.id})"
        )
        try:
            self.store.restore_threshold(rule.id, accumulator.new_balance)
        except SQLAlchemyError as e:
            logger.critical(
                f"🚨 THRESHOLD_RESTORE_FAILED: rule {rule.id} tx {tx.id} by {accumulator.new_balance}: {e}"
            )

    def _resolve_exchange(self, rule: TreasuryRule) -> ExchangeClient:
        try:
            return self.exchange_resolver(rule.exchange_provider)
        except ValueError as e:
            raise RuleConfigurationError(f"Rule {rule.id}: {e}") from e

    async def _execution_price(self, tx: PaymentTransaction, order: MarketOrderResult,
                               exchange: ExchangeClient, pair: str) -> Decimal:
        if order.price_per_unit is not None and order.price_per_unit > 0:
            return MonetaryDecimal.quantize_rate(order.price_per_unit)
        if order.filled_fiat > 0:
            return MonetaryDecimal.divide_precise(order.filled_fiat, order.filled_crypto)

        try:
            return MonetaryDecimal.quantize_rate(await exchange.get_current_price(pair))
        except ExchangeError as e:
            self._fail_for_review(
                tx, FailureCategory(e.code.value),
                f"Order {order.order_id} filled but execution price unknown: {e.message}",
                details={"exchange_order_id": order.order_id, **e.to_details()},
            )
            raise ManualReviewRequiredError(
                f"Execution price for tx {tx.id} unavailable", transaction_id=tx.id
            ) from e

    def _fail_and_release(self, tx: PaymentTransaction, rule: TreasuryRule,
                          accumulator: Optional[AccumulatorUpdate], category: FailureCategory,
                          message: str, leg: FailureLeg, details: Optional[Dict[str, Any]] = None) -> None:
        """Permanent failure with nothing bought: record, undo accumulation, free the claim"""
        self._record_failure_safely(tx.id, category, message, leg=leg, details=details)
        if accumulator is not None:
            self._undo_accumulation(tx, rule, accumulator)
        self.guard.release(self.tenant_id, tx.id)

    def _fail_for_review(self, tx: PaymentTransaction, category: FailureCategory, message: str,
                         details: Optional[Dict[str, Any]] = None) -> None:
        """An order may exist on the exchange: never let a redelivery buy again"""
        self._record_failure_safely(tx.id, category, message, leg=FailureLeg.PURCHASE, details=details)
        self.guard.flag_for_review(self.tenant_id, tx.id)

    def _undo_accumulation(self, tx: PaymentTransaction, rule: TreasuryRule,
                           accumulator: AccumulatorUpdate) -> None:
        # A redelivery adds tx.amount again, so restore the pre-transaction balance
        restore_amount = accumulator.previous_balance if accumulator.triggered else -tx.amount
        try:
            self.store.restore_threshold(rule.id, restore_amount)
        except SQLAlchemyError as e:
            logger.critical(f"🚨 THRESHOLD_RESTORE_FAILED: rule {rule.id} tx {tx.id} by {restore_amount}: {e}")

    def _record_failure_safely(self, transaction_id: str, category: FailureCategory, message: str,
                               leg: FailureLeg, details: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.failure_recorder.record(transaction_id, category, message, leg=leg, details=details)
        except SQLAlchemyError as e:
            logger.critical(
                f"🚨 FAILURE_RECORD_LOST: tx {transaction_id} {category.value}: {message} (db error: {e})"
            )

    async def refresh_settlement(self, purchase_id: int) -> PurchaseResult:
        """Re-read an order's fill from the exchange and update the purchase's settlement fields"""
        purchase = self.store.get_purchase(purchase_id)
        if purchase is None:
            raise ValueError(f"Purchase {purchase_id} not found for tenant {self.tenant_id}")

        exchange = self.exchange_resolver(purchase.exchange_provider)
        order = await exchange.get_order_status(purchase.exchange_order_id)

        if order.filled_crypto <= 0:
            status = PurchaseStatus.FAILED
        elif order.status == OrderStatus.FILLED:
            status = PurchaseStatus.FILLED
        else:
            status = PurchaseStatus.PARTIALLY_FILLED

        amount_fiat = MonetaryDecimal.quantize_fiat(order.filled_fiat, purchase.currency)
        bitcoin_amount = MonetaryDecimal.quantize_crypto(order.filled_crypto)
        if order.price_per_unit:
            price = MonetaryDecimal.quantize_rate(order.price_per_unit)
        elif order.filled_crypto > 0:
            price = MonetaryDecimal.divide_precise(order.filled_fiat, order.filled_crypto)
        else:
            price = purchase.price_per_btc

        unchanged = (
            status.value == purchase.status
            and amount_fiat == purchase.amount_fiat
            and bitcoin_amount == purchase.bitcoin_amount
        )
        if unchanged:
            return PurchaseResult.from_purchase(purchase)

        updated = self.store.update_purchase_settlement(
            purchase_id, status.value, amount_fiat, bitcoin_amount, price
        )
        logger.info(
            f"🔄 SETTLEMENT_UPDATE: purchase {purchase_id} {purchase.status} -> {status.value} "
            f"(btc {purchase.bitcoin_amount} -> {bitcoin_amount})"
        )
        return PurchaseResult.from_purchase(updated)

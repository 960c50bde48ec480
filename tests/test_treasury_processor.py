"""
End-to-end tests for TreasuryProcessor.process_transaction
Covers idempotency, rule outcomes, exchange failures, withdrawals and tenant isolation
"""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from models import ClaimStatus, ExchangeIntegration, PurchaseStatus, RuleType, Transaction, WithdrawalStatus
from services.exchange_client import (
    ExchangeNetworkError,
    ExchangeWithdrawalStatus,
    InsufficientFundsError,
    MarketOrderResult,
    OrderRejectedError,
    OrderStatus,
)
from services.mock_exchange_service import MockExchangeConfig, MockExchangeService
from services.treasury_errors import (
    ManualReviewRequiredError,
    OrderNotSettledError,
    PurchasePersistenceError,
    RuleConfigurationError,
)
from services.treasury_processor import PaymentTransaction

TENANT_A = "tenant_a"
TENANT_B = "tenant_b"
BECH32_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


class TestEligibility:
    """Transactions that must never reach the exchange"""

    @pytest.mark.asyncio
    async def test_non_succeeded_transaction_is_ignored(self, store, make_rule, make_transaction, make_processor,
                                                        mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(status="pending"))

        assert result is None
        assert mock_exchange.order_calls == 0
        assert store.get_claim("pi_1001") is None

    @pytest.mark.asyncio
    async def test_should_convert_false_is_ignored(self, store, make_rule, make_transaction, make_processor,
                                                   mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(should_convert=False))

        assert result is None
        assert store.list_purchases() == []

    @pytest.mark.asyncio
    async def test_no_active_rule_skips(self, store, make_transaction, make_processor, mock_exchange):
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction())

        assert result is None
        assert mock_exchange.order_calls == 0
        assert store.get_claim("pi_1001") is None

    @pytest.mark.asyncio
    async def test_inactive_rule_writes_nothing(self, store, make_rule, make_transaction, make_processor,
                                                mock_exchange):
        make_rule(conversion_percentage="50", is_active=False)
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction())

        assert result is None
        assert store.list_purchases() == []
        assert store.list_withdrawals() == []
        assert store.list_failures() == []
        assert store.get_claim("pi_1001") is None

    @pytest.mark.asyncio
    async def test_transaction_from_other_tenant_rejected(self, store, make_transaction, make_processor):
        processor = make_processor(store)

        with pytest.raises(ValueError):
            await processor.process_transaction(make_transaction(tenant_id=TENANT_B))

    @pytest.mark.asyncio
    async def test_accepts_persisted_transaction_row(self, store, make_rule, make_processor, mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)
        row = Transaction(id="pi_row", tenant_id=TENANT_A, amount=Decimal("100.00"), currency="aud",
                          status="succeeded", should_convert=True, provider_metadata={"source": "stripe"})

        result = await processor.process_transaction(row)

        assert result.amount_fiat == Decimal("10.00")
        assert result.currency == "AUD"


class TestPercentageRules:

    @pytest.mark.asyncio
    async def test_ten_percent_of_hundred(self, store, make_rule, make_transaction, make_processor, mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(amount="100.00"))

        assert result is not None
        assert result.amount_fiat == Decimal("10.00")
        assert result.bitcoin_amount == Decimal("0.0002")
        assert result.price_per_btc == Decimal("50000")
        assert result.status == PurchaseStatus.FILLED.value
        assert result.exchange_order_id == "MOCK-ORDER-1001"
        assert result.duplicate is False
        assert mock_exchange.client_order_ids == [processor.client_order_id("pi_1001")]
        assert store.get_claim("pi_1001").status == ClaimStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_twenty_five_percent_of_two_hundred(self, store, make_rule, make_transaction, make_processor,
                                                      mock_exchange):
        make_rule(conversion_percentage="25")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(amount="200.00"))

        assert result.amount_fiat == Decimal("50.00")
        assert result.bitcoin_amount == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_below_minimum_purchase_is_noop(self, store, make_rule, make_transaction, make_processor,
                                                  mock_exchange):
        make_rule(conversion_percentage="10", minimum_purchase="20")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(amount="50.00"))

        assert result is None
        assert mock_exchange.order_calls == 0
        assert store.list_purchases() == []
        assert store.list_failures() == []

    @pytest.mark.asyncio
    async def test_capped_at_maximum_purchase(self, store, make_rule, make_transaction, make_processor,
                                              mock_exchange):
        make_rule(conversion_percentage="50", maximum_purchase="100")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(amount="1000.00"))

        assert result.amount_fiat == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_invalid_percentage_is_recorded_and_raised(self, store, make_rule, make_transaction,
                                                             make_processor, mock_exchange):
        make_rule(conversion_percentage="150")
        processor = make_processor(store, mock_exchange)

        with pytest.raises(RuleConfigurationError):
            await processor.process_transaction(make_transaction())

        failures = store.list_failures()
        assert len(failures) == 1
        assert failures[0].category == "rule_configuration"
        assert failures[0].leg == "processing"
        assert mock_exchange.order_calls == 0
        assert store.get_claim("pi_1001").status == ClaimStatus.FAILED.value


class TestThresholdRules:

    @pytest.mark.asyncio
    async def test_accumulates_until_threshold_then_converts(self, store, make_rule, seed_accumulator,
                                                             make_transaction, make_processor, mock_exchange):
        rule = make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="5000")
        seed_accumulator(rule, "4950")
        processor = make_processor(store, mock_exchange)

        first = await processor.process_transaction(make_transaction(tx_id="pi_1", amount="30.00"))
        assert first is None
        assert store.get_threshold_balance(rule.id) == Decimal("4980")

        second = await processor.process_transaction(make_transaction(tx_id="pi_2", amount="80.00"))
        assert second is not None
        assert second.amount_fiat == Decimal("80.00")
        assert store.get_threshold_balance(rule.id) == Decimal("0")
        assert mock_exchange.order_calls == 1

    @pytest.mark.asyncio
    async def test_buffer_limits_conversion(self, store, make_rule, make_transaction, make_processor, mock_exchange):
        make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="100", buffer_amount="60")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction(amount="120.00"))

        assert result.amount_fiat == Decimal("60.00")

    @pytest.mark.asyncio
    async def test_concurrent_accumulation_triggers_once(self, store, make_rule, make_transaction, make_processor,
                                                         mock_exchange):
        rule = make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="1000")
        processors = [make_processor(store, mock_exchange) for _ in range(10)]

        results = await asyncio.gather(*[
            processor.process_transaction(make_transaction(tx_id=f"pi_{i}", amount="150.00"))
            for i, processor in enumerate(processors)
        ])

        purchases = [r for r in results if r is not None]
        assert len(purchases) == 1
        assert purchases[0].amount_fiat == Decimal("150.00")
        assert store.get_threshold_balance(rule.id) == Decimal("450")

    @pytest.mark.asyncio
    async def test_failed_purchase_restores_accumulator(self, store, make_rule, seed_accumulator, make_transaction,
                                                        make_processor):
        rule = make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="100")
        seed_accumulator(rule, "60")
        exchange = MockExchangeService(MockExchangeConfig(should_fail_create_order=True))
        processor = make_processor(store, exchange)

        with pytest.raises(OrderRejectedError):
            await processor.process_transaction(make_transaction(amount="50.00"))

        assert store.get_threshold_balance(rule.id) == Decimal("60")

        # Redelivery once the exchange recovers counts the amount exactly once
        exchange.config.should_fail_create_order = False
        result = await processor.process_transaction(make_transaction(amount="50.00"))

        assert result.amount_fiat == Decimal("50.00")
        assert store.get_threshold_balance(rule.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_crossing_below_minimum_keeps_balance(self, store, make_rule, seed_accumulator, make_transaction,
                                                        make_processor, mock_exchange):
        rule = make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="5000", minimum_purchase="100")
        seed_accumulator(rule, "4990")
        processor = make_processor(store, mock_exchange)

        assert await processor.process_transaction(make_transaction(tx_id="pi_1", amount="30.00")) is None
        assert store.get_threshold_balance(rule.id) == Decimal("5020")
        assert mock_exchange.order_calls == 0

        # The next crossing transaction that clears the minimum converts
        result = await processor.process_transaction(make_transaction(tx_id="pi_2", amount="150.00"))
        assert result.amount_fiat == Decimal("150.00")
        assert store.get_threshold_balance(rule.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_unexpected_error_before_order_restores_accumulator(self, store, make_rule, seed_accumulator,
                                                                      make_transaction, make_processor,
                                                                      mock_exchange):
        rule = make_rule(rule_type=RuleType.THRESHOLD.value, threshold_amount="100")
        seed_accumulator(rule, "60")
        processor = make_processor(store, mock_exchange)

        with patch.object(processor.rule_evaluator, "evaluate", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                await processor.process_transaction(make_transaction(amount="50.00"))

        assert store.get_threshold_balance(rule.id) == Decimal("60")
        assert store.get_claim("pi_1001").status == ClaimStatus.FAILED.value
        assert mock_exchange.order_calls == 0


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_redelivery_returns_existing_purchase(self, store, make_rule, make_transaction, make_processor,
                                                        mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        first = await processor.process_transaction(make_transaction())
        second = await processor.process_transaction(make_transaction())

        assert second.duplicate is True
        assert second.purchase_id == first.purchase_id
        assert mock_exchange.order_calls == 1
        assert len(store.list_purchases()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_delivery_buys_once(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService(MockExchangeConfig(network_latency=0.05))
        processors = [make_processor(store, exchange) for _ in range(5)]

        results = await asyncio.gather(*[p.process_transaction(make_transaction()) for p in processors])

        assert exchange.order_calls == 1
        assert len(store.list_purchases()) == 1
        assert len({r.purchase_id for r in results}) == 1
        assert sum(1 for r in results if not r.duplicate) == 1

    @pytest.mark.asyncio
    async def test_skipped_transaction_stays_skipped(self, store, make_rule, make_transaction, make_processor,
                                                     mock_exchange):
        rule = make_rule(conversion_percentage="10", minimum_purchase="50")
        processor = make_processor(store, mock_exchange)
        assert await processor.process_transaction(make_transaction()) is None
        assert store.get_claim("pi_1001").status == ClaimStatus.SKIPPED.value

        # A later rule change does not re-open an already decided transaction
        rule.is_active = False
        make_rule(conversion_percentage="100")
        assert await processor.process_transaction(make_transaction()) is None
        assert mock_exchange.order_calls == 0

    @pytest.mark.asyncio
    async def test_rule_added_later_converts_redelivery(self, store, make_rule, make_transaction, make_processor,
                                                        mock_exchange):
        processor = make_processor(store, mock_exchange)
        assert await processor.process_transaction(make_transaction()) is None

        make_rule(conversion_percentage="10")
        result = await processor.process_transaction(make_transaction())

        assert result.amount_fiat == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_distinct_transactions_each_purchase(self, store, make_rule, make_transaction, make_processor,
                                                       mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        first = await processor.process_transaction(make_transaction(tx_id="pi_a"))
        second = await processor.process_transaction(make_transaction(tx_id="pi_b"))

        assert first.purchase_id != second.purchase_id
        assert mock_exchange.client_order_ids == [processor.client_order_id("pi_a"), processor.client_order_id("pi_b")]
        assert len(store.list_purchases()) == 2

    def test_client_order_id_is_stable_uuid(self, store, other_store, make_processor):
        processor = make_processor(store)
        payment_id = "pi_3MtwBwLkdIwHu7ix28a3tqPa"

        reference = processor.client_order_id(payment_id)

        assert str(uuid.UUID(reference)) == reference
        assert processor.client_order_id(payment_id) == reference
        assert make_processor(other_store).client_order_id(payment_id) != reference

    @pytest.mark.asyncio
    async def test_cancellation_after_order_flags_review(self, store, make_rule, make_transaction, make_processor,
                                                         mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)
        order_placed = asyncio.Event()
        place_order = mock_exchange.create_market_order

        async def place_then_stall(*args, **kwargs):
            order = await place_order(*args, **kwargs)
            order_placed.set()
            await asyncio.sleep(30)
            return order

        with patch.object(mock_exchange, "create_market_order", new=place_then_stall):
            task = asyncio.create_task(processor.process_transaction(make_transaction()))
            await order_placed.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            # A redelivery must not buy again
            with pytest.raises(ManualReviewRequiredError):
                await processor.process_transaction(make_transaction())

        assert mock_exchange.order_calls == 1
        assert store.list_purchases() == []
        assert store.get_claim("pi_1001").status == ClaimStatus.REVIEW.value
        failures = store.list_failures()
        assert len(failures) == 1
        assert "interrupted after order submission" in failures[0].error_message

    @pytest.mark.asyncio
    async def test_cancellation_before_order_releases_claim(self, store, make_rule, make_transaction,
                                                            make_processor, mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        with patch.object(processor, "_resolve_exchange", side_effect=asyncio.CancelledError()):
            with pytest.raises(asyncio.CancelledError):
                await processor.process_transaction(make_transaction())

        assert store.get_claim("pi_1001").status == ClaimStatus.FAILED.value

        result = await processor.process_transaction(make_transaction())
        assert result.amount_fiat == Decimal("10.00")
        assert mock_exchange.order_calls == 1


class TestExchangeFailures:

    @pytest.mark.asyncio
    async def test_rejected_order_records_one_failure(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService.from_scenario("trading_down")
        processor = make_processor(store, exchange)

        with pytest.raises(OrderRejectedError):
            await processor.process_transaction(make_transaction())

        assert store.list_purchases() == []
        failures = store.list_failures()
        assert len(failures) == 1
        assert failures[0].category == "order_rejected"
        assert failures[0].leg == "purchase"
        assert exchange.order_calls == 1
        assert store.get_claim("pi_1001").status == ClaimStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_insufficient_funds_not_retried(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService(MockExchangeConfig(simulate_insufficient_funds=True))
        processor = make_processor(store, exchange)

        with pytest.raises(InsufficientFundsError):
            await processor.process_transaction(make_transaction())

        assert exchange.order_calls == 1
        assert store.list_failures()[0].category == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_network_errors_stop_after_four_attempts(self, store, make_rule, make_transaction,
                                                           make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService.from_scenario("network_error")
        processor = make_processor(store, exchange)

        with pytest.raises(ExchangeNetworkError):
            await processor.process_transaction(make_transaction())

        assert exchange.order_calls == 4
        assert store.list_purchases() == []
        failures = store.list_failures()
        assert len(failures) == 1
        assert failures[0].category == "network_error"

    @pytest.mark.asyncio
    async def test_transient_errors_recover(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService.from_scenario("flaky_network")
        processor = make_processor(store, exchange)

        result = await processor.process_transaction(make_transaction())

        assert result is not None
        assert exchange.order_calls == 3
        assert store.list_failures() == []

    @pytest.mark.asyncio
    async def test_released_claim_can_be_retried(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService(MockExchangeConfig(should_fail_create_order=True))
        processor = make_processor(store, exchange)

        with pytest.raises(OrderRejectedError):
            await processor.process_transaction(make_transaction())

        exchange.config.should_fail_create_order = False
        result = await processor.process_transaction(make_transaction())

        assert result is not None
        claim = store.get_claim("pi_1001")
        assert claim.status == ClaimStatus.COMPLETED.value
        assert claim.attempts == 2

    @pytest.mark.asyncio
    async def test_zero_fill_cancelled_order_is_rejection(self, store, make_rule, make_transaction, make_processor,
                                                          mock_exchange):
        make_rule(conversion_percentage="10")
        cancelled = MarketOrderResult("ORD-CXL", OrderStatus.CANCELLED, Decimal("0"), Decimal("0"))
        processor = make_processor(store, mock_exchange)

        with patch.object(mock_exchange, "create_market_order", new=AsyncMock(return_value=cancelled)):
            with pytest.raises(OrderRejectedError):
                await processor.process_transaction(make_transaction())

        assert store.list_purchases() == []
        assert store.list_failures()[0].category == "order_rejected"
        assert store.get_claim("pi_1001").status == ClaimStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unsettled_order_goes_to_review(self, store, make_rule, make_transaction, make_processor,
                                                  mock_exchange):
        make_rule(conversion_percentage="10")
        pending = MarketOrderResult("ORD-PEND", OrderStatus.PENDING, Decimal("0"), Decimal("0"))
        processor = make_processor(store, mock_exchange)

        with patch.object(mock_exchange, "create_market_order", new=AsyncMock(return_value=pending)):
            with pytest.raises(OrderNotSettledError):
                await processor.process_transaction(make_transaction())

        assert store.get_claim("pi_1001").status == ClaimStatus.REVIEW.value
        with pytest.raises(ManualReviewRequiredError):
            await processor.process_transaction(make_transaction())

    @pytest.mark.asyncio
    async def test_missing_price_derived_from_fill(self, store, make_rule, make_transaction, make_processor,
                                                   mock_exchange):
        make_rule(conversion_percentage="10")
        filled = MarketOrderResult("ORD-1", OrderStatus.FILLED, Decimal("10.00"), Decimal("0.0002"))
        processor = make_processor(store, mock_exchange)

        with patch.object(mock_exchange, "create_market_order", new=AsyncMock(return_value=filled)):
            result = await processor.process_transaction(make_transaction())

        assert result.price_per_btc == Decimal("50000")
        assert mock_exchange.price_calls == 0

    @pytest.mark.asyncio
    async def test_persistence_failure_flags_review(self, store, make_rule, make_transaction, make_processor,
                                                    mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        with patch.object(store, "insert_purchase_if_absent", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PurchasePersistenceError) as exc_info:
                await processor.process_transaction(make_transaction())

        assert exc_info.value.exchange_order_id == "MOCK-ORDER-1001"
        assert store.list_failures()[0].category == "persistence_error"
        assert store.get_claim("pi_1001").status == ClaimStatus.REVIEW.value

        # Never buys again on redelivery
        with pytest.raises(ManualReviewRequiredError):
            await processor.process_transaction(make_transaction())
        assert mock_exchange.order_calls == 1

    @pytest.mark.asyncio
    async def test_failure_recording_error_does_not_mask_exchange_error(self, store, make_rule, make_transaction,
                                                                        make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService.from_scenario("trading_down")
        processor = make_processor(store, exchange)

        with patch.object(store, "insert_failure", side_effect=SQLAlchemyError("db down")):
            with pytest.raises(OrderRejectedError):
                await processor.process_transaction(make_transaction())

    @pytest.mark.asyncio
    async def test_unknown_provider_is_configuration_error(self, store, make_rule, make_transaction):
        from services.treasury_processor import TreasuryProcessor

        make_rule(conversion_percentage="10", exchange_provider="nonexistent")
        processor = TreasuryProcessor(store)

        with pytest.raises(RuleConfigurationError):
            await processor.process_transaction(make_transaction())

        assert store.list_failures()[0].category == "rule_configuration"


class TestWithdrawals:

    @pytest.mark.asyncio
    async def test_withdrawal_submitted_after_purchase(self, store, make_rule, make_transaction, make_processor,
                                                       mock_exchange):
        make_rule(conversion_percentage="10", withdrawal_address=BECH32_ADDRESS)
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction())

        assert result.withdrawal.status == WithdrawalStatus.PENDING
        assert result.withdrawal.exchange_withdrawal_id == "MOCK-WD-5001"
        rows = store.list_withdrawals(purchase_id=result.purchase_id)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("0.0002")
        assert rows[0].destination_address == BECH32_ADDRESS

    @pytest.mark.asyncio
    async def test_sent_withdrawal_marked_completed(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10", withdrawal_address=BECH32_ADDRESS)
        exchange = MockExchangeService(MockExchangeConfig(withdrawal_status=ExchangeWithdrawalStatus.SENT))
        processor = make_processor(store, exchange)

        result = await processor.process_transaction(make_transaction())

        assert store.list_withdrawals()[0].status == WithdrawalStatus.COMPLETED.value
        assert result.withdrawal.succeeded

    @pytest.mark.asyncio
    async def test_withdrawal_failure_keeps_purchase(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10", withdrawal_address=BECH32_ADDRESS)
        exchange = MockExchangeService.from_scenario("withdrawal_down")
        processor = make_processor(store, exchange)

        result = await processor.process_transaction(make_transaction())

        assert result.status == PurchaseStatus.FILLED.value
        assert result.withdrawal.status == WithdrawalStatus.FAILED
        assert store.find_purchase("pi_1001").status == PurchaseStatus.FILLED.value
        withdrawals = store.list_withdrawals()
        assert [w.status for w in withdrawals] == [WithdrawalStatus.FAILED.value]
        failures = store.list_failures()
        assert len(failures) == 1
        assert failures[0].leg == "withdrawal"
        assert failures[0].details["purchase_id"] == result.purchase_id

    @pytest.mark.asyncio
    async def test_malformed_address_never_reaches_exchange(self, store, make_rule, make_transaction,
                                                            make_processor, mock_exchange):
        make_rule(conversion_percentage="10", withdrawal_address="not-a-bitcoin-address")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction())

        assert result is not None
        assert mock_exchange.withdraw_calls == 0
        assert store.list_withdrawals()[0].status == WithdrawalStatus.FAILED.value
        assert store.list_failures()[0].category == "order_rejected"

    @pytest.mark.asyncio
    async def test_no_address_no_withdrawal(self, store, make_rule, make_transaction, make_processor,
                                            mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)

        result = await processor.process_transaction(make_transaction())

        assert result.withdrawal is None
        assert mock_exchange.withdraw_calls == 0
        assert store.list_withdrawals() == []


class TestTenantIsolation:

    @pytest.mark.asyncio
    async def test_same_transaction_id_in_two_tenants(self, store, other_store, make_rule, make_transaction,
                                                      make_processor, mock_exchange):
        make_rule(tenant_id=TENANT_A, conversion_percentage="10")
        make_rule(tenant_id=TENANT_B, conversion_percentage="20")

        result_a = await make_processor(store, mock_exchange).process_transaction(
            make_transaction(tx_id="pi_shared", tenant_id=TENANT_A)
        )
        result_b = await make_processor(other_store, mock_exchange).process_transaction(
            make_transaction(tx_id="pi_shared", tenant_id=TENANT_B)
        )

        assert result_a.duplicate is False and result_b.duplicate is False
        assert result_a.amount_fiat == Decimal("10.00")
        assert result_b.amount_fiat == Decimal("20.00")
        assert [p.id for p in store.list_purchases()] == [result_a.purchase_id]
        assert [p.id for p in other_store.list_purchases()] == [result_b.purchase_id]

    @pytest.mark.asyncio
    async def test_other_tenants_rule_is_invisible(self, store, make_rule, make_transaction, make_processor,
                                                   mock_exchange):
        make_rule(tenant_id=TENANT_B, conversion_percentage="10")

        result = await make_processor(store, mock_exchange).process_transaction(make_transaction())

        assert result is None
        assert mock_exchange.order_calls == 0

    @pytest.mark.asyncio
    async def test_each_tenant_trades_on_its_own_account(self, store, other_store, db_session, make_rule,
                                                         make_transaction, fast_retry_policy):
        from services.treasury_processor import TreasuryProcessor

        make_rule(tenant_id=TENANT_A, conversion_percentage="10")
        make_rule(tenant_id=TENANT_B, conversion_percentage="10")
        db_session.add(ExchangeIntegration(tenant_id=TENANT_A, provider="mock",
                                           settings={"scenario": "partial_fills"}))
        db_session.commit()

        result_a = await TreasuryProcessor(store, retry_policy=fast_retry_policy).process_transaction(
            make_transaction(tenant_id=TENANT_A)
        )
        result_b = await TreasuryProcessor(other_store, retry_policy=fast_retry_policy).process_transaction(
            make_transaction(tenant_id=TENANT_B)
        )

        assert result_a.status == PurchaseStatus.PARTIALLY_FILLED.value
        assert result_b.status == PurchaseStatus.FILLED.value


class TestSettlementRefresh:

    @pytest.mark.asyncio
    async def test_partial_fill_completes_on_refresh(self, store, make_rule, make_transaction, make_processor):
        make_rule(conversion_percentage="10")
        exchange = MockExchangeService.from_scenario("partial_fills")
        processor = make_processor(store, exchange)

        result = await processor.process_transaction(make_transaction())
        assert result.status == PurchaseStatus.PARTIALLY_FILLED.value
        assert result.amount_fiat == Decimal("5.00")

        exchange.set_order_state(result.exchange_order_id, OrderStatus.FILLED,
                                 filled_fiat=Decimal("10.00"), filled_crypto=Decimal("0.0002"))
        refreshed = await processor.refresh_settlement(result.purchase_id)

        assert refreshed.status == PurchaseStatus.FILLED.value
        assert refreshed.amount_fiat == Decimal("10.00")
        assert refreshed.bitcoin_amount == Decimal("0.0002")
        assert len(store.list_purchases()) == 1

    @pytest.mark.asyncio
    async def test_refresh_without_change_leaves_row(self, store, make_rule, make_transaction, make_processor,
                                                     mock_exchange):
        make_rule(conversion_percentage="10")
        processor = make_processor(store, mock_exchange)
        result = await processor.process_transaction(make_transaction())

        with patch.object(store, "update_purchase_settlement") as update_mock:
            refreshed = await processor.refresh_settlement(result.purchase_id)

        update_mock.assert_not_called()
        assert refreshed.status == PurchaseStatus.FILLED.value

    @pytest.mark.asyncio
    async def test_refresh_unknown_purchase(self, store, make_processor):
        with pytest.raises(ValueError):
            await make_processor(store).refresh_settlement(999)


def test_payment_transaction_eligibility():
    tx = PaymentTransaction(id="pi_1", tenant_id=TENANT_A, amount=Decimal("1"), currency="AUD", status="succeeded")
    assert tx.is_eligible
    assert not PaymentTransaction(id="pi_1", tenant_id=TENANT_A, amount=Decimal("1"), currency="AUD",
                                  status="refunded").is_eligible

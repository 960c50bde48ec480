"""
Withdrawal coordinator - moves purchased Bitcoin to the tenant's address.

Single attempt, always leaves a bitcoin_withdrawals row behind, and never
touches the purchase it belongs to. Failures become withdrawal-leg
ProcessingFailure rows instead of exceptions.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import BitcoinPurchase, FailureLeg, WithdrawalStatus
from services.exchange_client import (
    ExchangeClient,
    ExchangeError,
    ExchangeWithdrawalStatus,
    InvalidAddressError,
    UnknownExchangeError,
)
from services.exchange_error_classifier import ExchangeErrorClassifier
from services.failure_recorder import FailureRecorder
from services.tenant_data_store import TenantDataStore
from utils.bitcoin_address import AddressValidationError, validate_bitcoin_address
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

# Exchange-reported states -> persisted withdrawal states
EXCHANGE_WITHDRAWAL_STATUS_MAP = {
    ExchangeWithdrawalStatus.PENDING: WithdrawalStatus.PENDING,
    ExchangeWithdrawalStatus.PROCESSING: WithdrawalStatus.PENDING,
    ExchangeWithdrawalStatus.SENT: WithdrawalStatus.COMPLETED,
    ExchangeWithdrawalStatus.CONFIRMED: WithdrawalStatus.COMPLETED,
    ExchangeWithdrawalStatus.FAILED: WithdrawalStatus.FAILED,
    ExchangeWithdrawalStatus.CANCELLED: WithdrawalStatus.FAILED,
}


@dataclass
class WithdrawalOutcome:
    withdrawal_row_id: int
    status: WithdrawalStatus
    exchange_withdrawal_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != WithdrawalStatus.FAILED


class WithdrawalCoordinator:
    """Best-effort post-purchase withdrawal"""

    def __init__(self, store: TenantDataStore, failure_recorder: FailureRecorder,
                 allow_testnet: bool = False):
        self.store = store
        self.failure_recorder = failure_recorder
        self.allow_testnet = allow_testnet

    async def withdraw(self, purchase: BitcoinPurchase, address: str,
                       exchange: ExchangeClient) -> WithdrawalOutcome:
        amount = MonetaryDecimal.quantize_crypto(purchase.bitcoin_amount)
        row = self.store.insert_withdrawal(
            purchase_id=purchase.id,
            transaction_id=purchase.transaction_id,
            destination_address=address,
            amount=amount,
            status=WithdrawalStatus.PENDING.value,
        )

        try:
            validated_address = validate_bitcoin_address(address, allow_testnet=self.allow_testnet)
            result = await exchange.withdraw(amount, validated_address, reference=f"tx_{purchase.transaction_id}")
        except AddressValidationError as e:
            error: ExchangeError = InvalidAddressError(
                str(e), leg=FailureLeg.WITHDRAWAL, provider=exchange.provider_name
            )
        except Exception as e:
            error = ExchangeErrorClassifier.classify(e, leg=FailureLeg.WITHDRAWAL, provider=exchange.provider_name)
        else:
            status = EXCHANGE_WITHDRAWAL_STATUS_MAP.get(result.status, WithdrawalStatus.PENDING)
            if status != WithdrawalStatus.FAILED:
                self.store.update_withdrawal(row.id, status.value, exchange_withdrawal_id=result.withdrawal_id)
                logger.info(
                    f"✅ WITHDRAWAL_SUBMITTED: {amount} BTC for tx {purchase.transaction_id} "
                    f"-> {address[:10]}... ({result.withdrawal_id}, {status.value})"
                )
                return WithdrawalOutcome(row.id, status, exchange_withdrawal_id=result.withdrawal_id)

            error = UnknownExchangeError(
                f"Exchange reported withdrawal {result.withdrawal_id} as {result.status.value}",
                leg=FailureLeg.WITHDRAWAL, provider=exchange.provider_name
            )

        # A purchase-leg error raised by a provider helper still belongs to this leg
        error.leg = FailureLeg.WITHDRAWAL
        self.store.update_withdrawal(row.id, WithdrawalStatus.FAILED.value, error_message=error.message)
        self.failure_recorder.record_exchange_error(
            purchase.transaction_id,
            error,
            extra={"purchase_id": purchase.id, "withdrawal_row_id": row.id, "address": address},
        )
        logger.warning(
            f"⚠️ WITHDRAWAL_FAILED: tx {purchase.transaction_id} purchase {purchase.id} stays "
            f"{purchase.status}: {error.message}"
        )
        return WithdrawalOutcome(row.id, WithdrawalStatus.FAILED, error_message=error.message)

"""
Idempotency guard for treasury purchases.

A claim row in processing_claims (unique per tenant and transaction) decides
which processor may talk to the exchange for a transaction. Processors that
lose the insert wait for the winner's outcome instead of buying again.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from config import Config
from models import BitcoinPurchase, ClaimStatus
from services.tenant_data_store import TenantDataStore
from services.treasury_errors import TransactionInFlightError
from utils.datetime_helpers import naive_utc_seconds_ago

logger = logging.getLogger(__name__)


class ClaimResolution(Enum):
    """How a contended claim was resolved for the waiting processor"""
    PURCHASED = "purchased"   # winner persisted a purchase
    SKIPPED = "skipped"       # winner decided no conversion
    CLAIMED = "claimed"       # claim was released or stale and is now ours
    REVIEW = "review"         # winner left the transaction for manual reconciliation


@dataclass
class ClaimOutcome:
    resolution: ClaimResolution
    purchase: Optional[BitcoinPurchase] = None


class IdempotencyGuard:
    """At-most-one exchange purchase per (tenant, transaction)"""

    def __init__(
        self,
        store: TenantDataStore,
        wait_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
    ):
        self.store = store
        self.wait_timeout = Config.CLAIM_WAIT_TIMEOUT_SECONDS if wait_timeout is None else wait_timeout
        self.poll_interval = Config.CLAIM_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.stale_after = Config.CLAIM_STALE_AFTER_SECONDS if stale_after is None else stale_after
        # Owner tokens for claims this guard currently holds
        self._owned: Dict[Tuple[str, str], str] = {}

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self.store.tenant_id:
            raise ValueError(
                f"Tenant mismatch: guard bound to {self.store.tenant_id}, called for {tenant_id}"
            )

    def try_claim(self, tenant_id: str, transaction_id: str) -> bool:
        """Atomically claim a transaction; True only for the single winner"""
        self._check_tenant(tenant_id)
        token = uuid.uuid4().hex

        if self.store.insert_claim(transaction_id, token):
            self._owned[(tenant_id, transaction_id)] = token
            logger.info(f"🔒 CLAIM_ACQUIRED: {tenant_id}/{transaction_id}")
            return True

        if self.store.takeover_claim(transaction_id, token, naive_utc_seconds_ago(self.stale_after)):
            self._owned[(tenant_id, transaction_id)] = token
            logger.warning(f"🔓 CLAIM_TAKEOVER: {tenant_id}/{transaction_id} (released or stale claim)")
            return True

        return False

    def holds_claim(self, tenant_id: str, transaction_id: str) -> bool:
        return (tenant_id, transaction_id) in self._owned

    async def wait_for_outcome(self, tenant_id: str, transaction_id: str) -> ClaimOutcome:
        """
        Poll until the owning processor resolves the transaction.

        Raises TransactionInFlightError if the owner is still working when the
        wait budget runs out.
        """
        self._check_tenant(tenant_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout

        while True:
            purchase = self.store.find_purchase(transaction_id)
            if purchase is not None:
                return ClaimOutcome(ClaimResolution.PURCHASED, purchase)

            claim = self.store.get_claim(transaction_id)
            if claim is not None and claim.status == ClaimStatus.SKIPPED.value:
                return ClaimOutcome(ClaimResolution.SKIPPED)
            if claim is not None and claim.status == ClaimStatus.REVIEW.value:
                return ClaimOutcome(ClaimResolution.REVIEW)

            if claim is None or claim.status in (ClaimStatus.FAILED.value, ClaimStatus.PROCESSING.value):
                if self.try_claim(tenant_id, transaction_id):
                    return ClaimOutcome(ClaimResolution.CLAIMED)

            if loop.time() >= deadline:
                logger.warning(f"⏳ CLAIM_WAIT_TIMEOUT: {tenant_id}/{transaction_id} still in flight")
                raise TransactionInFlightError(
                    f"Transaction {transaction_id} is being processed by another worker",
                    transaction_id=transaction_id,
                )

            await asyncio.sleep(self.poll_interval)

    def _finish(self, tenant_id: str, transaction_id: str, status: ClaimStatus,
                purchase_id: Optional[int] = None) -> bool:
        token = self._owned.pop((tenant_id, transaction_id), None)
        if token is None:
            logger.warning(f"⚠️ CLAIM_NOT_OWNED: {tenant_id}/{transaction_id} -> {status.value}")
            return False

        updated = self.store.update_claim(transaction_id, token, status.value, purchase_id=purchase_id)
        if not updated:
            # Our claim went stale and someone else took it over
            logger.warning(f"⚠️ CLAIM_LOST: {tenant_id}/{transaction_id} could not move to {status.value}")
        return updated

    def complete(self, tenant_id: str, transaction_id: str, purchase_id: int) -> bool:
        return self._finish(tenant_id, transaction_id, ClaimStatus.COMPLETED, purchase_id)

    def skip(self, tenant_id: str, transaction_id: str) -> bool:
        return self._finish(tenant_id, transaction_id, ClaimStatus.SKIPPED)

    def release(self, tenant_id: str, transaction_id: str) -> bool:
        """Give the transaction back after a permanent failure so a redelivery can retry it"""
        return self._finish(tenant_id, transaction_id, ClaimStatus.FAILED)

    def flag_for_review(self, tenant_id: str, transaction_id: str) -> bool:
        return self._finish(tenant_id, transaction_id, ClaimStatus.REVIEW)

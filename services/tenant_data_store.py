"""
Tenant-scoped persistence for the treasury engine.

Every statement issued here is filtered by the tenant id the store was built
with; callers never pass a tenant id per call. When schema isolation is on,
sessions are additionally bound to the tenant's own schema.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, null, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from config import Config
from database import TENANT_ID_PATTERN, get_engine, tenant_schema_name
from models import (
    BitcoinPurchase,
    BitcoinWithdrawal,
    ClaimStatus,
    ExchangeIntegration,
    ProcessingClaim,
    ProcessingFailure,
    ThresholdAccumulator,
    TreasuryRule,
)
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccumulatorUpdate:
    """Result of one atomic increment-and-compare on a threshold accumulator"""
    previous_balance: Decimal
    new_balance: Decimal
    triggered: bool
    balance_after: Decimal


class TenantDataStore:
    """Typed reads/writes for one tenant's rules, purchases, failures and dedup ledger"""

    def __init__(self, tenant_id: str, engine: Optional[Engine] = None,
                 schema_isolation: Optional[bool] = None):
        if not tenant_id or not TENANT_ID_PATTERN.match(tenant_id):
            raise ValueError(f"Invalid tenant id: {tenant_id!r}")

        self.tenant_id = tenant_id
        engine = engine or get_engine()

        if schema_isolation is None:
            schema_isolation = Config.TENANT_SCHEMA_ISOLATION

        if schema_isolation:
            self.schema = tenant_schema_name(tenant_id)
            engine = engine.execution_options(schema_translate_map={None: self.schema})
        else:
            self.schema = None

        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Treasury rules
    # ------------------------------------------------------------------

    def get_active_rule(self) -> Optional[TreasuryRule]:
        """Most recently created active rule, or None"""
        stmt = (
            select(TreasuryRule)
            .where(TreasuryRule.tenant_id == self.tenant_id, TreasuryRule.is_active.is_(True))
            .order_by(TreasuryRule.created_at.desc(), TreasuryRule.id.desc())
            .limit(2)
        )
        with atomic_transaction(self._session_factory) as session:
            rules = session.execute(stmt).scalars().all()

        if len(rules) > 1:
            logger.warning(
                f"⚠️ MULTIPLE_ACTIVE_RULES: Tenant {self.tenant_id} has more than one active rule, "
                f"using rule {rules[0].id}"
            )
        return rules[0] if rules else None

    # ------------------------------------------------------------------
    # Exchange integrations
    # ------------------------------------------------------------------

    def get_exchange_integration(self, provider: str) -> Optional[ExchangeIntegration]:
        """Most recently created active exchange account for a provider, or None"""
        stmt = (
            select(ExchangeIntegration)
            .where(
                ExchangeIntegration.tenant_id == self.tenant_id,
                ExchangeIntegration.provider == provider.lower(),
                ExchangeIntegration.is_active.is_(True),
            )
            .order_by(ExchangeIntegration.created_at.desc(), ExchangeIntegration.id.desc())
            .limit(1)
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def find_purchase(self, transaction_id: str) -> Optional[BitcoinPurchase]:
        stmt = select(BitcoinPurchase).where(
            BitcoinPurchase.tenant_id == self.tenant_id,
            BitcoinPurchase.transaction_id == transaction_id,
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    def get_purchase(self, purchase_id: int) -> Optional[BitcoinPurchase]:
        stmt = select(BitcoinPurchase).where(
            BitcoinPurchase.tenant_id == self.tenant_id,
            BitcoinPurchase.id == purchase_id,
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    def list_purchases(self) -> List[BitcoinPurchase]:
        stmt = (
            select(BitcoinPurchase)
            .where(BitcoinPurchase.tenant_id == self.tenant_id)
            .order_by(BitcoinPurchase.id)
        )
        with atomic_transaction(self._session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def insert_purchase_if_absent(self, transaction_id: str, **fields: Any) -> Tuple[BitcoinPurchase, bool]:
        """
        Insert the purchase row unless one already exists for the transaction.

        The (tenant_id, transaction_id) unique constraint decides the race;
        the loser gets the existing row back. Returns (purchase, created).
        """
        try:
            with atomic_transaction(self._session_factory) as session:
                purchase = BitcoinPurchase(tenant_id=self.tenant_id, transaction_id=transaction_id, **fields)
                session.add(purchase)
                session.flush()
                session.refresh(purchase)
            return purchase, True
        except IntegrityError:
            existing = self.find_purchase(transaction_id)
            if existing is None:
                raise
            logger.info(f"🔁 PURCHASE_EXISTS: Transaction {transaction_id} already has purchase {existing.id}")
            return existing, False

    def update_purchase_settlement(
        self,
        purchase_id: int,
        status: str,
        amount_fiat: Decimal,
        bitcoin_amount: Decimal,
        price_per_btc: Decimal,
    ) -> Optional[BitcoinPurchase]:
        """Settlement fields are the only part of a purchase that ever changes"""
        with atomic_transaction(self._session_factory) as session:
            purchase = session.execute(
                select(BitcoinPurchase).where(
                    BitcoinPurchase.tenant_id == self.tenant_id,
                    BitcoinPurchase.id == purchase_id,
                )
            ).scalar_one_or_none()
            if purchase is None:
                return None
            purchase.status = status
            purchase.amount_fiat = amount_fiat
            purchase.bitcoin_amount = bitcoin_amount
            purchase.price_per_btc = price_per_btc
            purchase.updated_at = get_naive_utc_now()
            session.flush()
            session.refresh(purchase)
            return purchase

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def insert_withdrawal(self, purchase_id: int, transaction_id: str, destination_address: str,
                          amount: Decimal, status: str) -> BitcoinWithdrawal:
        with atomic_transaction(self._session_factory) as session:
            withdrawal = BitcoinWithdrawal(
                tenant_id=self.tenant_id,
                purchase_id=purchase_id,
                transaction_id=transaction_id,
                destination_address=destination_address,
                amount=amount,
                status=status,
            )
            session.add(withdrawal)
            session.flush()
            session.refresh(withdrawal)
            return withdrawal

    def update_withdrawal(self, withdrawal_id: int, status: str,
                          exchange_withdrawal_id: Optional[str] = None,
                          error_message: Optional[str] = None) -> bool:
        values: Dict[str, Any] = {"status": status, "updated_at": get_naive_utc_now()}
        if exchange_withdrawal_id is not None:
            values["exchange_withdrawal_id"] = exchange_withdrawal_id
        if error_message is not None:
            values["error_message"] = error_message

        stmt = (
            update(BitcoinWithdrawal)
            .where(BitcoinWithdrawal.tenant_id == self.tenant_id, BitcoinWithdrawal.id == withdrawal_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).rowcount == 1

    def list_withdrawals(self, purchase_id: Optional[int] = None) -> List[BitcoinWithdrawal]:
        stmt = select(BitcoinWithdrawal).where(BitcoinWithdrawal.tenant_id == self.tenant_id)
        if purchase_id is not None:
            stmt = stmt.where(BitcoinWithdrawal.purchase_id == purchase_id)
        with atomic_transaction(self._session_factory) as session:
            return list(session.execute(stmt.order_by(BitcoinWithdrawal.id)).scalars().all())

    # ------------------------------------------------------------------
    # Processing failures
    # ------------------------------------------------------------------

    def insert_failure(self, transaction_id: str, category: str, leg: str, error_message: str,
                       details: Optional[Dict[str, Any]] = None) -> ProcessingFailure:
        with atomic_transaction(self._session_factory) as session:
            failure = ProcessingFailure(
                tenant_id=self.tenant_id,
                transaction_id=transaction_id,
                category=category,
                leg=leg,
                error_message=error_message,
                details=details,
                is_resolved=False,
            )
            session.add(failure)
            session.flush()
            session.refresh(failure)
            return failure

    def list_failures(self, transaction_id: Optional[str] = None, unresolved_only: bool = False,
                      limit: Optional[int] = None) -> List[ProcessingFailure]:
        stmt = select(ProcessingFailure).where(ProcessingFailure.tenant_id == self.tenant_id)
        if transaction_id is not None:
            stmt = stmt.where(ProcessingFailure.transaction_id == transaction_id)
        if unresolved_only:
            stmt = stmt.where(ProcessingFailure.is_resolved.is_(False))
        stmt = stmt.order_by(ProcessingFailure.id)
        if limit:
            stmt = stmt.limit(limit)
        with atomic_transaction(self._session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def resolve_failure(self, failure_id: int, note: Optional[str] = None) -> bool:
        stmt = (
            update(ProcessingFailure)
            .where(
                ProcessingFailure.tenant_id == self.tenant_id,
                ProcessingFailure.id == failure_id,
                ProcessingFailure.is_resolved.is_(False),
            )
            .values(is_resolved=True, resolved_at=get_naive_utc_now(), resolution_note=note)
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).rowcount == 1

    # ------------------------------------------------------------------
    # Idempotency claims
    # ------------------------------------------------------------------

    def insert_claim(self, transaction_id: str, owner_token: str) -> bool:
        """Insert a processing claim; False when a claim row already exists"""
        now = get_naive_utc_now()
        try:
            with atomic_transaction(self._session_factory) as session:
                session.add(ProcessingClaim(
                    tenant_id=self.tenant_id,
                    transaction_id=transaction_id,
                    status=ClaimStatus.PROCESSING.value,
                    owner_token=owner_token,
                    attempts=1,
                    claimed_at=now,
                    updated_at=now,
                ))
            return True
        except IntegrityError:
            return False

    def takeover_claim(self, transaction_id: str, owner_token: str, stale_before: datetime) -> bool:
        """Re-own a released claim, or a processing claim whose owner went quiet"""
        now = get_naive_utc_now()
        stmt = (
            update(ProcessingClaim)
            .where(
                ProcessingClaim.tenant_id == self.tenant_id,
                ProcessingClaim.transaction_id == transaction_id,
                or_(
                    ProcessingClaim.status == ClaimStatus.FAILED.value,
                    and_(
                        ProcessingClaim.status == ClaimStatus.PROCESSING.value,
                        ProcessingClaim.claimed_at < stale_before,
                    ),
                ),
            )
            .values(
                status=ClaimStatus.PROCESSING.value,
                owner_token=owner_token,
                attempts=ProcessingClaim.attempts + 1,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).rowcount == 1

    def get_claim(self, transaction_id: str) -> Optional[ProcessingClaim]:
        stmt = select(ProcessingClaim).where(
            ProcessingClaim.tenant_id == self.tenant_id,
            ProcessingClaim.transaction_id == transaction_id,
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    def update_claim(self, transaction_id: str, owner_token: str, status: str,
                     purchase_id: Optional[int] = None) -> bool:
        """Move an owned, in-flight claim to its outcome state"""
        values: Dict[str, Any] = {"status": status, "updated_at": get_naive_utc_now()}
        if purchase_id is not None:
            values["purchase_id"] = purchase_id

        stmt = (
            update(ProcessingClaim)
            .where(
                ProcessingClaim.tenant_id == self.tenant_id,
                ProcessingClaim.transaction_id == transaction_id,
                ProcessingClaim.owner_token == owner_token,
                ProcessingClaim.status == ClaimStatus.PROCESSING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            return session.execute(stmt).rowcount == 1

    # ------------------------------------------------------------------
    # Threshold accumulators
    # ------------------------------------------------------------------

    def _ensure_accumulator(self, rule_id: int) -> None:
        exists_stmt = select(ThresholdAccumulator.id).where(
            ThresholdAccumulator.tenant_id == self.tenant_id,
            ThresholdAccumulator.rule_id == rule_id,
        )
        with atomic_transaction(self._session_factory) as session:
            if session.execute(exists_stmt).first() is not None:
                return

        try:
            with atomic_transaction(self._session_factory) as session:
                session.add(ThresholdAccumulator(
                    tenant_id=self.tenant_id,
                    rule_id=rule_id,
                    balance=Decimal("0"),
                    updated_at=get_naive_utc_now(),
                ))
        except IntegrityError:
            # Another processor created it first
            pass

    def accumulate_threshold(self, rule_id: int, amount: Decimal, threshold: Decimal) -> AccumulatorUpdate:
        """
        Add `amount` to the rule's running balance and compare against `threshold`
        in one UPDATE statement. On crossing, the balance resets to zero and the
        pre-reset total is returned; no read-modify-write happens in Python.
        """
        self._ensure_accumulator(rule_id)

        new_total = ThresholdAccumulator.balance + amount
        crossed = new_total >= threshold
        stmt = (
            update(ThresholdAccumulator)
            .where(
                ThresholdAccumulator.tenant_id == self.tenant_id,
                ThresholdAccumulator.rule_id == rule_id,
            )
            .values(
                balance=case((crossed, 0), else_=new_total),
                last_trigger_balance=case((crossed, new_total), else_=null()),
                updated_at=get_naive_utc_now(),
            )
            .returning(ThresholdAccumulator.balance, ThresholdAccumulator.last_trigger_balance)
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            balance_after, trigger_balance = session.execute(stmt).one()

        balance_after = MonetaryDecimal.to_decimal(balance_after, "accumulator_balance")
        if trigger_balance is not None:
            crossing_total = MonetaryDecimal.to_decimal(trigger_balance, "accumulator_trigger")
            return AccumulatorUpdate(
                previous_balance=crossing_total - amount,
                new_balance=crossing_total,
                triggered=True,
                balance_after=balance_after,
            )
        return AccumulatorUpdate(
            previous_balance=balance_after - amount,
            new_balance=balance_after,
            triggered=False,
            balance_after=balance_after,
        )

    def restore_threshold(self, rule_id: int, amount: Decimal) -> None:
        """Atomically add `amount` back (used to undo a reset whose purchase failed)"""
        if amount == 0:
            return
        stmt = (
            update(ThresholdAccumulator)
            .where(
                ThresholdAccumulator.tenant_id == self.tenant_id,
                ThresholdAccumulator.rule_id == rule_id,
            )
            .values(balance=ThresholdAccumulator.balance + amount, updated_at=get_naive_utc_now())
            .execution_options(synchronize_session=False)
        )
        with atomic_transaction(self._session_factory) as session:
            session.execute(stmt)

    def get_threshold_balance(self, rule_id: int) -> Decimal:
        stmt = select(ThresholdAccumulator.balance).where(
            ThresholdAccumulator.tenant_id == self.tenant_id,
            ThresholdAccumulator.rule_id == rule_id,
        )
        with atomic_transaction(self._session_factory) as session:
            balance = session.execute(stmt).scalar_one_or_none()
        return Decimal("0") if balance is None else MonetaryDecimal.to_decimal(balance, "accumulator_balance")

"""
Treasury Engine Database Schema
===============================

Tables used by the treasury transaction processing engine:
- Confirmed payment transactions (read-only to the engine)
- Tenant treasury rules
- Bitcoin purchases and withdrawals
- Processing failures for operator follow-up
- Idempotency claims and threshold accumulators (concurrency state)
- Per-tenant exchange account credentials

Every table carries tenant_id; all reads and writes are scoped by it.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, JSON
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class RuleType(Enum):
    """Treasury rule strategies"""
    PERCENTAGE = "percentage"
    THRESHOLD = "threshold"


class PurchaseStatus(Enum):
    """Bitcoin purchase settlement states"""
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    FAILED = "failed"


class WithdrawalStatus(Enum):
    """Withdrawal lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ClaimStatus(Enum):
    """Idempotency claim states for a (tenant, transaction) pair"""
    PROCESSING = "processing"  # A processor owns the transaction
    COMPLETED = "completed"    # Purchase persisted
    SKIPPED = "skipped"        # NoOp outcome (no rule, below minimum, under threshold)
    FAILED = "failed"          # Released after a permanent failure - may be claimed again
    REVIEW = "review"          # Order placed but not persisted - never auto-retried


class FailureLeg(Enum):
    """Which part of processing a failure belongs to"""
    PURCHASE = "purchase"
    WITHDRAWAL = "withdrawal"
    PROCESSING = "processing"


class ExchangeErrorCode(Enum):
    """Exchange failure taxonomy surfaced to the processor"""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ORDER_REJECTED = "order_rejected"
    PRICE_UNAVAILABLE = "price_unavailable"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class FailureCategory(Enum):
    """Categories stored on processing_failures rows"""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ORDER_REJECTED = "order_rejected"
    PRICE_UNAVAILABLE = "price_unavailable"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"
    RULE_CONFIGURATION = "rule_configuration"
    PERSISTENCE_ERROR = "persistence_error"


class ExchangeProvider(Enum):
    """Supported exchange providers"""
    KRAKEN = "kraken"
    MOCK = "mock"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Transaction(Base):
    """Confirmed payment event delivered by the payment-ingestion layer"""
    __tablename__ = 'transactions'

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), primary_key=True)

    amount = Column(Numeric(38, 18), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False)
    should_convert = Column(Boolean, default=True, nullable=False)
    provider_metadata = Column('metadata', JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        Index('ix_transactions_tenant_status', 'tenant_id', 'status'),
    )


class TreasuryRule(Base):
    """Tenant treasury policy - edited by tenant admins, read-only to the engine"""
    __tablename__ = 'treasury_rules'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    rule_type = Column(String(20), nullable=False)
    conversion_percentage = Column(Numeric(7, 4), nullable=True)
    threshold_amount = Column(Numeric(38, 18), nullable=True)
    buffer_amount = Column(Numeric(38, 18), nullable=True)
    minimum_purchase = Column(Numeric(38, 18), nullable=True)
    maximum_purchase = Column(Numeric(38, 18), nullable=True)
    currency = Column(String(10), nullable=True)

    withdrawal_address = Column(String(128), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    exchange_provider = Column(String(32), default=ExchangeProvider.KRAKEN.value, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"rule_type IN ('{RuleType.PERCENTAGE.value}', '{RuleType.THRESHOLD.value}')",
            name='ck_treasury_rules_type_valid'
        ),
        Index('ix_treasury_rules_tenant_active', 'tenant_id', 'is_active', 'created_at'),
    )


class BitcoinPurchase(Base):
    """Durable record of a conversion - exactly one per (tenant, transaction)"""
    __tablename__ = 'bitcoin_purchases'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False)
    rule_id = Column(Integer, ForeignKey('treasury_rules.id'), nullable=True)

    amount_fiat = Column(Numeric(38, 18), nullable=False)
    currency = Column(String(10), nullable=False)
    bitcoin_amount = Column(Numeric(38, 18), nullable=False)
    price_per_btc = Column(Numeric(38, 18), nullable=False)

    exchange_provider = Column(String(32), nullable=False)
    exchange_order_id = Column(String(128), nullable=False)
    status = Column(String(20), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # IDEMPOTENCY: the transaction id is the purchase idempotency key
        UniqueConstraint('tenant_id', 'transaction_id', name='uq_bitcoin_purchases_tenant_transaction'),
        CheckConstraint(
            f"status IN ('{PurchaseStatus.FILLED.value}', '{PurchaseStatus.PARTIALLY_FILLED.value}', '{PurchaseStatus.FAILED.value}')",
            name='ck_bitcoin_purchases_status_valid'
        ),
        Index('ix_bitcoin_purchases_order', 'exchange_provider', 'exchange_order_id'),
    )


class BitcoinWithdrawal(Base):
    """Transfer-out attempt tied to a purchase - best effort"""
    __tablename__ = 'bitcoin_withdrawals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    purchase_id = Column(Integer, ForeignKey('bitcoin_purchases.id'), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False)

    destination_address = Column(String(128), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), default=WithdrawalStatus.PENDING.value, nullable=False)
    exchange_withdrawal_id = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{WithdrawalStatus.PENDING.value}', '{WithdrawalStatus.COMPLETED.value}', '{WithdrawalStatus.FAILED.value}')",
            name='ck_bitcoin_withdrawals_status_valid'
        ),
    )


class ProcessingFailure(Base):
    """Append-only audit record of a terminal processing failure"""
    __tablename__ = 'processing_failures'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)

    category = Column(String(40), nullable=False)
    leg = Column(String(20), default=FailureLeg.PURCHASE.value, nullable=False)
    error_message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)

    is_resolved = Column(Boolean, default=False, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_processing_failures_tenant_unresolved', 'tenant_id', 'is_resolved'),
    )


# ============================================================================
# CONCURRENCY STATE
# ============================================================================

class ProcessingClaim(Base):
    """Dedup ledger - one row per (tenant, transaction) ever processed"""
    __tablename__ = 'processing_claims'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    transaction_id = Column(String(64), nullable=False)

    status = Column(String(20), default=ClaimStatus.PROCESSING.value, nullable=False)
    owner_token = Column(String(64), nullable=False)
    purchase_id = Column(Integer, ForeignKey('bitcoin_purchases.id'), nullable=True)
    attempts = Column(Integer, default=1, nullable=False)

    claimed_at = Column(DateTime(timezone=False), nullable=False)
    updated_at = Column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'transaction_id', name='uq_processing_claims_tenant_transaction'),
        Index('ix_processing_claims_status', 'status'),
    )


class ThresholdAccumulator(Base):
    """Running fiat balance for a threshold rule since its last conversion"""
    __tablename__ = 'threshold_accumulators'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    rule_id = Column(Integer, ForeignKey('treasury_rules.id'), nullable=False)

    balance = Column(Numeric(38, 18), default=0, nullable=False)
    last_trigger_balance = Column(Numeric(38, 18), nullable=True)

    updated_at = Column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'rule_id', name='uq_threshold_accumulators_tenant_rule'),
    )


# ============================================================================
# TENANT INTEGRATIONS
# ============================================================================

class ExchangeIntegration(Base):
    """Tenant exchange account credentials - written by onboarding, read-only to the engine"""
    __tablename__ = 'exchange_integrations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)

    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    settings = Column(JSON, nullable=True)  # Provider extras, e.g. api_url or mock scenario
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_exchange_integrations_tenant_provider', 'tenant_id', 'provider', 'is_active'),
    )

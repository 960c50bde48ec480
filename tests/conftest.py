"""
Shared fixtures for the treasury engine test suite

Key Components:
1. Per-test SQLite file database with the full schema
2. Tenant-scoped data stores for two tenants
3. Deterministic mock exchange and a zero-delay retry policy
4. Factories for rules, transactions and processors
"""

import logging
import warnings
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.exc import SAWarning
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base, RuleType, ThresholdAccumulator, TreasuryRule
from services.exchange_factory import reset_exchange_clients
from services.idempotency_guard import IdempotencyGuard
from services.mock_exchange_service import MockExchangeConfig, MockExchangeService
from services.retry_service import RetryPolicy
from services.tenant_data_store import TenantDataStore
from services.treasury_processor import PaymentTransaction, TreasuryProcessor
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# SQLite stores Numeric as floating point; test amounts are chosen to round-trip exactly
warnings.filterwarnings("ignore", category=SAWarning, message=".*Decimal objects natively.*")

TENANT_A = "tenant_a"
TENANT_B = "tenant_b"
BECH32_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database so every store gets its own connections"""
    engine = build_engine(f"sqlite:///{tmp_path / 'treasury.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def store(engine):
    return TenantDataStore(TENANT_A, engine=engine, schema_isolation=False)


@pytest.fixture
def other_store(engine):
    return TenantDataStore(TENANT_B, engine=engine, schema_isolation=False)


@pytest.fixture(autouse=True)
def _reset_exchange_cache():
    reset_exchange_clients()
    yield
    reset_exchange_clients()


@pytest.fixture
def fast_retry_policy():
    return RetryPolicy(max_attempts=4, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def mock_exchange():
    return MockExchangeService()


@pytest.fixture
def make_rule(db_session):
    """Insert a treasury rule; numeric fields are passed as strings or Decimals"""

    def _make_rule(tenant_id: str = TENANT_A, rule_type: str = RuleType.PERCENTAGE.value,
                   is_active: bool = True, **fields) -> TreasuryRule:
        fields.setdefault("exchange_provider", "mock")
        for name in ("conversion_percentage", "threshold_amount", "buffer_amount",
                     "minimum_purchase", "maximum_purchase"):
            if name in fields and fields[name] is not None:
                fields[name] = Decimal(str(fields[name]))
        rule = TreasuryRule(tenant_id=tenant_id, rule_type=rule_type, is_active=is_active, **fields)
        db_session.add(rule)
        db_session.commit()
        return rule

    return _make_rule


@pytest.fixture
def seed_accumulator(db_session):
    def _seed(rule: TreasuryRule, balance: str) -> None:
        db_session.add(ThresholdAccumulator(
            tenant_id=rule.tenant_id,
            rule_id=rule.id,
            balance=Decimal(balance),
            updated_at=get_naive_utc_now(),
        ))
        db_session.commit()

    return _seed


@pytest.fixture
def make_transaction():
    def _make_transaction(tx_id: str = "pi_1001", amount: str = "100.00", tenant_id: str = TENANT_A,
                          currency: str = "AUD", status: str = "succeeded",
                          should_convert: bool = True) -> PaymentTransaction:
        return PaymentTransaction(
            id=tx_id,
            tenant_id=tenant_id,
            amount=Decimal(amount),
            currency=currency,
            status=status,
            should_convert=should_convert,
        )

    return _make_transaction


@pytest.fixture
def make_processor(fast_retry_policy):
    """Processor wired to a given exchange with fast retries and fast claim polling"""

    def _make_processor(store: TenantDataStore, exchange: Optional[MockExchangeService] = None,
                        wait_timeout: float = 5.0) -> TreasuryProcessor:
        exchange = exchange or MockExchangeService(MockExchangeConfig())
        return TreasuryProcessor(
            store,
            exchange_resolver=lambda provider: exchange,
            retry_policy=fast_retry_policy,
            guard=IdempotencyGuard(store, wait_timeout=wait_timeout, poll_interval=0.01),
        )

    return _make_processor

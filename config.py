"""Configuration management for the treasury processing engine"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "5"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "10"))

    # Tenant isolation: when enabled every tenant lives in its own schema
    # ("tenant_<id>") on top of the tenant_id column filter (PostgreSQL only)
    TENANT_SCHEMA_ISOLATION = os.getenv("TENANT_SCHEMA_ISOLATION", "false").lower() == "true"
    TENANT_SCHEMA_PREFIX = os.getenv("TENANT_SCHEMA_PREFIX", "tenant_")

    # Conversion policy
    DEFAULT_FIAT_CURRENCY = os.getenv("DEFAULT_FIAT_CURRENCY", "AUD").upper()
    MAX_CONVERSION_PERCENTAGE = Decimal(os.getenv("MAX_CONVERSION_PERCENTAGE", "100"))
    ELIGIBLE_TRANSACTION_STATUS = "succeeded"

    # Exchange retry policy (applies to market orders only)
    EXCHANGE_MAX_RETRIES = int(os.getenv("EXCHANGE_MAX_RETRIES", "3"))
    EXCHANGE_RETRY_INITIAL_DELAY = float(os.getenv("EXCHANGE_RETRY_INITIAL_DELAY", "1.0"))
    EXCHANGE_RETRY_MAX_DELAY = float(os.getenv("EXCHANGE_RETRY_MAX_DELAY", "8.0"))
    EXCHANGE_RETRY_BACKOFF_BASE = float(os.getenv("EXCHANGE_RETRY_BACKOFF_BASE", "2.0"))
    EXCHANGE_RETRY_JITTER = os.getenv("EXCHANGE_RETRY_JITTER", "true").lower() == "true"
    EXCHANGE_REQUEST_TIMEOUT = int(os.getenv("EXCHANGE_REQUEST_TIMEOUT", "20"))

    # Idempotency claim handling
    CLAIM_WAIT_TIMEOUT_SECONDS = float(os.getenv("CLAIM_WAIT_TIMEOUT_SECONDS", "30"))
    CLAIM_POLL_INTERVAL_SECONDS = float(os.getenv("CLAIM_POLL_INTERVAL_SECONDS", "0.25"))
    CLAIM_STALE_AFTER_SECONDS = int(os.getenv("CLAIM_STALE_AFTER_SECONDS", "300"))

    # Exchange providers
    DEFAULT_EXCHANGE_PROVIDER = os.getenv("DEFAULT_EXCHANGE_PROVIDER", "kraken").lower()
    USE_MOCK_EXCHANGE = os.getenv("USE_MOCK_EXCHANGE", "false").lower() == "true"
    MOCK_BTC_PRICE = Decimal(os.getenv("MOCK_BTC_PRICE", "50000"))

    KRAKEN_API_KEY = os.getenv("KRAKEN_API_KEY")
    KRAKEN_PRIVATE_KEY = os.getenv("KRAKEN_PRIVATE_KEY")
    KRAKEN_API_URL = os.getenv("KRAKEN_API_URL", "https://api.kraken.com")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_configuration():
        """Log the active (non-secret) configuration"""
        logger.info("🔧 Treasury Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Tenant schema isolation: {Config.TENANT_SCHEMA_ISOLATION}")
        logger.info(f"   Default fiat currency: {Config.DEFAULT_FIAT_CURRENCY}")
        logger.info(
            f"   Exchange retries: {Config.EXCHANGE_MAX_RETRIES} "
            f"(initial={Config.EXCHANGE_RETRY_INITIAL_DELAY}s, max={Config.EXCHANGE_RETRY_MAX_DELAY}s)"
        )
        logger.info(f"   Exchange request timeout: {Config.EXCHANGE_REQUEST_TIMEOUT}s")
        logger.info(
            f"   Claim wait: {Config.CLAIM_WAIT_TIMEOUT_SECONDS}s, stale after {Config.CLAIM_STALE_AFTER_SECONDS}s"
        )
        logger.info(f"   Default exchange provider: {Config.DEFAULT_EXCHANGE_PROVIDER}")
        if Config.USE_MOCK_EXCHANGE:
            logger.warning(f"⚠️ MOCK_EXCHANGE: All providers routed to mock exchange (price={Config.MOCK_BTC_PRICE})")
        if not (Config.KRAKEN_API_KEY and Config.KRAKEN_PRIVATE_KEY):
            logger.info("   Kraken credentials: not configured")

"""
Database Engine and Tenant Schemas
=================================

This module provides the database engine and tenant schema provisioning for
the treasury processing engine. Sessions are owned by TenantDataStore.
"""

import logging
import re
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_engine: Optional[Engine] = None


def build_engine(database_url: str) -> Engine:
    """Create an engine with pooling suited to the target database"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "application_name": "treasury_engine",
        }
    )


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use"""
    global _engine
    if _engine is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        _engine = build_engine(Config.DATABASE_URL)
        logger.info("✅ DATABASE: Engine initialised")
    return _engine


def tenant_schema_name(tenant_id: str) -> str:
    """Map a tenant id to its dedicated schema name"""
    if not tenant_id or not TENANT_ID_PATTERN.match(tenant_id):
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    return f"{Config.TENANT_SCHEMA_PREFIX}{tenant_id.lower().replace('-', '_')}"


def create_tenant_schema(tenant_id: str, engine: Optional[Engine] = None) -> str:
    """
    Provision an isolated schema for a tenant and create the engine tables in it.

    Only meaningful on PostgreSQL; used together with TENANT_SCHEMA_ISOLATION.
    """
    engine = engine or get_engine()
    schema = tenant_schema_name(tenant_id)

    if engine.dialect.name != "postgresql":
        raise RuntimeError(f"Schema-per-tenant requires PostgreSQL (got {engine.dialect.name})")

    with engine.begin() as connection:
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
        tenant_connection = connection.execution_options(schema_translate_map={None: schema})
        Base.metadata.create_all(bind=tenant_connection, checkfirst=True)

    logger.info(f"✅ TENANT_SCHEMA: Provisioned schema {schema} for tenant {tenant_id}")
    return schema

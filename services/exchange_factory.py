"""
Exchange provider factory - ExchangeClient instances per (tenant account, provider)

A tenant with an active exchange_integrations row trades on its own account;
without one the provider's environment-configured default account is used.
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from config import Config
from models import ExchangeIntegration, ExchangeProvider
from services.exchange_client import ExchangeClient
from services.kraken_service import KrakenService
from services.mock_exchange_service import MockExchangeService
from services.tenant_data_store import TenantDataStore

logger = logging.getLogger(__name__)

ClientBuilder = Callable[[Optional[ExchangeIntegration]], ExchangeClient]
ClientKey = Tuple[Optional[str], str, Optional[int], Optional[str]]


def _build_kraken(integration: Optional[ExchangeIntegration]) -> KrakenService:
    if integration is None:
        return KrakenService()
    if not integration.api_key or not integration.api_secret:
        raise ValueError(f"Kraken integration {integration.id} for tenant {integration.tenant_id} has no credentials")
    settings = integration.settings or {}
    return KrakenService(
        api_key=integration.api_key,
        secret_key=integration.api_secret,
        base_url=settings.get("api_url"),
    )


def _build_mock(integration: Optional[ExchangeIntegration]) -> MockExchangeService:
    settings = (integration.settings if integration is not None else None) or {}
    return MockExchangeService.from_scenario(settings.get("scenario", "success"))


_PROVIDER_BUILDERS: Dict[str, ClientBuilder] = {
    ExchangeProvider.KRAKEN.value: _build_kraken,
    ExchangeProvider.MOCK.value: _build_mock,
}

# Global client instances, one per account and provider
_exchange_clients: Dict[ClientKey, ExchangeClient] = {}


def register_exchange_provider(provider: str, builder: ClientBuilder) -> None:
    """Register (or replace) the builder for a provider identifier"""
    provider_key = provider.lower()
    _PROVIDER_BUILDERS[provider_key] = builder
    for key in [key for key in _exchange_clients if key[1] == provider_key]:
        del _exchange_clients[key]


def _provider_key(provider: Optional[str]) -> str:
    provider_key = (provider or Config.DEFAULT_EXCHANGE_PROVIDER).lower()
    if Config.USE_MOCK_EXCHANGE and provider_key != ExchangeProvider.MOCK.value:
        logger.warning(f"⚠️ MOCK_EXCHANGE: Routing provider '{provider_key}' to mock exchange")
        return ExchangeProvider.MOCK.value
    return provider_key


def get_exchange_client(provider: Optional[str] = None,
                        integration: Optional[ExchangeIntegration] = None) -> ExchangeClient:
    """Get or create the exchange client for a provider, on the integration's account when given"""
    provider_key = _provider_key(provider)

    builder = _PROVIDER_BUILDERS.get(provider_key)
    if builder is None:
        raise ValueError(f"Unsupported exchange provider: {provider_key}")

    if integration is not None and integration.provider.lower() != provider_key:
        integration = None

    if integration is None:
        cache_key: ClientKey = (None, provider_key, None, None)
    else:
        # A rotated credential row is a new client
        updated = integration.updated_at.isoformat() if integration.updated_at else None
        cache_key = (integration.tenant_id, provider_key, integration.id, updated)

    client = _exchange_clients.get(cache_key)
    if client is not None:
        return client

    client = builder(integration)
    _exchange_clients[cache_key] = client
    account = f"tenant {integration.tenant_id}" if integration is not None else "default account"
    logger.info(f"🔌 EXCHANGE_CLIENT: Created {type(client).__name__} for provider '{provider_key}' ({account})")
    return client


def tenant_exchange_resolver(store: TenantDataStore) -> Callable[[Optional[str]], ExchangeClient]:
    """Resolver that picks the client for a provider from the store's tenant integrations"""

    def _resolve(provider: Optional[str] = None) -> ExchangeClient:
        provider_key = _provider_key(provider)
        integration = store.get_exchange_integration(provider_key)
        if integration is None:
            logger.debug(f"EXCHANGE_CLIENT: tenant {store.tenant_id} has no '{provider_key}' integration, using default")
        return get_exchange_client(provider_key, integration=integration)

    return _resolve


def reset_exchange_clients() -> None:
    """Drop cached clients (credentials rotated, tests)"""
    _exchange_clients.clear()

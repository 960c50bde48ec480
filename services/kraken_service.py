"""Kraken API integration for treasury Bitcoin purchases and withdrawals"""

import hmac
import hashlib
import base64
import time
import urllib.parse
import uuid
import json
import aiohttp
import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Any

from config import Config
from models import FailureLeg
from services.exchange_client import (
    ExchangeClient,
    ExchangeError,
    ExchangeWithdrawalStatus,
    InvalidAddressError,
    MarketOrderResult,
    OrderStatus,
    PriceUnavailableError,
    UnknownExchangeError,
    WithdrawalResult,
)
from services.exchange_error_classifier import ExchangeErrorClassifier
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

# Kraken order states -> normalised states
KRAKEN_ORDER_STATUS_MAP = {
    "pending": OrderStatus.PENDING,
    "open": OrderStatus.OPEN,
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
}

KRAKEN_BTC_ASSETS = ("XBT", "XXBT")

# cl_ord_id: a UUID or free text of at most 18 characters
KRAKEN_CL_ORD_ID_MAX_TEXT = 18
KRAKEN_CL_ORD_ID_NAMESPACE = uuid.UUID("6f1c3a52-8e0d-4b7a-9c41-2d5e7f9a0b13")


class KrakenService(ExchangeClient):
    """Kraken API client for market buys, order queries, tickers and withdrawals"""

    provider_name = "kraken"

    # Market orders settle almost immediately; poll briefly for the final fill
    SETTLEMENT_POLL_ATTEMPTS = 5
    SETTLEMENT_POLL_INTERVAL = 1.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_key = api_key or Config.KRAKEN_API_KEY
        self.secret_key = secret_key or Config.KRAKEN_PRIVATE_KEY
        self.base_url = (base_url or Config.KRAKEN_API_URL).rstrip("/")
        self.timeout = timeout or Config.EXCHANGE_REQUEST_TIMEOUT

        # Nonces must be strictly increasing per API key
        self._last_nonce = 0
        self._nonce_lock = asyncio.Lock()

        if not self.api_key or not self.secret_key:
            raise ValueError("Kraken API credentials not found in environment variables")

        logger.info("🦑 Kraken service initialized")

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _generate_signature(self, urlpath: str, data: Any, nonce: str) -> str:
        """Generate Kraken API signature"""
        postdata = urllib.parse.urlencode(data) if isinstance(data, dict) else data
        encoded = (nonce + postdata).encode()
        message = urlpath.encode() + hashlib.sha256(encoded).digest()

        mac = hmac.new(
            base64.b64decode(self.secret_key),
            message,
            hashlib.sha512
        )
        sigdigest = base64.b64encode(mac.digest())
        return sigdigest.decode()

    def _get_headers(self, signature: str) -> Dict[str, str]:
        """Get request headers for Kraken API"""
        return {
            'API-Key': self.api_key,
            'API-Sign': signature,
            'User-Agent': 'TreasuryEngine-Kraken/1.0.0',
            'Content-Type': 'application/x-www-form-urlencoded'
        }

    async def _get_unique_nonce(self) -> str:
        """Generate unique, strictly increasing nonce for Kraken API"""
        async with self._nonce_lock:
            current_time_micro = int(time.time() * 1000000)
            if current_time_micro <= self._last_nonce:
                self._last_nonce += 1
            else:
                self._last_nonce = current_time_micro
            return str(self._last_nonce)

    def _unwrap_response(self, status: int, response_text: str, leg: FailureLeg) -> Any:
        """Turn a raw HTTP response into Kraken's `result` payload or a typed error"""
        if status != 200:
            logger.error(f"❌ Kraken API HTTP error: {status}")
            raise ExchangeErrorClassifier.classify_http_status(status, response_text, leg=leg, provider=self.provider_name)

        try:
            result = json.loads(response_text)
        except json.JSONDecodeError as e:
            logger.error(f"❌ Invalid JSON response: {response_text}, error: {e}")
            raise UnknownExchangeError(
                "Invalid JSON response from Kraken", leg=leg, upstream_message=response_text, provider=self.provider_name
            ) from e

        if result and result.get('error'):
            error_msgs = result.get('error', [])
            logger.error(f"❌ Kraken API error: {error_msgs}")
            raise ExchangeErrorClassifier.classify_message(
                f"Kraken API error: {', '.join(error_msgs)}", leg=leg, provider=self.provider_name
            )

        return result.get('result', {})

    async def _make_request(self, endpoint: str, params: Optional[Dict] = None,
                            leg: FailureLeg = FailureLeg.PURCHASE) -> Any:
        """Make authenticated request to Kraken API"""
        params = dict(params or {})

        nonce = await self._get_unique_nonce()
        params['nonce'] = nonce

        urlpath = f'/0/private/{endpoint}'
        signature = self._generate_signature(urlpath, params, nonce)
        headers = self._get_headers(signature)
        postdata = urllib.parse.urlencode(params)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f'{self.base_url}{urlpath}',
                    data=postdata,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    response_text = await response.text()
                    return self._unwrap_response(response.status, response_text, leg)
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"❌ Kraken API request failed ({endpoint}): {str(e)}")
            raise ExchangeErrorClassifier.classify(e, leg=leg, provider=self.provider_name) from e

    async def _make_public_request(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Unauthenticated GET against Kraken's public API"""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f'{self.base_url}/0/public/{endpoint}',
                    params=params or {},
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    response_text = await response.text()
                    return self._unwrap_response(response.status, response_text, FailureLeg.PURCHASE)
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"❌ Kraken public request failed ({endpoint}): {str(e)}")
            raise ExchangeErrorClassifier.classify(e, provider=self.provider_name) from e

    @staticmethod
    def to_kraken_pair(pair: str) -> str:
        """BTC/AUD -> XBTAUD (pairs already in Kraken form pass through)"""
        normalized = pair.replace("/", "").replace("-", "").upper()
        if normalized.startswith("BTC"):
            normalized = "XBT" + normalized[3:]
        return normalized

    @staticmethod
    def to_kraken_client_order_id(client_order_id: str) -> str:
        """UUIDs and short references pass through; anything longer is mapped to a stable UUID"""
        try:
            return str(uuid.UUID(client_order_id))
        except ValueError:
            pass
        if len(client_order_id) <= KRAKEN_CL_ORD_ID_MAX_TEXT:
            return client_order_id
        return str(uuid.uuid5(KRAKEN_CL_ORD_ID_NAMESPACE, client_order_id))

    # ------------------------------------------------------------------
    # ExchangeClient operations
    # ------------------------------------------------------------------

    async def get_current_price(self, pair: str) -> Decimal:
        kraken_pair = self.to_kraken_pair(pair)
        try:
            result = await self._make_public_request('Ticker', {'pair': kraken_pair})
        except ExchangeError as e:
            if e.retryable:
                raise
            raise PriceUnavailableError(
                f"Ticker unavailable for {kraken_pair}: {e.message}",
                upstream_message=e.upstream_message, provider=self.provider_name
            ) from e

        ticker = next(iter(result.values()), None) if isinstance(result, dict) else None
        if not ticker or not ticker.get('c'):
            raise PriceUnavailableError(f"No last trade price for {kraken_pair}", provider=self.provider_name)

        price = MonetaryDecimal.to_decimal(ticker['c'][0], "kraken_ticker")
        logger.info(f"📈 KRAKEN_PRICE: {kraken_pair} last trade {price}")
        return price

    async def create_market_order(
        self,
        fiat_amount: Decimal,
        pair: str,
        client_order_id: Optional[str] = None,
    ) -> MarketOrderResult:
        kraken_pair = self.to_kraken_pair(pair)
        params = {
            'pair': kraken_pair,
            'type': 'buy',
            'ordertype': 'market',
            # viqc: volume is expressed in the quote (fiat) currency
            'oflags': 'viqc',
            'volume': str(fiat_amount),
        }
        if client_order_id:
            params['cl_ord_id'] = self.to_kraken_client_order_id(client_order_id)

        logger.info(f"🛒 KRAKEN_ORDER: Market buy {fiat_amount} on {kraken_pair} (ref={client_order_id})")
        result = await self._make_request('AddOrder', params)

        txids = result.get('txid') or []
        if not txids:
            raise UnknownExchangeError(
                f"Kraken AddOrder returned no txid: {result}", provider=self.provider_name
            )
        order_id = txids[0]

        # From here on the order exists: no error may escape to a caller that could resubmit it
        try:
            order = await self._wait_for_settlement(order_id)
        except ExchangeError as e:
            logger.error(
                f"❌ KRAKEN_ORDER_STATE_UNKNOWN: {order_id} placed but settlement query failed: {e.message}"
            )
            order = MarketOrderResult(
                order_id=order_id,
                status=OrderStatus.PENDING,
                filled_fiat=Decimal("0"),
                filled_crypto=Decimal("0"),
                raw={"settlement_error": e.message},
            )
        order.requested_fiat = fiat_amount
        logger.info(
            f"✅ KRAKEN_ORDER_FILLED: {order_id} status={order.status.value} "
            f"fiat={order.filled_fiat} btc={order.filled_crypto}"
        )
        return order

    async def _wait_for_settlement(self, order_id: str) -> MarketOrderResult:
        order = await self.get_order_status(order_id)
        for _ in range(self.SETTLEMENT_POLL_ATTEMPTS):
            if order.status not in (OrderStatus.PENDING, OrderStatus.OPEN):
                break
            await asyncio.sleep(self.SETTLEMENT_POLL_INTERVAL)
            order = await self.get_order_status(order_id)
        return order

    async def get_order_status(self, order_id: str) -> MarketOrderResult:
        result = await self._make_request('QueryOrders', {'txid': order_id, 'trades': 'false'})
        order_info = result.get(order_id) if isinstance(result, dict) else None
        if not order_info:
            raise UnknownExchangeError(f"Kraken order {order_id} not found", provider=self.provider_name)
        return self._parse_order(order_id, order_info)

    def _parse_order(self, order_id: str, order_info: Dict[str, Any]) -> MarketOrderResult:
        filled_crypto = MonetaryDecimal.to_decimal(order_info.get('vol_exec') or "0", "kraken_vol_exec")
        filled_fiat = MonetaryDecimal.to_decimal(order_info.get('cost') or "0", "kraken_cost")
        fee = MonetaryDecimal.to_decimal(order_info.get('fee') or "0", "kraken_fee")
        price = MonetaryDecimal.to_decimal(order_info.get('price') or "0", "kraken_price")

        status = KRAKEN_ORDER_STATUS_MAP.get(order_info.get('status', ''), OrderStatus.PENDING)
        # A cancelled or still-open order that executed some volume is a partial fill
        if status in (OrderStatus.CANCELLED, OrderStatus.OPEN) and filled_crypto > 0:
            status = OrderStatus.PARTIALLY_FILLED

        return MarketOrderResult(
            order_id=order_id,
            status=status,
            filled_fiat=filled_fiat,
            filled_crypto=filled_crypto,
            price_per_unit=price if price > 0 else None,
            fee=fee,
            raw=order_info,
        )

    async def get_withdrawal_addresses(self, asset: str) -> List[Dict[str, Any]]:
        """Pre-configured withdrawal addresses for an asset"""
        result = await self._make_request('WithdrawAddresses', {'asset': asset}, leg=FailureLeg.WITHDRAWAL)
        if isinstance(result, list):
            return result
        logger.warning(f"⚠️ Unexpected result format from Kraken: {type(result)}")
        return []

    async def find_withdrawal_key_for_address(self, address: str) -> str:
        """Kraken withdraws to named keys only; map the address onto its verified key"""
        for asset in KRAKEN_BTC_ASSETS:
            for address_data in await self.get_withdrawal_addresses(asset):
                if address_data.get('address', '').strip().lower() != address.lower():
                    continue
                if not address_data.get('verified', False):
                    raise InvalidAddressError(
                        f"Address {address} is not verified in Kraken account",
                        leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
                    )
                logger.info(f"✅ Found withdrawal key '{address_data.get('key')}' for address {address[:10]}...")
                return address_data['key']

        raise InvalidAddressError(
            f"Address {address} not configured in Kraken account",
            leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
        )

    async def withdraw(
        self,
        crypto_amount: Decimal,
        address: str,
        reference: Optional[str] = None,
    ) -> WithdrawalResult:
        key = await self.find_withdrawal_key_for_address(address)
        params = {
            'asset': 'XBT',
            'key': key,
            'amount': str(MonetaryDecimal.quantize_crypto(crypto_amount)),
        }

        logger.info(f"💸 KRAKEN_WITHDRAW: {params['amount']} BTC to key '{key}' (ref={reference})")
        result = await self._make_request('Withdraw', params, leg=FailureLeg.WITHDRAWAL)

        refid = result.get('refid') if isinstance(result, dict) else None
        if not refid:
            raise UnknownExchangeError(
                f"Kraken Withdraw returned no refid: {result}",
                leg=FailureLeg.WITHDRAWAL, provider=self.provider_name
            )

        logger.info(f"✅ KRAKEN_WITHDRAW_SUBMITTED: refid={refid}")
        return WithdrawalResult(
            withdrawal_id=refid,
            status=ExchangeWithdrawalStatus.PENDING,
            raw=result,
        )

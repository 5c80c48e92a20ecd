"""HMAC-signed REST gateway for a Bitvavo-style v2 API.

Reads go through ``RetryableClient.get`` with backoff. Order placement and
cancellation are sent exactly once; a lost response surfaces as an httpx
error and is resolved by reconciliation, never by resending.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from config import settings
from services.exchange.base import ExchangeCredential, ExchangeGateway, ExchangeOrder
from services.trading_errors import AuthDenied
from utils.logger import exchange_logger as logger
from utils.retry import RetryableClient, RetryConfig
from utils.utcnow import utcfromtimestamp

ACCESS_WINDOW_MS = 10000


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _format_amount(value: float) -> str:
    return format(float(value), ".8f").rstrip("0").rstrip(".")


def parse_order(data: dict[str, Any]) -> ExchangeOrder:
    fee_paid = _to_float(data.get("feePaid"))
    if not fee_paid and isinstance(data.get("fills"), list):
        fee_paid = sum(_to_float(fill.get("fee")) for fill in data["fills"])
    created_ms = data.get("created") or data.get("timestamp")
    return ExchangeOrder(
        order_id=str(data.get("orderId") or ""),
        market=str(data.get("market") or ""),
        side=str(data.get("side") or ""),
        order_type=str(data.get("orderType") or ""),
        status=str(data.get("status") or "unknown"),
        client_order_id=data.get("clientOrderId"),
        amount=_optional_float(data.get("amount")),
        amount_quote=_optional_float(data.get("amountQuote")),
        price=_optional_float(data.get("price")),
        filled_amount=_to_float(data.get("filledAmount")),
        filled_amount_quote=_to_float(data.get("filledAmountQuote")),
        fee_paid=fee_paid,
        fee_currency=data.get("feeCurrency"),
        created_at=utcfromtimestamp(float(created_ms) / 1000.0) if created_ms else None,
        raw=data,
    )


class HttpExchangeGateway(ExchangeGateway):
    def __init__(
        self,
        credential: Optional[ExchangeCredential] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.credential = credential
        self.read_only = credential is None or credential.read_only
        self.base_url = (base_url or settings.EXCHANGE_API_URL).rstrip("/")
        self._path_prefix = urlparse(self.base_url).path.rstrip("/")
        self._timeout = timeout or settings.EXCHANGE_TIMEOUT_SECONDS
        self._client = client
        self._retry_config = retry_config or RetryConfig(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
        )
        self._http: Optional[RetryableClient] = RetryableClient(client, self._retry_config) if client else None

    # ------------------------------------------------------------------ #
    #  HTTP helpers
    # ------------------------------------------------------------------ #

    def _get_http(self) -> RetryableClient:
        if self._http is None or self._http.client.is_closed:
            self._http = RetryableClient(
                httpx.AsyncClient(
                    timeout=self._timeout,
                    headers={"Accept": "application/json", "User-Agent": "trading-agent/1.0"},
                ),
                self._retry_config,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.client.is_closed:
            await self._http.aclose()

    def _signed_headers(self, method: str, path: str, body: str = "") -> dict[str, str]:
        if self.credential is None or not self.credential.api_key or not self.credential.api_secret:
            raise AuthDenied("Exchange credentials are not configured", code="EXCHANGE_CREDENTIALS_MISSING")
        timestamp = str(int(time.time() * 1000))
        prehash = timestamp + method.upper() + self._path_prefix + path + body
        signature = hmac.new(
            self.credential.api_secret.encode("utf-8"),
            prehash.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return {
            "Content-Type": "application/json",
            "Bitvavo-Access-Key": self.credential.api_key,
            "Bitvavo-Access-Signature": signature,
            "Bitvavo-Access-Timestamp": timestamp,
            "Bitvavo-Access-Window": str(ACCESS_WINDOW_MS),
        }

    @staticmethod
    def _path(path: str, params: Optional[dict[str, Any]] = None) -> str:
        clean = {key: value for key, value in (params or {}).items() if value is not None}
        return f"{path}?{urlencode(clean)}" if clean else path

    async def _public_get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        full = self._path(path, params)
        response = await self._get_http().get(f"{self.base_url}{full}")
        return response.json()

    async def _private_get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        full = self._path(path, params)
        response = await self._get_http().get(
            f"{self.base_url}{full}",
            headers=self._signed_headers("GET", full),
        )
        return response.json()

    async def _private_send(self, method: str, path: str, payload: dict[str, Any]) -> Any:
        body = json.dumps(payload, separators=(",", ":"))
        response = await self._get_http().send_once(
            method,
            f"{self.base_url}{path}",
            content=body,
            headers=self._signed_headers(method, path, body),
        )
        return response.json()

    # ------------------------------------------------------------------ #
    #  Read path
    # ------------------------------------------------------------------ #

    async def fetch_accounts(self) -> dict[str, Any]:
        return await self._private_get("/account")

    async def fetch_balances(self) -> list[dict[str, Any]]:
        data = await self._private_get("/balance")
        balances = []
        for row in data or []:
            available = _to_float(row.get("available"))
            in_order = _to_float(row.get("inOrder"))
            balances.append(
                {
                    "symbol": str(row.get("symbol") or "").upper(),
                    "available": available,
                    "in_order": in_order,
                    "total": available + in_order,
                }
            )
        return balances

    async def fetch_positions(self) -> list[dict[str, Any]]:
        """Non-quote balances, valued at the current ticker price."""
        quote = settings.EXCHANGE_QUOTE_CURRENCY.upper()
        positions = []
        for balance in await self.fetch_balances():
            if balance["symbol"] == quote or balance["total"] <= 0:
                continue
            market = f"{balance['symbol']}-{quote}"
            price = await self.fetch_ticker(market)
            positions.append(
                {
                    "market": market,
                    "quantity": balance["total"],
                    "price": price,
                    "value_quote": balance["total"] * price if price else None,
                }
            )
        return positions

    async def fetch_orders(self, market: Optional[str] = None, *, limit: int = 100) -> list[ExchangeOrder]:
        data = await self._private_get("/orders", {"market": market, "limit": limit})
        return [parse_order(row) for row in data or []]

    async def fetch_transactions(self, *, limit: int = 100) -> list[dict[str, Any]]:
        data = await self._private_get("/account/history", {"maxItems": limit})
        if isinstance(data, dict):
            return list(data.get("items") or [])
        return list(data or [])

    async def fetch_candles(self, market: str, *, interval: str = "1h", limit: int = 25) -> list[dict[str, float]]:
        """Candles oldest first as dicts with timestamp/open/high/low/close/volume."""
        data = await self._public_get(f"/{market}/candles", {"interval": interval, "limit": limit})
        candles = []
        for row in data or []:
            if not isinstance(row, (list, tuple)) or len(row) < 6:
                continue
            candles.append(
                {
                    "timestamp": _to_float(row[0]),
                    "open": _to_float(row[1]),
                    "high": _to_float(row[2]),
                    "low": _to_float(row[3]),
                    "close": _to_float(row[4]),
                    "volume": _to_float(row[5]),
                }
            )
        candles.sort(key=lambda candle: candle["timestamp"])
        return candles

    async def fetch_ticker(self, market: str) -> Optional[float]:
        data = await self._public_get("/ticker/price", {"market": market})
        if isinstance(data, dict):
            return _optional_float(data.get("price"))
        return None

    async def get_order(self, market: str, order_id: str) -> Optional[ExchangeOrder]:
        try:
            data = await self._private_get("/order", {"market": market, "orderId": order_id})
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        return parse_order(data) if data else None

    async def find_by_client_order_id(
        self, client_order_id: str, *, market: Optional[str] = None
    ) -> Optional[ExchangeOrder]:
        # Errors other than 404 propagate: "could not look" must never read as "not there".
        data = None
        if market:
            try:
                data = await self._private_get("/order", {"market": market, "clientOrderId": client_order_id})
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 404:
                    raise
        if isinstance(data, dict) and data.get("orderId"):
            return parse_order(data)
        for order in await self.fetch_orders(market, limit=1000):
            if order.client_order_id == client_order_id:
                return order
        return None

    # ------------------------------------------------------------------ #
    #  Trading path
    # ------------------------------------------------------------------ #

    async def place_order(
        self,
        *,
        client_order_id: str,
        market: str,
        side: str,
        order_type: str,
        amount: Optional[float] = None,
        amount_quote: Optional[float] = None,
        price: Optional[float] = None,
    ) -> ExchangeOrder:
        self.ensure_can_trade()
        payload: dict[str, Any] = {
            "market": market,
            "side": side,
            "orderType": order_type,
            "clientOrderId": client_order_id,
        }
        if amount is not None:
            payload["amount"] = _format_amount(amount)
        if amount_quote is not None:
            payload["amountQuote"] = _format_amount(amount_quote)
        if price is not None:
            payload["price"] = _format_amount(price)

        logger.info(
            "Placing order",
            market=market,
            side=side,
            order_type=order_type,
            client_order_id=client_order_id,
        )
        data = await self._private_send("POST", "/order", payload)
        order = parse_order(data)
        if not order.client_order_id:
            order.client_order_id = client_order_id
        logger.info("Order placed", order_id=order.order_id, client_order_id=client_order_id, status=order.status)
        return order

    async def cancel_order(self, market: str, order_id: str) -> Optional[ExchangeOrder]:
        self.ensure_can_trade()
        path = self._path("/order", {"market": market, "orderId": order_id})
        response = await self._get_http().send_once(
            "DELETE",
            f"{self.base_url}{path}",
            headers=self._signed_headers("DELETE", path),
        )
        data = response.json()
        logger.info("Order cancelled", market=market, order_id=order_id)
        return parse_order({"market": market, "status": "canceled", **(data or {})})


_read_gateway: Optional[HttpExchangeGateway] = None
_trading_gateway: Optional[HttpExchangeGateway] = None


def get_read_gateway() -> HttpExchangeGateway:
    """Shared read-only gateway. Public endpoints work without keys."""
    global _read_gateway
    if _read_gateway is None:
        credential = None
        if settings.EXCHANGE_READ_API_KEY and settings.EXCHANGE_READ_API_SECRET:
            credential = ExchangeCredential(
                api_key=settings.EXCHANGE_READ_API_KEY,
                api_secret=settings.EXCHANGE_READ_API_SECRET,
                read_only=True,
            )
        _read_gateway = HttpExchangeGateway(credential)
    return _read_gateway


def get_trading_gateway() -> HttpExchangeGateway:
    global _trading_gateway
    if not settings.EXCHANGE_TRADE_API_KEY or not settings.EXCHANGE_TRADE_API_SECRET:
        raise AuthDenied("Trading credentials are not configured", code="EXCHANGE_CREDENTIALS_MISSING")
    if _trading_gateway is None:
        _trading_gateway = HttpExchangeGateway(
            ExchangeCredential(
                api_key=settings.EXCHANGE_TRADE_API_KEY,
                api_secret=settings.EXCHANGE_TRADE_API_SECRET,
                read_only=False,
            )
        )
    return _trading_gateway


async def close_gateways() -> None:
    global _read_gateway, _trading_gateway
    for gateway in (_read_gateway, _trading_gateway):
        if gateway is not None:
            await gateway.close()
    _read_gateway = None
    _trading_gateway = None

import hashlib
import hmac
import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.exchange.base import ExchangeCredential
from services.exchange.http_gateway import HttpExchangeGateway, parse_order
from services.trading_errors import AuthDenied
from utils.retry import HARD, SOFT, RetryConfig, classify_exchange_error

BASE_URL = "https://exchange.test/v2"
NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


def _gateway(handler, *, read_only=False, credential=True):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cred = ExchangeCredential(api_key="key-1234", api_secret="secret", read_only=read_only) if credential else None
    return HttpExchangeGateway(cred, base_url=BASE_URL, client=client, retry_config=NO_WAIT)


@pytest.mark.asyncio
async def test_read_only_credential_refuses_orders_before_any_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={})

    gateway = _gateway(handler, read_only=True)
    with pytest.raises(AuthDenied) as exc_info:
        await gateway.place_order(
            client_order_id="IV-abc", market="BTC-EUR", side="buy", order_type="market", amount_quote=40.0
        )
    assert exc_info.value.code == "READ_ONLY_CREDENTIAL"
    with pytest.raises(AuthDenied):
        await gateway.cancel_order("BTC-EUR", "ex-1")
    assert requests == []
    await gateway.close()


@pytest.mark.asyncio
async def test_place_order_is_signed_and_sent_once():
    requests = []

    def handler(request):
        requests.append(request)
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "orderId": "ex-1",
                "market": body["market"],
                "side": body["side"],
                "orderType": body["orderType"],
                "status": "new",
                "clientOrderId": body["clientOrderId"],
                "amountQuote": body["amountQuote"],
                "created": 1760000000000,
            },
        )

    gateway = _gateway(handler)
    order = await gateway.place_order(
        client_order_id="IV-abc", market="BTC-EUR", side="buy", order_type="market", amount_quote=40.0
    )

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert json.loads(request.content) == {
        "market": "BTC-EUR",
        "side": "buy",
        "orderType": "market",
        "clientOrderId": "IV-abc",
        "amountQuote": "40",
    }
    timestamp = request.headers["Bitvavo-Access-Timestamp"]
    expected = hmac.new(
        b"secret", (timestamp + "POST" + "/v2/order" + request.content.decode()).encode(), hashlib.sha256
    ).hexdigest()
    assert request.headers["Bitvavo-Access-Key"] == "key-1234"
    assert request.headers["Bitvavo-Access-Signature"] == expected
    assert order.order_id == "ex-1"
    assert order.client_order_id == "IV-abc"
    assert order.amount_quote == 40.0
    assert order.is_open
    await gateway.close()


@pytest.mark.asyncio
async def test_order_placement_is_not_retried_on_server_error():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(503, json={"error": "maintenance"})

    gateway = _gateway(handler)
    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await gateway.place_order(
            client_order_id="IV-abc", market="BTC-EUR", side="buy", order_type="market", amount_quote=40.0
        )
    assert calls["count"] == 1
    assert classify_exchange_error(exc_info.value) == SOFT
    await gateway.close()


@pytest.mark.asyncio
async def test_reads_retry_transient_status_codes():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"market": "BTC-EUR", "price": "61000.5"})

    gateway = _gateway(handler, credential=False)
    assert await gateway.fetch_ticker("BTC-EUR") == 61000.5
    assert calls["count"] == 3
    await gateway.close()


@pytest.mark.asyncio
async def test_find_by_client_order_id_falls_back_to_order_list():
    def handler(request):
        if request.url.path == "/v2/order":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(
            200,
            json=[
                {"orderId": "ex-1", "market": "BTC-EUR", "status": "filled", "clientOrderId": "IV-other"},
                {"orderId": "ex-2", "market": "BTC-EUR", "status": "new", "clientOrderId": "IV-abc"},
            ],
        )

    gateway = _gateway(handler)
    order = await gateway.find_by_client_order_id("IV-abc", market="BTC-EUR")
    assert order is not None
    assert order.order_id == "ex-2"
    assert await gateway.find_by_client_order_id("IV-missing", market="BTC-EUR") is None
    await gateway.close()


@pytest.mark.asyncio
async def test_lookup_errors_propagate_instead_of_reading_as_absent():
    def handler(request):
        return httpx.Response(401, json={"error": "bad signature"})

    gateway = _gateway(handler)
    with pytest.raises(httpx.HTTPStatusError):
        await gateway.find_by_client_order_id("IV-abc", market="BTC-EUR")
    await gateway.close()


@pytest.mark.asyncio
async def test_private_calls_require_credentials():
    gateway = _gateway(lambda request: httpx.Response(200, json=[]), credential=False)
    with pytest.raises(AuthDenied) as exc_info:
        await gateway.fetch_balances()
    assert exc_info.value.code == "EXCHANGE_CREDENTIALS_MISSING"
    await gateway.close()


def test_error_classification():
    request = httpx.Request("POST", f"{BASE_URL}/order")
    rejected = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(400, request=request))
    limited = httpx.HTTPStatusError("slow", request=request, response=httpx.Response(429, request=request))
    assert classify_exchange_error(rejected) == HARD
    assert classify_exchange_error(limited) == SOFT
    assert classify_exchange_error(httpx.ReadTimeout("timeout")) == SOFT


def test_parse_order_sums_fill_fees_and_computes_average_price():
    order = parse_order(
        {
            "orderId": "ex-5",
            "market": "ETH-EUR",
            "side": "sell",
            "orderType": "market",
            "status": "filled",
            "filledAmount": "0.02",
            "filledAmountQuote": "60",
            "fills": [{"fee": "0.05"}, {"fee": "0.10"}],
            "feeCurrency": "EUR",
        }
    )
    assert order.is_filled
    assert order.fee_paid == pytest.approx(0.15)
    assert order.average_price == pytest.approx(3000.0)
    assert "raw" not in order.to_dict()

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.market_pulse import MarketPulseGenerator, aggregate_metrics, compute_asset_metrics
from services.signal_generator import validate_candidates
from services.trading_agent.gate import evaluate_gate
from services.trading_errors import AuthDenied


def _candles(closes, volumes=None):
    volumes = volumes or [10.0] * len(closes)
    return [
        {"timestamp": float(index), "open": close, "high": close, "low": close, "close": close, "volume": volume}
        for index, (close, volume) in enumerate(zip(closes, volumes))
    ]


def test_asset_metrics_from_hourly_candles():
    closes = [100.0] * 24 + [102.0]
    volumes = [10.0, 12.0] * 12 + [15.0]

    metrics = compute_asset_metrics(_candles(closes, volumes))

    assert metrics["move_1h"] == pytest.approx(2.0)
    assert metrics["move_4h"] == pytest.approx(2.0)
    assert metrics["volume_z"] == pytest.approx(4.0)
    assert 0.0 < metrics["volatility_24h"] < 1.0
    assert metrics["last_price"] == 102.0


def test_asset_metrics_need_two_candles():
    assert compute_asset_metrics(_candles([100.0])) is None
    flat = compute_asset_metrics(_candles([100.0, 100.0]))
    assert flat["move_1h"] == 0.0
    assert flat["volume_z"] == 0.0


def test_aggregate_keeps_strongest_signal_per_metric():
    aggregate = aggregate_metrics(
        {
            "BTC-EUR": {"volatility_24h": 30.0, "move_1h": 1.0, "move_4h": -4.5, "volume_z": 0.5},
            "ETH-EUR": {"volatility_24h": 55.0, "move_1h": -2.5, "move_4h": 3.0, "volume_z": 1.2},
        }
    )
    assert aggregate == {"volatility_24h": 55.0, "move_1h": -2.5, "move_4h": -4.5, "volume_z": 1.2}
    assert aggregate_metrics({})["volatility_24h"] == 0.0


class _ReadGateway:
    def __init__(self):
        self.candle_calls = []

    async def fetch_candles(self, market, *, interval="1h", limit=25):
        self.candle_calls.append(market)
        if market == "ETH-EUR":
            raise ConnectionError("candles unavailable")
        return _candles([100.0] * 24 + [104.0])

    async def fetch_balances(self):
        return [
            {"symbol": "EUR", "total": 500.0},
            {"symbol": "BTC", "total": 0.5},
        ]

    async def fetch_ticker(self, market):
        return None


class _AnonymousGateway(_ReadGateway):
    async def fetch_balances(self):
        raise AuthDenied("Exchange credentials are not configured", code="EXCHANGE_CREDENTIALS_MISSING")


@pytest.mark.asyncio
async def test_pulse_snapshot_skips_failed_markets_and_values_portfolio(policy_config, now):
    gateway = _ReadGateway()
    snapshot = await MarketPulseGenerator(gateway).generate(user_id="user-1", policy_config=policy_config, now=now)

    assert gateway.candle_calls == ["BTC-EUR", "ETH-EUR"]
    assert list(snapshot["assets"]) == ["BTC-EUR"]
    assert snapshot["move_1h"] == pytest.approx(4.0)
    assert snapshot["portfolio_value_eur"] == pytest.approx(500.0 + 0.5 * 104.0)
    assert snapshot["observed_at"] == now
    assert evaluate_gate(None, snapshot).fired


@pytest.mark.asyncio
async def test_pulse_without_credentials_has_unknown_portfolio(policy_config, now):
    snapshot = await MarketPulseGenerator(_AnonymousGateway()).generate(
        user_id="user-1", policy_config=policy_config, now=now
    )
    assert snapshot["portfolio_value_eur"] is None


def test_validate_candidates_maps_aliases_and_drops_malformed():
    valid, dropped = validate_candidates(
        {
            "candidates": [
                {"market": "eth-eur", "side": "SELL", "orderType": "limit", "orderValueEur": 30, "limitPrice": 3000, "confidence": 100},
                {"asset": "BTC-EUR", "side": "buy", "order_value_eur": -5, "confidence": 75},
                "not an object",
            ]
        }
    )

    assert len(valid) == 1
    assert valid[0]["asset"] == "ETH-EUR"
    assert valid[0]["side"] == "sell"
    assert valid[0]["order_type"] == "limit"
    assert valid[0]["limit_price"] == 3000.0
    assert len(dropped) == 2
    assert dropped[1]["reasons"] == ["INVALID_CANDIDATE"]


def test_validate_candidates_rejects_unexpected_shape():
    valid, dropped = validate_candidates("no trades today")
    assert valid == []
    assert dropped[0]["reasons"] == ["INVALID_RESPONSE_SHAPE"]

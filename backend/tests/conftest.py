"""Shared fixtures for trading agent tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from utils.utcnow import utcnow


@pytest.fixture
def policy_config():
    """A policy that lets a 40 EUR BTC buy at confidence 75 through preflight."""
    return {
        "scan": {"mode": "ASSISTED", "interval_minutes": 60, "max_scans_per_day": 24},
        "budget": {"max_signal_calls_per_day": 10, "max_signal_calls_per_hour": 5},
        "risk": {
            "min_order_value_eur": 25.0,
            "max_order_value_eur": 50.0,
            "max_daily_trades": 3,
            "max_trades_per_hour": 2,
            "cooldown_minutes_after_loss": 60,
            "drawdown_stop_pct": 5.0,
        },
        "signal": {"min_confidence": 75, "allowed_confidences": [75, 100]},
        "assets": {"allowlist": ["BTC-EUR", "ETH-EUR"]},
    }


@pytest.fixture
def btc_buy():
    return {
        "asset": "BTC-EUR",
        "side": "buy",
        "order_type": "market",
        "order_value_eur": 40.0,
        "confidence": 75,
        "rationale": {"why": "breakout above range", "riskNotes": "thin weekend book"},
    }


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)

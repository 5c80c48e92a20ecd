from __future__ import annotations

import copy
from typing import Any

ALLOWED_CONFIDENCE_LEVELS = (0, 25, 50, 75, 100)


DEFAULT_POLICY_CONFIG: dict[str, Any] = {
    "scan": {
        "mode": "MANUAL",
        "interval_minutes": 60,
        "busy_interval_minutes": None,
        "max_scans_per_day": 24,
        "ai_enabled": True,
    },
    "budget": {
        "max_signal_calls_per_day": 5,
        "max_signal_calls_per_hour": 2,
    },
    "gate": {
        "enabled": True,
        "volatility_threshold_pct": 50.0,
        "move_1h_threshold_pct": 2.0,
        "move_4h_threshold_pct": 3.0,
        "volume_z_threshold": 1.5,
    },
    "risk": {
        "min_order_value_eur": 25.0,
        "max_order_value_eur": 50.0,
        "max_daily_trades": 3,
        "max_trades_per_hour": 2,
        "max_exposure_eur": None,
        "cooldown_minutes_after_loss": 60,
        "drawdown_stop_pct": 5.0,
        "never_average_down": True,
    },
    "signal": {
        "min_confidence": 75,
        "allowed_confidences": [75, 100],
    },
    "assets": {
        "allowlist": [],
        "blocklist": [],
    },
    "reporting": {
        "verbosity": 1,
        "must_include": ["why", "riskNotes"],
    },
}


POLICY_PRESETS: list[dict[str, Any]] = [
    {
        "id": "observer",
        "name": "Observer",
        "description": "Watch and explain only. Zero daily trades, so nothing can execute.",
        "config": {
            "scan": {
                "mode": "MANUAL",
                "interval_minutes": 120,
                "max_scans_per_day": 10,
            },
            "budget": {
                "max_signal_calls_per_day": 5,
                "max_signal_calls_per_hour": 2,
            },
            "gate": {
                "volatility_threshold_pct": 50.0,
                "move_1h_threshold_pct": 3.0,
                "move_4h_threshold_pct": 5.0,
                "volume_z_threshold": 2.0,
            },
            "risk": {
                "min_order_value_eur": 25.0,
                "max_order_value_eur": 50.0,
                "max_daily_trades": 0,
                "cooldown_minutes_after_loss": 60,
                "drawdown_stop_pct": 5.0,
                "never_average_down": True,
            },
            "signal": {
                "min_confidence": 75,
                "allowed_confidences": [75, 100],
            },
            "assets": {
                "allowlist": ["BTC-EUR", "ETH-EUR"],
            },
            "reporting": {
                "verbosity": 2,
                "must_include": ["why", "whyNot", "invalidations", "nextTrigger", "riskNotes"],
            },
        },
    },
    {
        "id": "hunter",
        "name": "Hunter",
        "description": "Assisted scanning on majors with small, capped orders.",
        "config": {
            "scan": {
                "mode": "ASSISTED",
                "interval_minutes": 60,
                "busy_interval_minutes": 15,
                "max_scans_per_day": 20,
            },
            "budget": {
                "max_signal_calls_per_day": 10,
                "max_signal_calls_per_hour": 3,
            },
            "gate": {
                "volatility_threshold_pct": 40.0,
                "move_1h_threshold_pct": 2.0,
                "move_4h_threshold_pct": 3.0,
                "volume_z_threshold": 1.5,
            },
            "risk": {
                "min_order_value_eur": 25.0,
                "max_order_value_eur": 200.0,
                "max_daily_trades": 3,
                "max_exposure_eur": 1000.0,
                "cooldown_minutes_after_loss": 30,
                "drawdown_stop_pct": 10.0,
                "never_average_down": True,
            },
            "signal": {
                "min_confidence": 50,
                "allowed_confidences": [50, 75, 100],
            },
            "assets": {
                "allowlist": ["BTC-EUR", "ETH-EUR", "ADA-EUR", "SOL-EUR"],
            },
            "reporting": {
                "verbosity": 1,
                "must_include": ["why", "riskNotes"],
            },
        },
    },
    {
        "id": "semi_auto",
        "name": "SemiAuto",
        "description": "Frequent scans, wider bounds and lower confidence floor.",
        "config": {
            "scan": {
                "mode": "ASSISTED",
                "interval_minutes": 30,
                "busy_interval_minutes": 10,
                "max_scans_per_day": 50,
            },
            "budget": {
                "max_signal_calls_per_day": 15,
                "max_signal_calls_per_hour": 5,
            },
            "gate": {
                "volatility_threshold_pct": 30.0,
                "move_1h_threshold_pct": 1.5,
                "move_4h_threshold_pct": 2.0,
                "volume_z_threshold": 1.0,
            },
            "risk": {
                "min_order_value_eur": 25.0,
                "max_order_value_eur": 500.0,
                "max_daily_trades": 5,
                "max_exposure_eur": 2000.0,
                "cooldown_minutes_after_loss": 15,
                "drawdown_stop_pct": 15.0,
                "never_average_down": False,
            },
            "signal": {
                "min_confidence": 25,
                "allowed_confidences": [25, 50, 75, 100],
            },
            "assets": {
                "allowlist": ["BTC-EUR", "ETH-EUR", "ADA-EUR", "SOL-EUR", "XRP-EUR"],
            },
            "reporting": {
                "verbosity": 0,
                "must_include": ["why"],
            },
        },
    },
]


def get_preset(preset_id: str) -> dict[str, Any] | None:
    key = str(preset_id or "").strip().lower().replace("-", "_")
    for preset in POLICY_PRESETS:
        if preset["id"] == key:
            return copy.deepcopy(preset)
    return None


def list_presets() -> list[dict[str, Any]]:
    return [copy.deepcopy(preset) for preset in POLICY_PRESETS]

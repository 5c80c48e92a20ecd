import sys
from datetime import timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.trading_agent.gate import evaluate_gate
from services.trading_agent.policy_schema import normalize_policy_config, policy_hash
from services.trading_agent.preflight import (
    ALLOWLIST_EMPTY,
    ANTI_FLIP,
    AVERAGING_DOWN_BLOCKED,
    CONFIDENCE_NOT_ALLOWED,
    COOLDOWN_AFTER_LOSS,
    DAILY_TRADE_CAP_REACHED,
    DRAWDOWN_STOP,
    ORDER_VALUE_ABOVE_PROMOTION_LIMIT,
    TRADING_DISABLED,
    PreflightContext,
    evaluate_preflight,
)
from services.trading_agent.presets import get_preset, list_presets
from services.trading_errors import ValidationError


def _context(now, **overrides):
    values = {"now": now, "trading_enabled": True}
    values.update(overrides)
    return PreflightContext(**values)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def test_gate_quiet_market_does_not_fire():
    result = evaluate_gate({}, {"volatility_24h": 10.0, "move_1h": 0.5, "move_4h": -1.0, "volume_z": 0.3})

    assert result.fired is False
    assert result.triggers == []
    assert result.enabled is True


def test_gate_reports_every_met_threshold():
    result = evaluate_gate(
        {"volatility_threshold_pct": 50.0, "move_1h_threshold_pct": 2.0},
        {"volatility_24h": 60.0, "move_1h": -2.5, "move_4h": 0.0, "volume_z": 0.0},
    )

    assert result.fired is True
    assert result.triggers == ["volatility_60.00%", "move1h_-2.50%"]


def test_disabled_gate_never_fires():
    result = evaluate_gate({"enabled": False}, {"volatility_24h": 100.0, "volume_z": 9.0})

    assert result.fired is False
    assert result.enabled is False


# ---------------------------------------------------------------------------
# Policy schema and presets
# ---------------------------------------------------------------------------


def test_presets_are_valid_policy_configs():
    ids = [preset["id"] for preset in list_presets()]
    assert ids == ["observer", "hunter", "semi_auto"]
    for preset in list_presets():
        config = normalize_policy_config(preset["config"])
        assert set(config) == {"scan", "budget", "gate", "risk", "signal", "assets", "reporting"}

    observer = normalize_policy_config(get_preset("Observer")["config"])
    assert observer["risk"]["max_daily_trades"] == 0


def test_policy_schema_lists_every_invalid_field():
    with pytest.raises(ValidationError) as exc_info:
        normalize_policy_config(
            {
                "scan": {"mode": "YOLO", "interval_minutes": 0},
                "signal": {"allowed_confidences": [75, 80]},
                "risk": {"min_order_value_eur": 100.0, "max_order_value_eur": 50.0},
            }
        )

    reasons = exc_info.value.reasons
    assert "INVALID_ENUM:scan.mode" in reasons
    assert "BELOW_MINIMUM:scan.interval_minutes" in reasons
    assert "INVALID_CONFIDENCE_LEVEL:signal.allowed_confidences" in reasons
    assert "MIN_ABOVE_MAX:risk.order_value_eur" in reasons


def test_policy_schema_rejects_unknown_fields():
    with pytest.raises(ValidationError) as exc_info:
        normalize_policy_config({"risk": {"max_leverage": 10}})
    assert exc_info.value.reasons == ["UNKNOWN_FIELD:risk.max_leverage"]


def test_scan_cadence_has_only_normal_and_busy_intervals():
    for preset in list_presets():
        assert "quiet_interval_minutes" not in preset["config"]["scan"]
    with pytest.raises(ValidationError) as exc_info:
        normalize_policy_config({"scan": {"quiet_interval_minutes": 240}})
    assert exc_info.value.reasons == ["UNKNOWN_FIELD:scan.quiet_interval_minutes"]


def test_policy_hash_ignores_key_order():
    first = normalize_policy_config({"assets": {"allowlist": ["btc-eur"]}})
    second = {key: first[key] for key in reversed(list(first))}
    assert first["assets"]["allowlist"] == ["BTC-EUR"]
    assert policy_hash(first) == policy_hash(second)


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


def test_preflight_passes_within_policy(policy_config, btc_buy, now):
    result = evaluate_preflight(proposal=btc_buy, policy_config=policy_config, context=_context(now))

    assert result.passed is True
    assert result.reasons == []


def test_empty_allowlist_denies_every_asset(policy_config, btc_buy, now):
    policy_config["assets"] = {"allowlist": [], "blocklist": []}
    for asset in ("BTC-EUR", "ETH-EUR", "DOGE-EUR"):
        result = evaluate_preflight(
            proposal={**btc_buy, "asset": asset},
            policy_config=policy_config,
            context=_context(now),
        )
        assert result.passed is False
        assert ALLOWLIST_EMPTY in result.reasons


def test_observer_preset_blocks_any_trade(btc_buy, now):
    config = normalize_policy_config(get_preset("observer")["config"])
    result = evaluate_preflight(proposal=btc_buy, policy_config=config, context=_context(now))

    assert result.passed is False
    assert result.reasons == [DAILY_TRADE_CAP_REACHED]


def test_preflight_collects_all_violations(policy_config, btc_buy, now):
    context = _context(
        now,
        trading_enabled=False,
        last_loss_at=now - timedelta(minutes=10),
        last_trade_side="sell",
        last_trade_at=now - timedelta(minutes=30),
        daily_realized_pnl_eur=-80.0,
        portfolio_value_eur=1000.0,
    )
    result = evaluate_preflight(
        proposal={**btc_buy, "confidence": 50},
        policy_config=policy_config,
        context=context,
    )

    for code in (TRADING_DISABLED, CONFIDENCE_NOT_ALLOWED, COOLDOWN_AFTER_LOSS, ANTI_FLIP, DRAWDOWN_STOP):
        assert code in result.reasons
    assert all(check.detail for check in result.checks)


def test_never_average_down_blocks_buy_below_entry(policy_config, btc_buy, now):
    policy_config["risk"]["never_average_down"] = True
    context = _context(now, position_quantity=0.01, average_entry_price=60000.0, reference_price=55000.0)

    result = evaluate_preflight(proposal=btc_buy, policy_config=policy_config, context=context)
    assert result.reasons == [AVERAGING_DOWN_BLOCKED]

    sell = evaluate_preflight(
        proposal={**btc_buy, "side": "sell"}, policy_config=policy_config, context=context
    )
    assert sell.passed is True


def test_promotion_ceiling_applies_only_when_context_carries_one(policy_config, btc_buy, now):
    unlimited = evaluate_preflight(
        proposal=btc_buy,
        policy_config=policy_config,
        context=_context(now, promotion_level="MATURE", promotion_limit_eur=None),
    )
    assert unlimited.passed is True
    assert ORDER_VALUE_ABOVE_PROMOTION_LIMIT not in [check.key for check in unlimited.checks]

    capped = evaluate_preflight(
        proposal=btc_buy,
        policy_config=policy_config,
        context=_context(now, promotion_level="TRAINING", promotion_limit_eur=25.0),
    )
    assert capped.reasons == [ORDER_VALUE_ABOVE_PROMOTION_LIMIT]
    check = next(check for check in capped.checks if check.key == ORDER_VALUE_ABOVE_PROMOTION_LIMIT)
    assert "level=TRAINING" in check.detail

    at_limit = evaluate_preflight(
        proposal={**btc_buy, "order_value_eur": 25.0},
        policy_config=policy_config,
        context=_context(now, promotion_level="TRAINING", promotion_limit_eur=25.0),
    )
    assert at_limit.passed is True


def test_preflight_is_deterministic(policy_config, btc_buy, now):
    context = _context(now, trades_today=3, last_loss_at=now - timedelta(minutes=5))
    first = evaluate_preflight(proposal=btc_buy, policy_config=policy_config, context=context)
    second = evaluate_preflight(proposal=btc_buy, policy_config=policy_config, context=context)

    assert first.reasons == second.reasons
    assert first.to_payload() == second.to_payload()

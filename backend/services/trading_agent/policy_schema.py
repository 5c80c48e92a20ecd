from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Optional

from services.trading_agent.presets import ALLOWED_CONFIDENCE_LEVELS, DEFAULT_POLICY_CONFIG
from services.trading_errors import ValidationError

SCAN_MODES = {"MANUAL", "ASSISTED", "AUTO"}
POLICY_SECTIONS = tuple(DEFAULT_POLICY_CONFIG.keys())


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for section, values in (overrides or {}).items():
        if section not in merged:
            raise ValidationError(f"Unknown policy section: {section}", reasons=[f"UNKNOWN_SECTION:{section}"])
        if not isinstance(values, dict):
            raise ValidationError(f"Policy section {section} must be an object", reasons=[f"INVALID_SECTION:{section}"])
        for key, value in values.items():
            if key not in merged[section]:
                raise ValidationError(
                    f"Unknown policy field: {section}.{key}",
                    reasons=[f"UNKNOWN_FIELD:{section}.{key}"],
                )
            merged[section][key] = copy.deepcopy(value)
    return merged


def _as_int(value: Any, field: str, errors: list[str], *, minimum: int = 0) -> Optional[int]:
    if isinstance(value, bool):
        errors.append(f"INVALID_INTEGER:{field}")
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors.append(f"INVALID_INTEGER:{field}")
        return None
    if parsed < minimum:
        errors.append(f"BELOW_MINIMUM:{field}")
    return parsed


def _as_float(value: Any, field: str, errors: list[str], *, minimum: float = 0.0) -> Optional[float]:
    if isinstance(value, bool):
        errors.append(f"INVALID_NUMBER:{field}")
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        errors.append(f"INVALID_NUMBER:{field}")
        return None
    if parsed < minimum:
        errors.append(f"BELOW_MINIMUM:{field}")
    return parsed


def _normalize_assets(values: Any, field: str, errors: list[str]) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        errors.append(f"INVALID_LIST:{field}")
        return []
    out: list[str] = []
    for value in values:
        market = normalize_market(value)
        if market and market not in out:
            out.append(market)
    return out


def normalize_market(value: Any) -> str:
    return str(value or "").strip().upper()


def normalize_policy_config(
    overrides: Optional[dict[str, Any]] = None,
    *,
    base: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Merge ``overrides`` onto ``base`` (or the defaults) and validate every field.

    Raises ValidationError listing every invalid field at once.
    """
    config = _merge(base if base is not None else DEFAULT_POLICY_CONFIG, overrides or {})
    errors: list[str] = []

    scan = config["scan"]
    scan["mode"] = str(scan.get("mode") or "MANUAL").strip().upper()
    if scan["mode"] not in SCAN_MODES:
        errors.append("INVALID_ENUM:scan.mode")
    scan["interval_minutes"] = _as_int(scan["interval_minutes"], "scan.interval_minutes", errors, minimum=1)
    if scan.get("busy_interval_minutes") is not None:
        scan["busy_interval_minutes"] = _as_int(
            scan["busy_interval_minutes"], "scan.busy_interval_minutes", errors, minimum=1
        )
    scan["max_scans_per_day"] = _as_int(scan["max_scans_per_day"], "scan.max_scans_per_day", errors)
    scan["ai_enabled"] = bool(scan.get("ai_enabled", True))

    budget = config["budget"]
    for key in ("max_signal_calls_per_day", "max_signal_calls_per_hour"):
        budget[key] = _as_int(budget[key], f"budget.{key}", errors)

    gate = config["gate"]
    gate["enabled"] = bool(gate.get("enabled", True))
    for key in ("volatility_threshold_pct", "move_1h_threshold_pct", "move_4h_threshold_pct", "volume_z_threshold"):
        gate[key] = _as_float(gate[key], f"gate.{key}", errors)

    risk = config["risk"]
    risk["min_order_value_eur"] = _as_float(risk["min_order_value_eur"], "risk.min_order_value_eur", errors)
    risk["max_order_value_eur"] = _as_float(risk["max_order_value_eur"], "risk.max_order_value_eur", errors)
    if (
        risk["min_order_value_eur"] is not None
        and risk["max_order_value_eur"] is not None
        and risk["min_order_value_eur"] > risk["max_order_value_eur"]
    ):
        errors.append("MIN_ABOVE_MAX:risk.order_value_eur")
    risk["max_daily_trades"] = _as_int(risk["max_daily_trades"], "risk.max_daily_trades", errors)
    risk["max_trades_per_hour"] = _as_int(risk["max_trades_per_hour"], "risk.max_trades_per_hour", errors)
    if risk.get("max_exposure_eur") is not None:
        risk["max_exposure_eur"] = _as_float(risk["max_exposure_eur"], "risk.max_exposure_eur", errors)
    risk["cooldown_minutes_after_loss"] = _as_int(
        risk["cooldown_minutes_after_loss"], "risk.cooldown_minutes_after_loss", errors
    )
    risk["drawdown_stop_pct"] = _as_float(risk["drawdown_stop_pct"], "risk.drawdown_stop_pct", errors)
    risk["never_average_down"] = bool(risk.get("never_average_down", True))

    signal = config["signal"]
    signal["min_confidence"] = _as_int(signal["min_confidence"], "signal.min_confidence", errors)
    if signal["min_confidence"] is not None and signal["min_confidence"] > 100:
        errors.append("ABOVE_MAXIMUM:signal.min_confidence")
    allowed = signal.get("allowed_confidences")
    if not isinstance(allowed, (list, tuple)):
        errors.append("INVALID_LIST:signal.allowed_confidences")
        allowed = []
    normalized_allowed: list[int] = []
    for value in allowed:
        level = _as_int(value, "signal.allowed_confidences", errors)
        if level is None:
            continue
        if level not in ALLOWED_CONFIDENCE_LEVELS:
            errors.append("INVALID_CONFIDENCE_LEVEL:signal.allowed_confidences")
            continue
        if level not in normalized_allowed:
            normalized_allowed.append(level)
    signal["allowed_confidences"] = sorted(normalized_allowed)

    assets = config["assets"]
    assets["allowlist"] = _normalize_assets(assets.get("allowlist"), "assets.allowlist", errors)
    assets["blocklist"] = _normalize_assets(assets.get("blocklist"), "assets.blocklist", errors)

    reporting = config["reporting"]
    reporting["verbosity"] = _as_int(reporting.get("verbosity", 1), "reporting.verbosity", errors)
    if reporting["verbosity"] is not None and reporting["verbosity"] > 2:
        errors.append("ABOVE_MAXIMUM:reporting.verbosity")
    if not isinstance(reporting.get("must_include"), list):
        reporting["must_include"] = []

    if errors:
        raise ValidationError("Invalid policy configuration", reasons=sorted(set(errors)))
    return config


def policy_hash(config: dict[str, Any]) -> str:
    canonical = json.dumps(config or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

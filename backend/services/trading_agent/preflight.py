from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

TRADING_DISABLED = "TRADING_DISABLED"
ALLOWLIST_EMPTY = "ALLOWLIST_EMPTY_DENY_BY_DEFAULT"
ASSET_NOT_ALLOWLISTED = "ASSET_NOT_ALLOWLISTED"
ASSET_BLOCKLISTED = "ASSET_BLOCKLISTED"
ORDER_VALUE_BELOW_MIN = "ORDER_VALUE_BELOW_MIN"
ORDER_VALUE_ABOVE_MAX = "ORDER_VALUE_ABOVE_MAX"
ORDER_VALUE_ABOVE_PROMOTION_LIMIT = "ORDER_VALUE_ABOVE_PROMOTION_LIMIT"
CONFIDENCE_BELOW_MIN = "CONFIDENCE_BELOW_MIN"
CONFIDENCE_NOT_ALLOWED = "CONFIDENCE_NOT_ALLOWED"
DAILY_TRADE_CAP_REACHED = "DAILY_TRADE_CAP_REACHED"
HOURLY_TRADE_CAP_REACHED = "HOURLY_TRADE_CAP_REACHED"
COOLDOWN_AFTER_LOSS = "COOLDOWN_AFTER_LOSS"
ANTI_FLIP = "ANTI_FLIP"
DRAWDOWN_STOP = "DRAWDOWN_STOP"
MAX_EXPOSURE_EXCEEDED = "MAX_EXPOSURE_EXCEEDED"
AVERAGING_DOWN_BLOCKED = "AVERAGING_DOWN_BLOCKED"

DEFAULT_MIN_ORDER_EUR = 25.0
DEFAULT_MAX_ORDER_EUR = 50.0
DEFAULT_ALLOWED_CONFIDENCES = (75, 100)


@dataclass
class PreflightCheck:
    key: str
    passed: bool
    detail: str
    score: float | None = None


@dataclass
class PreflightContext:
    """Stateful inputs, gathered before evaluation so the rules stay pure."""

    now: datetime
    trading_enabled: bool = False
    trades_today: int = 0
    trades_last_hour: int = 0
    last_loss_at: Optional[datetime] = None
    last_trade_side: Optional[str] = None
    last_trade_at: Optional[datetime] = None
    daily_realized_pnl_eur: float = 0.0
    portfolio_value_eur: Optional[float] = None
    open_exposure_eur: float = 0.0
    position_quantity: float = 0.0
    average_entry_price: Optional[float] = None
    reference_price: Optional[float] = None
    promotion_level: Optional[str] = None
    promotion_limit_eur: Optional[float] = None  # None: no ceiling at this level


@dataclass
class PreflightResult:
    passed: bool
    reasons: list[str] = field(default_factory=list)
    checks: list[PreflightCheck] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "reasons": list(self.reasons),
            "checks": [asdict(check) for check in self.checks],
        }


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60.0


def evaluate_preflight(
    *,
    proposal: dict[str, Any],
    policy_config: dict[str, Any] | None,
    context: PreflightContext,
    anti_flip_minutes: int = 120,
    default_max_trades_per_hour: int = 2,
) -> PreflightResult:
    """Evaluate every rule and return all violations, not just the first."""
    policy_config = policy_config or {}
    risk = policy_config.get("risk") or {}
    signal = policy_config.get("signal") or {}
    assets = policy_config.get("assets") or {}

    asset = str(proposal.get("asset") or "").strip().upper()
    side = str(proposal.get("side") or "").strip().lower()
    value = _safe_float(proposal.get("order_value_eur"))
    confidence = _safe_int(proposal.get("confidence"), -1)

    checks: list[PreflightCheck] = []

    checks.append(
        PreflightCheck(
            key=TRADING_DISABLED,
            passed=bool(context.trading_enabled),
            detail="trading enabled" if context.trading_enabled else "kill switch is off",
        )
    )

    allowlist = [str(item).strip().upper() for item in (assets.get("allowlist") or [])]
    blocklist = [str(item).strip().upper() for item in (assets.get("blocklist") or [])]
    if not allowlist:
        checks.append(PreflightCheck(key=ALLOWLIST_EMPTY, passed=False, detail="allowlist is empty"))
    else:
        checks.append(
            PreflightCheck(
                key=ASSET_NOT_ALLOWLISTED,
                passed=asset in allowlist,
                detail=f"asset={asset} allowlist={','.join(allowlist)}",
            )
        )
    checks.append(
        PreflightCheck(
            key=ASSET_BLOCKLISTED,
            passed=asset not in blocklist,
            detail=f"asset={asset} blocked" if asset in blocklist else "not blocked",
        )
    )

    min_value = _safe_float(risk.get("min_order_value_eur"), DEFAULT_MIN_ORDER_EUR)
    max_value = _safe_float(risk.get("max_order_value_eur"), DEFAULT_MAX_ORDER_EUR)
    checks.append(
        PreflightCheck(
            key=ORDER_VALUE_BELOW_MIN,
            passed=value >= min_value,
            detail=f"value={value:.2f} min={min_value:.2f}",
            score=value,
        )
    )
    checks.append(
        PreflightCheck(
            key=ORDER_VALUE_ABOVE_MAX,
            passed=value <= max_value,
            detail=f"value={value:.2f} max={max_value:.2f}",
            score=value,
        )
    )
    if context.promotion_limit_eur is not None:
        limit = _safe_float(context.promotion_limit_eur)
        checks.append(
            PreflightCheck(
                key=ORDER_VALUE_ABOVE_PROMOTION_LIMIT,
                passed=value <= limit,
                detail=f"value={value:.2f} limit={limit:.2f} level={context.promotion_level}",
                score=value,
            )
        )

    min_confidence = _safe_int(signal.get("min_confidence"), 0)
    allowed_confidences = signal.get("allowed_confidences")
    if allowed_confidences is None:
        allowed_confidences = list(DEFAULT_ALLOWED_CONFIDENCES)
    allowed_set = {_safe_int(level, -1) for level in allowed_confidences}
    checks.append(
        PreflightCheck(
            key=CONFIDENCE_BELOW_MIN,
            passed=confidence >= min_confidence,
            detail=f"confidence={confidence} min={min_confidence}",
            score=float(confidence),
        )
    )
    checks.append(
        PreflightCheck(
            key=CONFIDENCE_NOT_ALLOWED,
            passed=confidence in allowed_set,
            detail=f"confidence={confidence} allowed={sorted(allowed_set)}",
            score=float(confidence),
        )
    )

    max_daily_trades = max(0, _safe_int(risk.get("max_daily_trades"), 3))
    checks.append(
        PreflightCheck(
            key=DAILY_TRADE_CAP_REACHED,
            passed=context.trades_today < max_daily_trades,
            detail=f"today={context.trades_today} max={max_daily_trades}",
            score=float(context.trades_today),
        )
    )

    max_hourly = risk.get("max_trades_per_hour")
    max_hourly = max(0, _safe_int(max_hourly, default_max_trades_per_hour)) if max_hourly is not None else default_max_trades_per_hour
    checks.append(
        PreflightCheck(
            key=HOURLY_TRADE_CAP_REACHED,
            passed=context.trades_last_hour < max_hourly,
            detail=f"last_hour={context.trades_last_hour} max={max_hourly}",
            score=float(context.trades_last_hour),
        )
    )

    cooldown_minutes = max(0, _safe_int(risk.get("cooldown_minutes_after_loss"), 0))
    cooldown_active = False
    cooldown_detail = "no recent loss"
    if context.last_loss_at is not None and cooldown_minutes > 0:
        since = _minutes_between(context.last_loss_at, context.now)
        cooldown_active = since < cooldown_minutes
        cooldown_detail = f"last loss {since:.0f} min ago, cooldown {cooldown_minutes} min"
    checks.append(PreflightCheck(key=COOLDOWN_AFTER_LOSS, passed=not cooldown_active, detail=cooldown_detail))

    flip_blocked = False
    flip_detail = "no anti-flip conflict"
    if context.last_trade_side and context.last_trade_at is not None and side:
        since = _minutes_between(context.last_trade_at, context.now)
        if context.last_trade_side.lower() != side and since < anti_flip_minutes:
            flip_blocked = True
            flip_detail = f"last trade was {context.last_trade_side} {since:.0f} min ago, proposed {side}"
    checks.append(PreflightCheck(key=ANTI_FLIP, passed=not flip_blocked, detail=flip_detail))

    drawdown_stop = _safe_float(risk.get("drawdown_stop_pct"), 0.0)
    drawdown_pct = 0.0
    portfolio_value = _safe_float(context.portfolio_value_eur, 0.0)
    if portfolio_value > 0 and context.daily_realized_pnl_eur < 0:
        drawdown_pct = (-context.daily_realized_pnl_eur / portfolio_value) * 100.0
    checks.append(
        PreflightCheck(
            key=DRAWDOWN_STOP,
            passed=drawdown_stop <= 0 or drawdown_pct < drawdown_stop,
            detail=f"drawdown={drawdown_pct:.2f}% stop={drawdown_stop:.2f}%",
            score=drawdown_pct,
        )
    )

    max_exposure = risk.get("max_exposure_eur")
    if max_exposure is not None and side == "buy":
        next_exposure = max(0.0, context.open_exposure_eur) + max(0.0, value)
        checks.append(
            PreflightCheck(
                key=MAX_EXPOSURE_EXCEEDED,
                passed=next_exposure <= _safe_float(max_exposure),
                detail=f"next={next_exposure:.2f} max={_safe_float(max_exposure):.2f}",
                score=next_exposure,
            )
        )

    if bool(risk.get("never_average_down")) and side == "buy":
        price = proposal.get("limit_price") or context.reference_price
        averaging_down = (
            context.position_quantity > 0
            and context.average_entry_price is not None
            and price is not None
            and _safe_float(price) < context.average_entry_price
        )
        checks.append(
            PreflightCheck(
                key=AVERAGING_DOWN_BLOCKED,
                passed=not averaging_down,
                detail=(
                    f"price={_safe_float(price):.4f} below entry={context.average_entry_price:.4f}"
                    if averaging_down
                    else "not averaging down"
                ),
            )
        )

    reasons = [check.key for check in checks if not check.passed]
    return PreflightResult(passed=not reasons, reasons=reasons, checks=checks)

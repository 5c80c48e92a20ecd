"""Operational promotion: the per-order EUR ceiling grows with the execution track record.

Levels climb one step at a time (TRAINING -> VALIDATED -> PRODUCTION -> MATURE)
and never fall back on their own. The metrics behind a promotion are read
straight from ``trade_executions``; nothing is cached between checks.

Recovery rate is the share of settled executions that needed a clientOrderId
lookup to resolve; it caps promotion independently of the success rate.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import (
    ExecutionEvent,
    ExecutionStatus,
    PromotionLevel,
    TradeExecution,
    UserTradingSettings,
)
from services.trading_settings import ensure_trading_settings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("promotion")

LEVEL_ORDER = (
    PromotionLevel.TRAINING,
    PromotionLevel.VALIDATED,
    PromotionLevel.PRODUCTION,
    PromotionLevel.MATURE,
)

# None means no ceiling beyond the policy's own max and the exchange balance.
ORDER_LIMIT_EUR: dict[PromotionLevel, Optional[float]] = {
    PromotionLevel.TRAINING: 25.0,
    PromotionLevel.VALIDATED: 100.0,
    PromotionLevel.PRODUCTION: 500.0,
    PromotionLevel.MATURE: None,
}


@dataclass(frozen=True)
class PromotionCriteria:
    min_executions: int
    min_success_rate: float
    max_recovery_rate: float


# Requirements for *reaching* each level.
PROMOTION_RULES: dict[PromotionLevel, PromotionCriteria] = {
    PromotionLevel.VALIDATED: PromotionCriteria(min_executions=100, min_success_rate=0.98, max_recovery_rate=0.05),
    PromotionLevel.PRODUCTION: PromotionCriteria(min_executions=500, min_success_rate=0.99, max_recovery_rate=0.03),
    PromotionLevel.MATURE: PromotionCriteria(min_executions=1000, min_success_rate=0.99, max_recovery_rate=0.02),
}

_SETTLED = (ExecutionStatus.SUBMITTED.value, ExecutionStatus.FILLED.value, ExecutionStatus.FAILED.value)


@dataclass
class ExecutionMetrics:
    total_executions: int = 0
    successful: int = 0
    failed: int = 0
    recovered: int = 0

    @property
    def success_rate(self) -> float:
        return self.successful / self.total_executions if self.total_executions else 0.0

    @property
    def recovery_rate(self) -> float:
        return self.recovered / self.total_executions if self.total_executions else 0.0

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["success_rate"] = round(self.success_rate, 4)
        payload["recovery_rate"] = round(self.recovery_rate, 4)
        return payload


def parse_level(value: Any) -> PromotionLevel:
    try:
        return PromotionLevel(str(value or "").strip().upper())
    except ValueError:
        return PromotionLevel.TRAINING


def order_limit_for(level: Any) -> Optional[float]:
    return ORDER_LIMIT_EUR[parse_level(level)]


def next_level(level: PromotionLevel) -> Optional[PromotionLevel]:
    index = LEVEL_ORDER.index(level)
    return LEVEL_ORDER[index + 1] if index + 1 < len(LEVEL_ORDER) else None


async def get_promotion_level(session: AsyncSession, user_id: str) -> PromotionLevel:
    """Read-only; a user without a settings row is TRAINING."""
    row = await session.get(UserTradingSettings, user_id, populate_existing=True)
    return parse_level(row.promotion_level if row is not None else None)


async def compute_execution_metrics(session: AsyncSession, user_id: str) -> ExecutionMetrics:
    """Settled executions only; CLAIMED and SUBMITTING rows have no outcome yet."""
    success = case(
        (TradeExecution.status.in_([ExecutionStatus.SUBMITTED.value, ExecutionStatus.FILLED.value]), 1),
        else_=0,
    )
    failure = case((TradeExecution.status == ExecutionStatus.FAILED.value, 1), else_=0)
    recovered = case(
        (
            or_(
                TradeExecution.reconcile_attempts > 0,
                TradeExecution.last_reconciled_at.is_not(None),
            ),
            1,
        ),
        else_=0,
    )
    row = (
        await session.execute(
            select(
                func.count(TradeExecution.id),
                func.coalesce(func.sum(success), 0),
                func.coalesce(func.sum(failure), 0),
                func.coalesce(func.sum(recovered), 0),
            ).where(and_(TradeExecution.user_id == user_id, TradeExecution.status.in_(_SETTLED)))
        )
    ).one()
    return ExecutionMetrics(
        total_executions=int(row[0] or 0),
        successful=int(row[1] or 0),
        failed=int(row[2] or 0),
        recovered=int(row[3] or 0),
    )


def evaluate_promotion(level: PromotionLevel, metrics: ExecutionMetrics) -> dict[str, Any]:
    target = next_level(level)
    result: dict[str, Any] = {
        "eligible": False,
        "current_level": level.value,
        "next_level": target.value if target else None,
        "metrics": metrics.to_payload(),
    }
    if target is None:
        result["reason"] = "Already at the highest level (MATURE)"
        return result

    criteria = PROMOTION_RULES[target]
    if metrics.total_executions < criteria.min_executions:
        result["reason"] = (
            f"Need {criteria.min_executions} executions for {target.value}; have {metrics.total_executions}"
        )
    elif metrics.success_rate < criteria.min_success_rate:
        result["reason"] = (
            f"Success rate {metrics.success_rate * 100:.1f}% below required "
            f"{criteria.min_success_rate * 100:.1f}% for {target.value}"
        )
    elif metrics.recovery_rate > criteria.max_recovery_rate:
        result["reason"] = (
            f"Recovery rate {metrics.recovery_rate * 100:.1f}% above max "
            f"{criteria.max_recovery_rate * 100:.1f}% for {target.value}"
        )
    else:
        result["eligible"] = True
        result["reason"] = f"Qualifies for {target.value}"
        result["new_limit_eur"] = ORDER_LIMIT_EUR[target]
    return result


async def get_promotion_status(session: AsyncSession, user_id: str) -> dict[str, Any]:
    level = await get_promotion_level(session, user_id)
    metrics = await compute_execution_metrics(session, user_id)
    status = evaluate_promotion(level, metrics)
    status["order_limit_eur"] = ORDER_LIMIT_EUR[level]
    return status


async def promote_if_eligible(
    session: AsyncSession,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Move up at most one level. The update is a compare-and-set on the current level."""
    now = now or utcnow()
    row = await ensure_trading_settings(session, user_id)
    await session.refresh(row)
    level = parse_level(row.promotion_level)
    metrics = await compute_execution_metrics(session, user_id)
    status = evaluate_promotion(level, metrics)
    status["promoted"] = False
    if not status["eligible"]:
        return status

    target = PromotionLevel(status["next_level"])
    result = await session.execute(
        update(UserTradingSettings)
        .where(
            and_(
                UserTradingSettings.user_id == user_id,
                UserTradingSettings.promotion_level == level.value,
            )
        )
        .values(promotion_level=target.value, promoted_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await session.rollback()
        status["reason"] = "Promotion level changed concurrently"
        return status

    session.add(
        ExecutionEvent(
            id=uuid.uuid4().hex,
            user_id=user_id,
            event_type="promotion",
            severity="info",
            message=f"Promoted {level.value} -> {target.value}",
            payload_json={
                "from_level": level.value,
                "to_level": target.value,
                "new_limit_eur": ORDER_LIMIT_EUR[target],
                "metrics": metrics.to_payload(),
            },
            created_at=now,
        )
    )
    await session.commit()
    status["promoted"] = True
    logger.info(
        "User promoted",
        user_id=user_id,
        from_level=level.value,
        to_level=target.value,
        total_executions=metrics.total_executions,
        success_rate=round(metrics.success_rate, 4),
        recovery_rate=round(metrics.recovery_rate, 4),
    )
    return status


async def run_promotion_sweep(session: AsyncSession, *, now: Optional[datetime] = None) -> dict[str, int]:
    """Check every user with a settings row; run by the worker after the ledger sweeps."""
    now = now or utcnow()
    user_ids = (
        (
            await session.execute(
                select(UserTradingSettings.user_id).where(
                    UserTradingSettings.promotion_level != PromotionLevel.MATURE.value
                )
            )
        )
        .scalars()
        .all()
    )
    summary = {"checked": 0, "promoted": 0}
    for user_id in user_ids:
        summary["checked"] += 1
        outcome = await promote_if_eligible(session, user_id, now=now)
        if outcome["promoted"]:
            summary["promoted"] += 1
    return summary

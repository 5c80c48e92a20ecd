"""Signal-generator call budget.

Counts are re-derived from ``signal_usage_log`` on every check, so a process
restart or a missed counter reset can never hand out extra calls.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import SignalUsageLog
from utils.utcnow import local_day_start, next_local_midnight, utcnow

HOURLY_WINDOW = timedelta(minutes=60)


@dataclass
class BudgetStatus:
    allowed: bool
    calls_last_hour: int
    calls_today: int
    max_per_hour: int
    max_per_day: int
    reason: Optional[str] = None
    retry_at: Optional[datetime] = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.retry_at is not None:
            payload["retry_at"] = self.retry_at.isoformat() + "Z"
        return payload


async def _count_calls_since(session: AsyncSession, user_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count(SignalUsageLog.id)).where(
            and_(SignalUsageLog.user_id == user_id, SignalUsageLog.called_at >= since)
        )
    )
    return int(result.scalar() or 0)


async def _oldest_call_since(session: AsyncSession, user_id: str, since: datetime) -> Optional[datetime]:
    result = await session.execute(
        select(func.min(SignalUsageLog.called_at)).where(
            and_(SignalUsageLog.user_id == user_id, SignalUsageLog.called_at >= since)
        )
    )
    return result.scalar()


async def check_signal_budget(
    session: AsyncSession,
    user_id: str,
    budget: Optional[dict[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> BudgetStatus:
    """Return whether one more signal call fits both the hourly and daily cap.

    Daily exhaustion wins over hourly exhaustion, since waiting an hour would
    not help. Hourly exhaustion defers a full hour from ``now``.
    """
    now = now or utcnow()
    budget = budget or {}
    max_per_hour = max(0, int(budget.get("max_signal_calls_per_hour") or 0))
    max_per_day = max(0, int(budget.get("max_signal_calls_per_day") or 0))
    tz_name = settings.SCAN_DAY_TIMEZONE

    calls_last_hour = await _count_calls_since(session, user_id, now - HOURLY_WINDOW)
    calls_today = await _count_calls_since(session, user_id, local_day_start(now, tz_name))

    status = BudgetStatus(
        allowed=True,
        calls_last_hour=calls_last_hour,
        calls_today=calls_today,
        max_per_hour=max_per_hour,
        max_per_day=max_per_day,
    )
    if calls_today >= max_per_day:
        status.allowed = False
        status.reason = "DAILY_BUDGET_EXHAUSTED"
        status.retry_at = next_local_midnight(now, tz_name)
    elif calls_last_hour >= max_per_hour:
        status.allowed = False
        status.reason = "HOURLY_BUDGET_EXHAUSTED"
        status.retry_at = now + HOURLY_WINDOW
    return status


async def record_signal_call(
    session: AsyncSession,
    user_id: str,
    *,
    scan_job_id: Optional[str] = None,
    snapshot_id: Optional[str] = None,
    success: bool = True,
    candidates_returned: int = 0,
    triggers: Optional[list[str]] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SignalUsageLog:
    """Stage one usage row. Failed calls count against the budget too."""
    row = SignalUsageLog(
        id=uuid.uuid4().hex,
        user_id=user_id,
        scan_job_id=scan_job_id,
        snapshot_id=snapshot_id,
        success=bool(success),
        candidates_returned=int(candidates_returned),
        triggers_json=list(triggers or []),
        error=(error or None) and str(error)[:1000],
        called_at=now or utcnow(),
    )
    session.add(row)
    return row


async def get_budget_status(
    session: AsyncSession,
    user_id: str,
    budget: Optional[dict[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or utcnow()
    status = await check_signal_budget(session, user_id, budget, now=now)
    payload = status.to_payload()
    oldest = await _oldest_call_since(session, user_id, now - HOURLY_WINDOW)
    payload["hour_window_frees_at"] = (oldest + HOURLY_WINDOW).isoformat() + "Z" if oldest else None
    return payload

"""Placed-order ledger and the stateful inputs preflight needs from it."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import MarketSnapshot, TradeHistory
from services.promotion import ORDER_LIMIT_EUR, get_promotion_level
from services.trading_agent.preflight import PreflightContext
from utils.utcnow import local_day_start, utcnow


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return default


def add_trade_record(
    session: AsyncSession,
    *,
    user_id: str,
    execution_id: str,
    proposal_id: str,
    asset: str,
    side: str,
    order_value_eur: float,
    executed_at: datetime,
    quantity: Optional[float] = None,
    price: Optional[float] = None,
    fee_eur: Optional[float] = None,
) -> TradeHistory:
    """Stage a trade row in the caller's transaction."""
    row = TradeHistory(
        id=uuid.uuid4().hex,
        user_id=user_id,
        execution_id=execution_id,
        proposal_id=proposal_id,
        asset=str(asset).upper(),
        side=str(side).lower(),
        order_value_eur=float(order_value_eur),
        quantity=quantity,
        price=price,
        fee_eur=fee_eur,
        executed_at=executed_at,
    )
    session.add(row)
    return row


async def get_trade_for_execution(session: AsyncSession, execution_id: str) -> Optional[TradeHistory]:
    return (
        (await session.execute(select(TradeHistory).where(TradeHistory.execution_id == execution_id)))
        .scalars()
        .first()
    )


async def count_trades_since(session: AsyncSession, user_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count(TradeHistory.id)).where(
            and_(TradeHistory.user_id == user_id, TradeHistory.executed_at >= since)
        )
    )
    return int(result.scalar() or 0)


async def get_position_for_asset(
    session: AsyncSession,
    user_id: str,
    asset: str,
    *,
    exclude_execution_id: Optional[str] = None,
) -> tuple[float, Optional[float]]:
    """Replay priced trades for ``asset`` and return (net quantity, average entry price)."""
    query = (
        select(TradeHistory)
        .where(
            and_(
                TradeHistory.user_id == user_id,
                TradeHistory.asset == str(asset).upper(),
                TradeHistory.quantity.is_not(None),
                TradeHistory.price.is_not(None),
            )
        )
        .order_by(TradeHistory.executed_at.asc())
    )
    if exclude_execution_id:
        query = query.where(TradeHistory.execution_id != exclude_execution_id)
    rows = (await session.execute(query)).scalars().all()

    quantity = 0.0
    average: Optional[float] = None
    for row in rows:
        qty = _safe_float(row.quantity)
        price = _safe_float(row.price)
        if qty <= 0 or price <= 0:
            continue
        if row.side == "buy":
            cost = (average or 0.0) * quantity + price * qty
            quantity += qty
            average = cost / quantity if quantity > 0 else None
        elif row.side == "sell":
            quantity = max(0.0, quantity - qty)
            if quantity == 0:
                average = None
    return quantity, average


async def load_preflight_context(
    session: AsyncSession,
    user_id: str,
    asset: str,
    *,
    trading_enabled: bool,
    now: Optional[datetime] = None,
) -> PreflightContext:
    now = now or utcnow()
    asset_key = str(asset or "").strip().upper()
    day_start = local_day_start(now, settings.SCAN_DAY_TIMEZONE)

    trades_today = await count_trades_since(session, user_id, day_start)
    trades_last_hour = await count_trades_since(session, user_id, now - timedelta(hours=1))

    last_loss_at = (
        await session.execute(
            select(func.max(TradeHistory.executed_at)).where(
                and_(TradeHistory.user_id == user_id, TradeHistory.realized_pnl_eur < 0)
            )
        )
    ).scalar()

    last_trade = (
        (
            await session.execute(
                select(TradeHistory)
                .where(and_(TradeHistory.user_id == user_id, TradeHistory.asset == asset_key))
                .order_by(desc(TradeHistory.executed_at))
                .limit(1)
            )
        )
        .scalars()
        .first()
    )

    daily_pnl = (
        await session.execute(
            select(func.coalesce(func.sum(TradeHistory.realized_pnl_eur), 0)).where(
                and_(TradeHistory.user_id == user_id, TradeHistory.executed_at >= day_start)
            )
        )
    ).scalar()

    buys = (
        await session.execute(
            select(func.coalesce(func.sum(TradeHistory.order_value_eur), 0)).where(
                and_(TradeHistory.user_id == user_id, TradeHistory.side == "buy")
            )
        )
    ).scalar()
    sells = (
        await session.execute(
            select(func.coalesce(func.sum(TradeHistory.order_value_eur), 0)).where(
                and_(TradeHistory.user_id == user_id, TradeHistory.side == "sell")
            )
        )
    ).scalar()

    snapshot = (
        (
            await session.execute(
                select(MarketSnapshot)
                .where(MarketSnapshot.user_id == user_id)
                .order_by(desc(MarketSnapshot.observed_at))
                .limit(1)
            )
        )
        .scalars()
        .first()
    )
    portfolio_value = snapshot.portfolio_value_eur if snapshot is not None else None
    reference_price = None
    if snapshot is not None and isinstance(snapshot.assets_json, dict):
        asset_metrics = snapshot.assets_json.get(asset_key) or {}
        if asset_metrics.get("last_price") is not None:
            reference_price = _safe_float(asset_metrics.get("last_price"))

    position_quantity, average_entry = await get_position_for_asset(session, user_id, asset_key)
    promotion_level = await get_promotion_level(session, user_id)

    return PreflightContext(
        now=now,
        trading_enabled=bool(trading_enabled),
        trades_today=trades_today,
        trades_last_hour=trades_last_hour,
        last_loss_at=last_loss_at,
        last_trade_side=last_trade.side if last_trade is not None else None,
        last_trade_at=last_trade.executed_at if last_trade is not None else None,
        daily_realized_pnl_eur=_safe_float(daily_pnl),
        portfolio_value_eur=portfolio_value,
        open_exposure_eur=max(0.0, _safe_float(buys) - _safe_float(sells)),
        position_quantity=position_quantity,
        average_entry_price=average_entry,
        reference_price=reference_price,
        promotion_level=promotion_level.value,
        promotion_limit_eur=ORDER_LIMIT_EUR[promotion_level],
    )

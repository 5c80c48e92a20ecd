"""Per-user trading kill switch. Deny by default; the row is created on first read."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import ExecutionEvent, UserTradingSettings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("trading_settings")


def _now() -> datetime:
    return utcnow()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def _serialize_settings(row: UserTradingSettings) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "trading_enabled": bool(row.trading_enabled),
        "promotion_level": row.promotion_level or "TRAINING",
        "promoted_at": _to_iso(row.promoted_at),
        "updated_by": row.updated_by,
        "updated_at": _to_iso(row.updated_at),
    }


async def ensure_trading_settings(session: AsyncSession, user_id: str) -> UserTradingSettings:
    row = await session.get(UserTradingSettings, user_id)
    if row is not None:
        return row
    row = UserTradingSettings(
        user_id=user_id,
        trading_enabled=False,
        created_at=_now(),
        updated_at=_now(),
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        # Another request created it first.
        await session.rollback()
        row = await session.get(UserTradingSettings, user_id)
        if row is None:
            raise
        return row
    await session.refresh(row)
    return row


async def get_trading_enabled(session: AsyncSession, user_id: str) -> bool:
    row = await ensure_trading_settings(session, user_id)
    return bool(row.trading_enabled)


async def read_trading_settings(session: AsyncSession, user_id: str) -> dict[str, Any]:
    return _serialize_settings(await ensure_trading_settings(session, user_id))


async def set_trading_enabled(
    session: AsyncSession,
    user_id: str,
    enabled: bool,
    *,
    updated_by: Optional[str] = None,
) -> dict[str, Any]:
    row = await ensure_trading_settings(session, user_id)
    previous = bool(row.trading_enabled)
    row.trading_enabled = bool(enabled)
    row.updated_by = updated_by or user_id
    row.updated_at = _now()
    session.add(
        ExecutionEvent(
            id=uuid.uuid4().hex,
            user_id=user_id,
            event_type="trading_enabled_changed",
            severity="warning" if enabled else "info",
            message=f"Trading {'enabled' if enabled else 'disabled'}",
            payload_json={"previous": previous, "enabled": bool(enabled)},
            created_at=_now(),
        )
    )
    await session.commit()
    await session.refresh(row)
    logger.info(
        "Trading kill switch updated",
        user_id=user_id,
        trading_enabled=bool(enabled),
        previous=previous,
    )
    return _serialize_settings(row)

"""DB-backed policy store. Exactly one active policy per user, never hard-deleted."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AgentPolicy
from services.trading_agent.policy_schema import normalize_policy_config, policy_hash
from services.trading_agent.presets import get_preset, list_presets
from services.trading_errors import Conflict, NotFound, ValidationError
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("policy_store")


def _now() -> datetime:
    return utcnow()


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def _serialize_policy(row: AgentPolicy) -> dict[str, Any]:
    config = row.config_json or {}
    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "preset_id": row.preset_id,
        "is_active": bool(row.is_active),
        "version": int(row.version or 1),
        "policy_hash": policy_hash(config),
        "config": config,
        "created_at": _to_iso(row.created_at),
        "updated_at": _to_iso(row.updated_at),
    }


def _normalize_name(name: Any) -> str:
    text = str(name or "").strip()
    if not text:
        raise ValidationError("Policy name is required", reasons=["REQUIRED:name"])
    return text[:120]


def list_policy_presets() -> list[dict[str, Any]]:
    presets = []
    for preset in list_presets():
        presets.append(
            {
                "id": preset["id"],
                "name": preset["name"],
                "description": preset.get("description"),
                "config": normalize_policy_config(preset["config"]),
            }
        )
    return presets


async def _get_owned_row(session: AsyncSession, user_id: str, policy_id: str) -> AgentPolicy:
    row = await session.get(AgentPolicy, policy_id)
    if row is None or row.user_id != user_id:
        raise NotFound("Policy not found", code="POLICY_NOT_FOUND")
    return row


async def list_policies(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    rows = (
        (
            await session.execute(
                select(AgentPolicy)
                .where(AgentPolicy.user_id == user_id)
                .order_by(AgentPolicy.created_at.desc())
            )
        )
        .scalars()
        .all()
    )
    return [_serialize_policy(row) for row in rows]


async def get_policy(session: AsyncSession, user_id: str, policy_id: str) -> Optional[dict[str, Any]]:
    row = await session.get(AgentPolicy, policy_id)
    if row is None or row.user_id != user_id:
        return None
    return _serialize_policy(row)


async def get_active_policy(session: AsyncSession, user_id: str) -> Optional[dict[str, Any]]:
    row = (
        (
            await session.execute(
                select(AgentPolicy).where(
                    and_(AgentPolicy.user_id == user_id, AgentPolicy.is_active.is_(True))
                )
            )
        )
        .scalars()
        .first()
    )
    return _serialize_policy(row) if row else None


async def create_policy(
    session: AsyncSession,
    user_id: str,
    *,
    name: str,
    config: Optional[dict[str, Any]] = None,
    preset_id: Optional[str] = None,
    activate: bool = False,
) -> dict[str, Any]:
    normalized = normalize_policy_config(config or {})
    row = AgentPolicy(
        id=_new_id(),
        user_id=user_id,
        name=_normalize_name(name),
        preset_id=preset_id,
        is_active=False,
        version=1,
        config_json=normalized,
        created_at=_now(),
        updated_at=_now(),
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info("Policy created", user_id=user_id, policy_id=row.id, preset_id=preset_id)

    if activate:
        return await activate_policy(session, user_id, row.id)
    return _serialize_policy(row)


async def create_policy_from_preset(
    session: AsyncSession,
    user_id: str,
    preset_id: str,
    *,
    name: Optional[str] = None,
    overrides: Optional[dict[str, Any]] = None,
    activate: bool = True,
) -> dict[str, Any]:
    preset = get_preset(preset_id)
    if preset is None:
        raise ValidationError("Unknown policy preset", reasons=[f"UNKNOWN_PRESET:{preset_id}"])

    config = normalize_policy_config(preset["config"])
    if overrides:
        config = normalize_policy_config(overrides, base=config)
    return await create_policy(
        session,
        user_id,
        name=name or preset["name"],
        config=config,
        preset_id=preset["id"],
        activate=activate,
    )


async def update_policy(
    session: AsyncSession,
    user_id: str,
    policy_id: str,
    *,
    name: Optional[str] = None,
    config: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    row = await _get_owned_row(session, user_id, policy_id)
    if name is not None:
        row.name = _normalize_name(name)
    if config:
        row.config_json = normalize_policy_config(config, base=row.config_json or {})
    row.version = int(row.version or 1) + 1
    row.updated_at = _now()
    await session.commit()
    await session.refresh(row)

    if row.is_active:
        from services.scan_scheduler import ensure_scan_job

        await ensure_scan_job(
            session,
            user_id,
            interval_minutes=int((row.config_json or {}).get("scan", {}).get("interval_minutes") or 60),
        )
    logger.info("Policy updated", user_id=user_id, policy_id=policy_id, version=row.version)
    return _serialize_policy(row)


async def activate_policy(session: AsyncSession, user_id: str, policy_id: str) -> dict[str, Any]:
    """Activate ``policy_id`` and deactivate every other policy of the user atomically."""
    row = await _get_owned_row(session, user_id, policy_id)
    now = _now()
    try:
        await session.execute(
            update(AgentPolicy)
            .where(
                and_(
                    AgentPolicy.user_id == user_id,
                    AgentPolicy.id != policy_id,
                    AgentPolicy.is_active.is_(True),
                )
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        row.is_active = True
        row.updated_at = now
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise Conflict("Another policy activation is in progress", code="ACTIVATION_CONFLICT") from exc
    await session.refresh(row)

    from services.scan_scheduler import ensure_scan_job

    await ensure_scan_job(
        session,
        user_id,
        interval_minutes=int((row.config_json or {}).get("scan", {}).get("interval_minutes") or 60),
    )
    logger.info("Policy activated", user_id=user_id, policy_id=policy_id)
    return _serialize_policy(row)


async def deactivate_policy(session: AsyncSession, user_id: str, policy_id: str) -> dict[str, Any]:
    row = await _get_owned_row(session, user_id, policy_id)
    row.is_active = False
    row.updated_at = _now()
    await session.commit()
    await session.refresh(row)
    logger.info("Policy deactivated", user_id=user_id, policy_id=policy_id)
    return _serialize_policy(row)

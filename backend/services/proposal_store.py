"""Proposal lifecycle ledger.

Every transition is a compare-and-set on the current status, so double
accepts and decisions on expired proposals are rejected instead of silently
applied. Accept, Modify and Decline each write one immutable TradeAction row
in the same transaction as the status change.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import ActionType, ProposalStatus, TradeAction, TradeProposal
from services.trade_history import load_preflight_context
from services.trading_agent.policy_schema import normalize_market
from services.trading_agent.preflight import evaluate_preflight
from services.trading_agent.presets import ALLOWED_CONFIDENCE_LEVELS
from services.trading_errors import Conflict, NotFound, ProposalExpired, ValidationError
from services.trading_settings import get_trading_enabled
from utils.logger import proposal_logger as logger
from utils.utcnow import utcnow

VALID_SIDES = {"buy", "sell"}
VALID_ORDER_TYPES = {"limit", "market"}
VALID_CREATORS = {"AI", "USER"}
MODIFIABLE_FIELDS = ("asset", "side", "order_value_eur", "confidence")
RATIONALE_KEYS = ("why", "whyNot", "nextTrigger", "riskNotes")


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


def proposal_ttl() -> timedelta:
    return timedelta(minutes=int(settings.PROPOSAL_TTL_MINUTES))


def is_expired(row: TradeProposal, now: datetime) -> bool:
    return row.expires_at is not None and row.expires_at < now


def _serialize_proposal(row: TradeProposal) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "policy_id": row.policy_id,
        "scan_job_id": row.scan_job_id,
        "snapshot_id": row.snapshot_id,
        "status": row.status,
        "asset": row.asset,
        "side": row.side,
        "order_type": row.order_type,
        "order_value_eur": row.order_value_eur,
        "limit_price": row.limit_price,
        "confidence": int(row.confidence),
        "rationale": row.rationale_json or {},
        "preflight": row.preflight_json or {},
        "created_by": row.created_by,
        "expires_at": _to_iso(row.expires_at),
        "decided_at": _to_iso(row.decided_at),
        "created_at": _to_iso(row.created_at),
        "updated_at": _to_iso(row.updated_at),
    }


def _serialize_action(row: TradeAction) -> dict[str, Any]:
    return {
        "id": row.id,
        "proposal_id": row.proposal_id,
        "action": row.action,
        "from_status": row.from_status,
        "to_status": row.to_status,
        "note": row.note,
        "changes": row.changes_json or {},
        "created_at": _to_iso(row.created_at),
    }


def _normalize_rationale(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return {"why": value}
    if not isinstance(value, dict):
        raise ValidationError("Rationale must be an object", reasons=["INVALID_FIELD:rationale"])
    return {key: value[key] for key in RATIONALE_KEYS if value.get(key) is not None}


def validate_proposal_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Normalize a candidate or user-entered proposal; raise on any malformed field."""
    errors: list[str] = []

    asset = normalize_market(payload.get("asset"))
    if not asset:
        errors.append("REQUIRED:asset")

    side = str(payload.get("side") or "").strip().lower()
    if side not in VALID_SIDES:
        errors.append("INVALID_ENUM:side")

    order_type = str(payload.get("order_type") or "market").strip().lower()
    if order_type not in VALID_ORDER_TYPES:
        errors.append("INVALID_ENUM:order_type")

    order_value: Optional[float] = None
    raw_value = payload.get("order_value_eur")
    if isinstance(raw_value, bool):
        errors.append("INVALID_NUMBER:order_value_eur")
    else:
        try:
            order_value = float(raw_value)
        except (TypeError, ValueError):
            errors.append("INVALID_NUMBER:order_value_eur")
        else:
            if order_value <= 0 or order_value != order_value:
                errors.append("NOT_POSITIVE:order_value_eur")

    confidence: Optional[int] = None
    raw_confidence = payload.get("confidence")
    try:
        confidence = int(raw_confidence)
        if isinstance(raw_confidence, bool) or float(raw_confidence) != confidence:
            raise ValueError
    except (TypeError, ValueError):
        errors.append("INVALID_INTEGER:confidence")
        confidence = None
    if confidence is not None and confidence not in ALLOWED_CONFIDENCE_LEVELS:
        errors.append("INVALID_CONFIDENCE_LEVEL:confidence")

    limit_price: Optional[float] = None
    if payload.get("limit_price") is not None:
        try:
            limit_price = float(payload["limit_price"])
            if limit_price <= 0:
                errors.append("NOT_POSITIVE:limit_price")
        except (TypeError, ValueError):
            errors.append("INVALID_NUMBER:limit_price")
    if order_type == "limit" and limit_price is None and "INVALID_NUMBER:limit_price" not in errors:
        errors.append("REQUIRED:limit_price")

    rationale: dict[str, Any] = {}
    try:
        rationale = _normalize_rationale(payload.get("rationale"))
    except ValidationError as exc:
        errors.extend(exc.reasons)

    if errors:
        raise ValidationError("Invalid proposal", reasons=errors)

    return {
        "asset": asset,
        "side": side,
        "order_type": order_type,
        "order_value_eur": order_value,
        "limit_price": limit_price,
        "confidence": confidence,
        "rationale": rationale,
    }


async def run_soft_preflight(
    session: AsyncSession,
    user_id: str,
    proposal: dict[str, Any],
    policy: Optional[dict[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Preflight for display only. Never blocks creation or modification."""
    now = now or _now()
    if policy is None:
        return {
            "passed": False,
            "reasons": ["NO_ACTIVE_POLICY"],
            "checks": [],
            "evaluated_at": _to_iso(now),
        }
    context = await load_preflight_context(
        session,
        user_id,
        proposal["asset"],
        trading_enabled=await get_trading_enabled(session, user_id),
        now=now,
    )
    result = evaluate_preflight(
        proposal=proposal,
        policy_config=policy.get("config") or {},
        context=context,
        anti_flip_minutes=settings.ANTI_FLIP_MINUTES,
        default_max_trades_per_hour=settings.DEFAULT_MAX_TRADES_PER_HOUR,
    )
    payload = result.to_payload()
    payload["policy_id"] = policy.get("id")
    payload["policy_version"] = policy.get("version")
    payload["evaluated_at"] = _to_iso(now)
    return payload


async def create_proposal(
    session: AsyncSession,
    user_id: str,
    payload: dict[str, Any],
    *,
    created_by: str = "AI",
    policy: Optional[dict[str, Any]] = None,
    scan_job_id: Optional[str] = None,
    snapshot_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    creator = str(created_by or "AI").strip().upper()
    if creator not in VALID_CREATORS:
        raise ValidationError("Invalid proposal creator", reasons=["INVALID_ENUM:created_by"])
    normalized = validate_proposal_payload(payload)
    now = now or _now()
    preflight = await run_soft_preflight(session, user_id, normalized, policy, now=now)

    row = TradeProposal(
        id=_new_id(),
        user_id=user_id,
        policy_id=policy.get("id") if policy else None,
        scan_job_id=scan_job_id,
        snapshot_id=snapshot_id,
        status=ProposalStatus.PROPOSED.value,
        asset=normalized["asset"],
        side=normalized["side"],
        order_type=normalized["order_type"],
        order_value_eur=normalized["order_value_eur"],
        limit_price=normalized["limit_price"],
        confidence=normalized["confidence"],
        rationale_json=normalized["rationale"],
        preflight_json=preflight,
        created_by=creator,
        expires_at=now + proposal_ttl(),
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info(
        "Proposal created",
        user_id=user_id,
        proposal_id=row.id,
        asset=row.asset,
        side=row.side,
        created_by=creator,
        preflight_passed=bool(preflight.get("passed")),
    )
    return _serialize_proposal(row)


async def list_proposals(
    session: AsyncSession,
    user_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(TradeProposal).where(TradeProposal.user_id == user_id)
    if status:
        status_key = str(status).strip().upper()
        if status_key not in {item.value for item in ProposalStatus}:
            raise ValidationError("Unknown proposal status", reasons=[f"INVALID_ENUM:status:{status}"])
        query = query.where(TradeProposal.status == status_key)
    query = query.order_by(TradeProposal.created_at.desc()).limit(max(1, min(int(limit), 500)))
    rows = (await session.execute(query.execution_options(populate_existing=True))).scalars().all()
    return [_serialize_proposal(row) for row in rows]


async def get_proposal_row(session: AsyncSession, user_id: str, proposal_id: str) -> Optional[TradeProposal]:
    row = await session.get(TradeProposal, proposal_id, populate_existing=True)
    if row is None or row.user_id != user_id:
        return None
    return row


async def get_proposal(session: AsyncSession, user_id: str, proposal_id: str) -> Optional[dict[str, Any]]:
    row = await get_proposal_row(session, user_id, proposal_id)
    return _serialize_proposal(row) if row else None


async def list_proposal_actions(session: AsyncSession, user_id: str, proposal_id: str) -> list[dict[str, Any]]:
    rows = (
        (
            await session.execute(
                select(TradeAction)
                .where(and_(TradeAction.proposal_id == proposal_id, TradeAction.user_id == user_id))
                .order_by(TradeAction.created_at.asc())
            )
        )
        .scalars()
        .all()
    )
    return [_serialize_action(row) for row in rows]


async def expire_stale_proposals(
    session: AsyncSession,
    user_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> int:
    now = now or _now()
    conditions = [
        TradeProposal.status == ProposalStatus.PROPOSED.value,
        TradeProposal.expires_at < now,
    ]
    if user_id is not None:
        conditions.append(TradeProposal.user_id == user_id)
    result = await session.execute(
        update(TradeProposal)
        .where(and_(*conditions))
        .values(status=ProposalStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    expired = int(result.rowcount or 0)
    if expired:
        logger.info("Expired stale proposals", user_id=user_id, count=expired)
    return expired


async def _reject_transition(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    expected: str,
    now: datetime,
) -> None:
    """Explain why a compare-and-set transition matched no row, then raise."""
    await session.rollback()
    row = await get_proposal_row(session, user_id, proposal_id)
    if row is None:
        raise NotFound("Proposal not found", code="PROPOSAL_NOT_FOUND")
    await session.refresh(row)
    if row.status == expected and is_expired(row, now):
        if row.status == ProposalStatus.PROPOSED.value:
            row.status = ProposalStatus.EXPIRED.value
            row.updated_at = now
            await session.commit()
        raise ProposalExpired("Proposal has expired", details={"proposal_id": proposal_id})
    raise Conflict(
        f"Proposal is {row.status}, expected {expected}",
        code="INVALID_STATUS",
        details={"proposal_id": proposal_id, "status": row.status},
    )


async def _decide(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    *,
    action: ActionType,
    to_status: ProposalStatus,
    note: Optional[str] = None,
    values: Optional[dict[str, Any]] = None,
    changes: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or _now()
    expected = ProposalStatus.PROPOSED.value
    result = await session.execute(
        update(TradeProposal)
        .where(
            and_(
                TradeProposal.id == proposal_id,
                TradeProposal.user_id == user_id,
                TradeProposal.status == expected,
                TradeProposal.expires_at >= now,
            )
        )
        .values(status=to_status.value, decided_at=now, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await _reject_transition(session, user_id, proposal_id, expected, now)

    session.add(
        TradeAction(
            id=_new_id(),
            proposal_id=proposal_id,
            user_id=user_id,
            action=action.value,
            from_status=expected,
            to_status=to_status.value,
            note=note,
            changes_json=changes or {},
            created_at=now,
        )
    )
    await session.commit()

    row = await get_proposal_row(session, user_id, proposal_id)
    await session.refresh(row)
    logger.info(
        "Proposal decided",
        user_id=user_id,
        proposal_id=proposal_id,
        action=action.value,
        status=to_status.value,
    )
    return _serialize_proposal(row)


async def accept_proposal(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    *,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    return await _decide(
        session,
        user_id,
        proposal_id,
        action=ActionType.ACCEPT,
        to_status=ProposalStatus.APPROVED,
        note=note,
        now=now,
    )


async def decline_proposal(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    *,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    return await _decide(
        session,
        user_id,
        proposal_id,
        action=ActionType.DECLINE,
        to_status=ProposalStatus.DECLINED,
        note=note,
        now=now,
    )


async def modify_proposal(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    changes: dict[str, Any],
    *,
    policy: Optional[dict[str, Any]] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Rewrite order fields and approve in one step.

    The changed proposal is re-checked against ``policy`` (the user's active
    policy at modification time); the result is stored, not enforced.
    """
    unknown = sorted(set(changes or {}) - set(MODIFIABLE_FIELDS))
    if unknown:
        raise ValidationError(
            "Only asset, side, order_value_eur and confidence can be modified",
            reasons=[f"NOT_MODIFIABLE:{key}" for key in unknown],
        )
    if not changes:
        raise ValidationError("No changes supplied", reasons=["REQUIRED:changes"])

    row = await get_proposal_row(session, user_id, proposal_id)
    if row is None:
        raise NotFound("Proposal not found", code="PROPOSAL_NOT_FOUND")

    before = {key: getattr(row, key) for key in MODIFIABLE_FIELDS}
    merged = validate_proposal_payload(
        {
            "asset": row.asset,
            "side": row.side,
            "order_type": row.order_type,
            "order_value_eur": row.order_value_eur,
            "limit_price": row.limit_price,
            "confidence": row.confidence,
            "rationale": row.rationale_json,
            **changes,
        }
    )
    after = {key: merged[key] for key in MODIFIABLE_FIELDS}
    now = now or _now()
    preflight = await run_soft_preflight(session, user_id, merged, policy, now=now)

    return await _decide(
        session,
        user_id,
        proposal_id,
        action=ActionType.MODIFY,
        to_status=ProposalStatus.APPROVED,
        note=note,
        values={**after, "preflight_json": preflight},
        changes={"before": before, "after": after, "preflight": preflight},
        now=now,
    )


async def settle_proposal(
    session: AsyncSession,
    proposal_id: str,
    to_status: ProposalStatus,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Stage APPROVED -> EXECUTED/FAILED in the caller's transaction."""
    now = now or _now()
    result = await session.execute(
        update(TradeProposal)
        .where(
            and_(
                TradeProposal.id == proposal_id,
                TradeProposal.status == ProposalStatus.APPROVED.value,
            )
        )
        .values(status=to_status.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1

"""Execution rows, their audit events and the bookkeeping shared by execute and reconcile.

Helpers here only stage changes; callers own the transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import ExecutionEvent, ExecutionStatus, ProposalStatus, TradeExecution
from services.exchange.base import ExchangeOrder
from services.proposal_store import settle_proposal
from services.trade_history import add_trade_record, get_position_for_asset, get_trade_for_execution
from utils.logger import execution_logger as logger
from utils.retry import HARD
from utils.utcnow import utcnow

TERMINAL_STATUSES = {ExecutionStatus.FILLED.value, ExecutionStatus.FAILED.value}
ORDER_BEARING_STATUSES = {ExecutionStatus.SUBMITTED.value, ExecutionStatus.FILLED.value}


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def client_order_id_for(execution_id: str) -> str:
    """Deterministic, so every retry and reconcile looks up the same id."""
    return f"{settings.CLIENT_ORDER_ID_PREFIX}-{execution_id.replace('-', '')[:20]}"


def serialize_execution(row: TradeExecution) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "proposal_id": row.proposal_id,
        "status": row.status,
        "client_order_id": row.client_order_id,
        "exchange_order_id": row.exchange_order_id,
        "market": row.market,
        "side": row.side,
        "order_type": row.order_type,
        "order_value_eur": row.order_value_eur,
        "filled_quantity": row.filled_quantity,
        "average_price": row.average_price,
        "fee_eur": row.fee_eur,
        "preflight_passed": bool(row.preflight_passed),
        "preflight": row.preflight_json or {},
        "policy_id": row.policy_id,
        "policy_hash": row.policy_hash,
        "reconcile_attempts": int(row.reconcile_attempts or 0),
        "last_error": row.last_error,
        "error_class": row.error_class,
        "submitting_at": _to_iso(row.submitting_at),
        "submitted_at": _to_iso(row.submitted_at),
        "filled_at": _to_iso(row.filled_at),
        "failed_at": _to_iso(row.failed_at),
        "last_reconciled_at": _to_iso(row.last_reconciled_at),
        "created_at": _to_iso(row.created_at),
        "updated_at": _to_iso(row.updated_at),
    }


def log_execution_event(
    session: AsyncSession,
    *,
    user_id: str,
    event_type: str,
    message: str,
    proposal_id: Optional[str] = None,
    execution_id: Optional[str] = None,
    severity: str = "info",
    payload: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ExecutionEvent:
    row = ExecutionEvent(
        id=uuid.uuid4().hex,
        user_id=user_id,
        proposal_id=proposal_id,
        execution_id=execution_id,
        event_type=event_type,
        severity=severity,
        message=message,
        payload_json=payload or {},
        created_at=now or utcnow(),
    )
    session.add(row)
    return row


async def get_execution_for_proposal(session: AsyncSession, proposal_id: str) -> Optional[TradeExecution]:
    row = (
        (await session.execute(select(TradeExecution).where(TradeExecution.proposal_id == proposal_id)))
        .scalars()
        .first()
    )
    if row is not None:
        await session.refresh(row)
    return row


async def list_executions(
    session: AsyncSession,
    user_id: str,
    *,
    proposal_id: Optional[str] = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(TradeExecution).where(TradeExecution.user_id == user_id)
    if proposal_id:
        query = query.where(TradeExecution.proposal_id == proposal_id)
    query = query.order_by(TradeExecution.created_at.desc()).limit(max(1, min(int(limit), 500)))
    rows = (await session.execute(query)).scalars().all()
    return [serialize_execution(row) for row in rows]


def fee_in_quote(order: ExchangeOrder) -> Optional[float]:
    if not order.fee_paid:
        return 0.0 if order.is_filled else None
    currency = (order.fee_currency or settings.EXCHANGE_QUOTE_CURRENCY).upper()
    if currency == settings.EXCHANGE_QUOTE_CURRENCY.upper():
        return float(order.fee_paid)
    price = order.average_price
    return float(order.fee_paid) * float(price) if price else None


async def _apply_fill(
    session: AsyncSession,
    execution: TradeExecution,
    order: ExchangeOrder,
    now: datetime,
) -> None:
    """Copy fill data onto the execution and its trade row; book pnl on sells."""
    execution.filled_quantity = order.filled_amount or None
    execution.average_price = order.average_price
    execution.fee_eur = fee_in_quote(order)
    if order.is_filled:
        execution.status = ExecutionStatus.FILLED.value
        execution.filled_at = execution.filled_at or now

    trade = await get_trade_for_execution(session, execution.id)
    if trade is None:
        return
    trade.quantity = execution.filled_quantity
    trade.price = execution.average_price
    trade.fee_eur = execution.fee_eur
    if order.filled_amount_quote:
        trade.order_value_eur = float(order.filled_amount_quote)
    if trade.side == "sell" and trade.quantity and trade.price:
        _, entry = await get_position_for_asset(
            session, execution.user_id, trade.asset, exclude_execution_id=execution.id
        )
        if entry is not None:
            trade.realized_pnl_eur = round(
                (float(trade.price) - entry) * float(trade.quantity) - float(trade.fee_eur or 0.0), 8
            )


async def record_order_outcome(
    session: AsyncSession,
    execution: TradeExecution,
    order: ExchangeOrder,
    *,
    decision_path: str,
    now: datetime,
) -> None:
    """Adopt an exchange order (placed now or found by reconciliation)."""
    from_status = execution.status
    execution.exchange_order_id = order.order_id
    execution.status = ExecutionStatus.SUBMITTED.value
    execution.submitted_at = execution.submitted_at or now
    execution.last_error = None
    execution.error_class = None
    execution.updated_at = now

    if await get_trade_for_execution(session, execution.id) is None:
        add_trade_record(
            session,
            user_id=execution.user_id,
            execution_id=execution.id,
            proposal_id=execution.proposal_id,
            asset=execution.market,
            side=execution.side,
            order_value_eur=float(execution.order_value_eur or 0.0),
            executed_at=order.created_at or now,
        )
        await session.flush()
    await _apply_fill(session, execution, order, now)

    await settle_proposal(session, execution.proposal_id, ProposalStatus.EXECUTED, now=now)
    log_execution_event(
        session,
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        event_type="order_recorded",
        message=f"{from_status} -> {execution.status}",
        payload={
            "decision_path": decision_path,
            "client_order_id": execution.client_order_id,
            "exchange_order_id": order.order_id,
            "order_status": order.status,
        },
        now=now,
    )
    logger.info(
        "Order recorded",
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        exchange_order_id=order.order_id,
        status=execution.status,
        decision_path=decision_path,
    )


async def fail_execution(
    session: AsyncSession,
    execution: TradeExecution,
    *,
    error: str,
    decision_path: str,
    now: datetime,
    error_class: str = HARD,
) -> None:
    from_status = execution.status
    execution.status = ExecutionStatus.FAILED.value
    execution.last_error = str(error)[:2000]
    execution.error_class = error_class
    execution.failed_at = now
    execution.updated_at = now
    await settle_proposal(session, execution.proposal_id, ProposalStatus.FAILED, now=now)
    log_execution_event(
        session,
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        event_type="execution_failed",
        severity="error",
        message=f"{from_status} -> FAILED",
        payload={"decision_path": decision_path, "error": str(error)[:500], "error_class": error_class},
        now=now,
    )
    logger.error(
        "Execution failed",
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        decision_path=decision_path,
        error=str(error),
    )


async def note_reconcile_attempt(
    session: AsyncSession,
    execution: TradeExecution,
    *,
    error: Optional[str],
    now: datetime,
) -> bool:
    """Count one inconclusive reconcile; escalate to FAILED at the attempt cap."""
    execution.reconcile_attempts = int(execution.reconcile_attempts or 0) + 1
    execution.last_reconciled_at = now
    execution.updated_at = now
    if error:
        execution.last_error = str(error)[:2000]
    if execution.reconcile_attempts >= int(settings.MAX_RECONCILE_ATTEMPTS):
        await fail_execution(
            session,
            execution,
            error=error or "order not found after maximum reconcile attempts",
            decision_path="RECONCILE_ESCALATED",
            now=now,
        )
        return True
    log_execution_event(
        session,
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        event_type="reconcile_attempt",
        severity="warning",
        message=f"Reconcile attempt {execution.reconcile_attempts} inconclusive",
        payload={"error": error, "attempt": execution.reconcile_attempts},
        now=now,
    )
    return False

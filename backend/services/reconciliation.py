"""Resolve ambiguous placements by looking up the deterministic clientOrderId.

A lookup that finds the order adopts it. A lookup that errors is never read
as "not found". Sweeps only adopt or escalate; they never place orders.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import ExecutionStatus, TradeExecution
from services.exchange.base import ExchangeGateway
from services.execution_ledger import (
    fail_execution,
    log_execution_event,
    note_reconcile_attempt,
    record_order_outcome,
)
from utils.logger import execution_logger as logger
from utils.utcnow import utcnow

FOUND = "found_on_exchange"
NOT_FOUND = "not_found_on_exchange"
LOOKUP_FAILED = "lookup_failed"
ESCALATED = "escalated"
ALREADY_RECONCILED = "already_reconciled"


async def reconcile_execution(
    session: AsyncSession,
    execution: TradeExecution,
    gateway: ExchangeGateway,
    *,
    now: Optional[datetime] = None,
    count_miss: bool = True,
    count_errors: bool = True,
) -> dict[str, Any]:
    """Look the execution up on the exchange and commit the outcome.

    ``count_miss`` makes a confirmed absence count toward escalation; the
    execute path turns it off because absence there means "safe to place".
    ``count_errors`` does the same for failed lookups. The execute path turns
    it off too: an unreachable venue leaves the row untouched and only the
    stale-SUBMITTING sweep counts and escalates.
    """
    now = now or utcnow()
    if execution.exchange_order_id:
        return {"state": ALREADY_RECONCILED, "order": None}

    log = logger.with_context(
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        client_order_id=execution.client_order_id,
    )
    try:
        order = await gateway.find_by_client_order_id(execution.client_order_id, market=execution.market)
    except Exception as exc:
        if not count_errors:
            log.warning("Reconcile lookup failed", error=str(exc), attempts=execution.reconcile_attempts)
            return {"state": LOOKUP_FAILED, "order": None, "error": str(exc)}
        escalated = await note_reconcile_attempt(session, execution, error=f"lookup failed: {exc}", now=now)
        await session.commit()
        log.warning("Reconcile lookup failed", error=str(exc), attempts=execution.reconcile_attempts)
        return {"state": ESCALATED if escalated else LOOKUP_FAILED, "order": None, "error": str(exc)}

    if order is not None:
        execution.last_reconciled_at = now
        await record_order_outcome(session, execution, order, decision_path="RECONCILE_FOUND", now=now)
        await session.commit()
        log.info("Reconcile adopted existing order", exchange_order_id=order.order_id)
        return {"state": FOUND, "order": order}

    if count_miss:
        escalated = await note_reconcile_attempt(session, execution, error=None, now=now)
        await session.commit()
        if escalated:
            log.error("Order never appeared on exchange, escalated", attempts=execution.reconcile_attempts)
            return {"state": ESCALATED, "order": None}
    else:
        execution.last_reconciled_at = now
        log_execution_event(
            session,
            user_id=execution.user_id,
            proposal_id=execution.proposal_id,
            execution_id=execution.id,
            event_type="reconcile_not_found",
            message="No order carries this clientOrderId",
            payload={"client_order_id": execution.client_order_id},
            now=now,
        )
        await session.commit()
    log.info("Reconcile found no order", attempts=execution.reconcile_attempts)
    return {"state": NOT_FOUND, "order": None}


async def reconcile_stale_submitting(
    session: AsyncSession,
    gateway: ExchangeGateway,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> dict[str, int]:
    """Sweep SUBMITTING (and abandoned CLAIMED) rows older than the in-flight TTL."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=int(settings.SUBMITTING_TTL_SECONDS))
    rows = (
        (
            await session.execute(
                select(TradeExecution)
                .where(
                    or_(
                        and_(
                            TradeExecution.status == ExecutionStatus.SUBMITTING.value,
                            TradeExecution.submitting_at < cutoff,
                        ),
                        and_(
                            TradeExecution.status == ExecutionStatus.CLAIMED.value,
                            TradeExecution.created_at < cutoff,
                        ),
                    )
                )
                .order_by(TradeExecution.updated_at.asc())
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    summary = {"checked": 0, FOUND: 0, NOT_FOUND: 0, LOOKUP_FAILED: 0, ESCALATED: 0}
    for execution in rows:
        await session.refresh(execution)
        summary["checked"] += 1
        result = await reconcile_execution(session, execution, gateway, now=now, count_miss=True)
        summary[result["state"]] = summary.get(result["state"], 0) + 1
    if summary["checked"]:
        logger.info("Reconcile sweep finished", **summary)
    return summary


async def sync_open_executions(
    session: AsyncSession,
    gateway: ExchangeGateway,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
) -> dict[str, int]:
    """Poll SUBMITTED orders; closed ones become FILLED, cancelled empty ones FAILED.

    A cancelled order was still placed, so its proposal keeps EXECUTED; only the
    execution row records that nothing filled.
    """
    now = now or utcnow()
    rows = (
        (
            await session.execute(
                select(TradeExecution)
                .where(
                    and_(
                        TradeExecution.status == ExecutionStatus.SUBMITTED.value,
                        TradeExecution.exchange_order_id.is_not(None),
                    )
                )
                .order_by(TradeExecution.updated_at.asc())
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    summary = {"checked": 0, "filled": 0, "cancelled": 0, "open": 0, "errors": 0}
    for execution in rows:
        summary["checked"] += 1
        try:
            order = await gateway.get_order(execution.market, execution.exchange_order_id)
        except Exception as exc:
            summary["errors"] += 1
            logger.warning(
                "Order status poll failed",
                execution_id=execution.id,
                exchange_order_id=execution.exchange_order_id,
                error=str(exc),
            )
            continue
        if order is None or order.is_open:
            summary["open"] += 1
            continue

        if order.is_filled or (order.is_dead and order.filled_amount > 0):
            order.status = "filled"
            await record_order_outcome(session, execution, order, decision_path="SYNC_FILLED", now=now)
            summary["filled"] += 1
        elif order.is_dead:
            # settle_proposal only moves APPROVED proposals; EXECUTED stays as is.
            await fail_execution(
                session,
                execution,
                error=f"order {order.status} without fill",
                decision_path="SYNC_CANCELLED",
                now=now,
            )
            summary["cancelled"] += 1
        else:
            summary["open"] += 1
        await session.commit()
    if summary["checked"]:
        logger.info("Open order sync finished", **summary)
    return summary

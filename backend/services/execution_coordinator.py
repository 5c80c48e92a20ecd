"""Turns one APPROVED proposal into at most one exchange order.

The unique ``proposal_id`` on ``trade_executions`` is the idempotency key:
a second concurrent claim fails at insert time, before any exchange call.
SUBMITTING is committed before the network call, so a crash or lost response
leaves a row that the next attempt reconciles by clientOrderId instead of
placing blind.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import ExecutionStatus, ProposalStatus, TradeExecution, TradeProposal
from services.exchange.base import ExchangeGateway
from services.execution_ledger import (
    client_order_id_for,
    fail_execution,
    get_execution_for_proposal,
    log_execution_event,
    record_order_outcome,
    serialize_execution,
)
from services.policy_store import get_active_policy
from services.proposal_store import get_proposal_row, is_expired
from services.reconciliation import FOUND, LOOKUP_FAILED, reconcile_execution
from services.trade_history import load_preflight_context
from services.trading_agent.policy_schema import policy_hash
from services.trading_agent.preflight import TRADING_DISABLED, evaluate_preflight
from services.trading_errors import (
    AuthDenied,
    Conflict,
    ExchangeRejected,
    ExchangeTransient,
    ExchangeUnknownOutcome,
    ExecutionInProgress,
    NotFound,
    PolicyViolation,
    ProposalExpired,
    TradingError,
    ValidationError,
)
from services.trading_settings import get_trading_enabled
from utils.logger import execution_logger
from utils.retry import HARD, SOFT, classify_exchange_error
from utils.utcnow import utcnow


def _now() -> datetime:
    return utcnow()


def _classify(exc: Exception) -> str:
    if isinstance(exc, TradingError):
        return HARD
    return classify_exchange_error(exc)


def _result(
    execution: TradeExecution,
    *,
    state: str,
    message: str,
    reconciled: bool = False,
) -> dict[str, Any]:
    return {
        "success": True,
        "state": state,
        "message": message,
        "reconciled": reconciled,
        "proposal_id": execution.proposal_id,
        "execution_id": execution.id,
        "client_order_id": execution.client_order_id,
        "exchange_order_id": execution.exchange_order_id,
        "status": execution.status,
        "execution": serialize_execution(execution),
    }


async def _reject(
    session: AsyncSession,
    error: TradingError,
    *,
    user_id: str,
    proposal_id: str,
    execution_id: Optional[str] = None,
    now: datetime,
) -> TradingError:
    """Audit a rejection and hand the error back for raising."""
    log_execution_event(
        session,
        user_id=user_id,
        proposal_id=proposal_id,
        execution_id=execution_id,
        event_type="execution_rejected",
        severity="warning",
        message=error.message,
        payload={"code": error.code, "reasons": error.reasons},
        now=now,
    )
    await session.commit()
    execution_logger.warning(
        "Execution rejected",
        user_id=user_id,
        proposal_id=proposal_id,
        execution_id=execution_id,
        code=error.code,
        reasons=error.reasons,
    )
    return error


async def _order_size(
    proposal: TradeProposal,
    gateway: ExchangeGateway,
    reference_price: Optional[float],
) -> dict[str, Optional[float]]:
    value = float(proposal.order_value_eur)
    if proposal.order_type == "limit":
        price = float(proposal.limit_price)
        return {"amount": value / price, "amount_quote": None, "price": price}
    if proposal.side == "buy":
        return {"amount": None, "amount_quote": value, "price": None}
    price = reference_price or await gateway.fetch_ticker(proposal.asset)
    if not price:
        raise ValidationError("No price available to size the sell order", reasons=["PRICE_UNAVAILABLE"])
    return {"amount": value / float(price), "amount_quote": None, "price": None}


async def _claim(
    session: AsyncSession,
    proposal: TradeProposal,
    policy: dict[str, Any],
    preflight: dict[str, Any],
    now: datetime,
) -> TradeExecution:
    execution_id = uuid.uuid4().hex
    config = policy.get("config") or {}
    row = TradeExecution(
        id=execution_id,
        user_id=proposal.user_id,
        proposal_id=proposal.id,
        status=ExecutionStatus.CLAIMED.value,
        client_order_id=client_order_id_for(execution_id),
        market=proposal.asset,
        side=proposal.side,
        order_type=proposal.order_type,
        order_value_eur=proposal.order_value_eur,
        preflight_passed=True,
        preflight_json=preflight,
        policy_id=policy.get("id"),
        policy_snapshot_json=config,
        policy_hash=policy_hash(config),
        reconcile_attempts=0,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise Conflict(
            "Another execution for this proposal already exists",
            code="DUPLICATE_EXECUTION",
            details={"proposal_id": proposal.id},
        ) from exc
    return row


async def _mark_submitting(session: AsyncSession, execution: TradeExecution, now: datetime) -> bool:
    """CAS into SUBMITTING from the status this attempt observed."""
    conditions = [TradeExecution.id == execution.id, TradeExecution.status == execution.status]
    if execution.submitting_at is None:
        conditions.append(TradeExecution.submitting_at.is_(None))
    else:
        conditions.append(TradeExecution.submitting_at == execution.submitting_at)
    result = await session.execute(
        update(TradeExecution)
        .where(and_(*conditions))
        .values(status=ExecutionStatus.SUBMITTING.value, submitting_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    log_execution_event(
        session,
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        event_type="submitting",
        message=f"{execution.status} -> SUBMITTING",
        payload={"client_order_id": execution.client_order_id},
        now=now,
    )
    await session.commit()
    if (result.rowcount or 0) != 1:
        return False
    await session.refresh(execution)
    return True


async def _place(
    session: AsyncSession,
    execution: TradeExecution,
    proposal: TradeProposal,
    gateway: ExchangeGateway,
    reference_price: Optional[float],
    now: datetime,
) -> dict[str, Any]:
    log = execution_logger.with_context(
        user_id=execution.user_id,
        proposal_id=execution.proposal_id,
        execution_id=execution.id,
        client_order_id=execution.client_order_id,
    )
    try:
        size = await _order_size(proposal, gateway, reference_price)
    except Exception as exc:
        # Nothing was sent; release the in-flight marker for a later retry.
        execution.status = ExecutionStatus.CLAIMED.value
        execution.submitting_at = None
        execution.last_error = str(exc)[:2000]
        execution.updated_at = _now()
        await session.commit()
        if isinstance(exc, TradingError):
            raise
        raise ExchangeTransient(f"Could not size order: {exc}") from exc

    if not await _mark_submitting(session, execution, now):
        raise ExecutionInProgress(
            "Another attempt is already submitting this order",
            details={"execution_id": execution.id},
        )

    started = _now()
    try:
        order = await gateway.place_order(
            client_order_id=execution.client_order_id,
            market=proposal.asset,
            side=proposal.side,
            order_type=proposal.order_type,
            **size,
        )
    except Exception as exc:
        error_class = _classify(exc)
        error = str(exc) or exc.__class__.__name__
        done = _now()
        if error_class == HARD:
            await fail_execution(session, execution, error=error, decision_path="PLACE_ORDER_HARD_FAIL", now=done)
            await session.commit()
            raise ExchangeRejected(
                f"Exchange rejected the order: {error}",
                details={"execution_id": execution.id},
            ) from exc

        execution.last_error = error[:2000]
        execution.error_class = SOFT
        execution.updated_at = done
        log_execution_event(
            session,
            user_id=execution.user_id,
            proposal_id=execution.proposal_id,
            execution_id=execution.id,
            event_type="place_order_soft_fail",
            severity="warning",
            message="SUBMITTING kept for reconciliation",
            payload={"error": error[:500], "error_class": SOFT},
            now=done,
        )
        await session.commit()
        log.warning("Order placement outcome unknown", error=error)
        if isinstance(exc, httpx.HTTPStatusError):
            raise ExchangeTransient(
                f"Exchange temporarily unavailable: {error}",
                details={"execution_id": execution.id},
            ) from exc
        raise ExchangeUnknownOutcome(
            "Order outcome unknown; the next attempt will reconcile first",
            details={"execution_id": execution.id},
        ) from exc

    latency_ms = int((_now() - started).total_seconds() * 1000)
    await record_order_outcome(session, execution, order, decision_path="PLACE_ORDER_SUCCESS", now=_now())
    await session.commit()
    log.info("Order submitted", exchange_order_id=order.order_id, latency_ms=latency_ms)
    return _result(execution, state="submitted", message="Order submitted")


async def execute_proposal(
    session: AsyncSession,
    user_id: str,
    proposal_id: str,
    *,
    gateway: Optional[ExchangeGateway] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Execute an approved proposal; safe to call any number of times concurrently."""
    now = now or _now()

    if not await get_trading_enabled(session, user_id):
        raise await _reject(
            session,
            AuthDenied("Trading is disabled for this user", code=TRADING_DISABLED, reasons=[TRADING_DISABLED]),
            user_id=user_id,
            proposal_id=proposal_id,
            now=now,
        )

    proposal = await get_proposal_row(session, user_id, proposal_id)
    if proposal is None:
        raise NotFound("Proposal not found", code="PROPOSAL_NOT_FOUND")
    await session.refresh(proposal)

    if proposal.status == ProposalStatus.EXECUTED.value:
        existing = await get_execution_for_proposal(session, proposal_id)
        raise Conflict(
            "This proposal was already executed",
            code="ALREADY_EXECUTED",
            details={"exchange_order_id": existing.exchange_order_id if existing else None},
        )
    if proposal.status != ProposalStatus.APPROVED.value:
        raise await _reject(
            session,
            Conflict(f"Proposal must be APPROVED; current status: {proposal.status}", code="INVALID_STATUS"),
            user_id=user_id,
            proposal_id=proposal_id,
            now=now,
        )
    if is_expired(proposal, now):
        raise await _reject(
            session,
            ProposalExpired("Proposal has expired", details={"expires_at": proposal.expires_at.isoformat() + "Z"}),
            user_id=user_id,
            proposal_id=proposal_id,
            now=now,
        )

    policy = await get_active_policy(session, user_id)
    if policy is None:
        raise await _reject(
            session,
            AuthDenied("No active policy", code="NO_ACTIVE_POLICY", reasons=["NO_ACTIVE_POLICY"]),
            user_id=user_id,
            proposal_id=proposal_id,
            now=now,
        )

    proposal_payload = {
        "asset": proposal.asset,
        "side": proposal.side,
        "order_value_eur": proposal.order_value_eur,
        "confidence": proposal.confidence,
        "limit_price": proposal.limit_price,
    }
    context = await load_preflight_context(session, user_id, proposal.asset, trading_enabled=True, now=now)
    preflight = evaluate_preflight(
        proposal=proposal_payload,
        policy_config=policy.get("config") or {},
        context=context,
        anti_flip_minutes=settings.ANTI_FLIP_MINUTES,
        default_max_trades_per_hour=settings.DEFAULT_MAX_TRADES_PER_HOUR,
    )
    preflight_payload = preflight.to_payload()
    preflight_payload["policy_id"] = policy.get("id")
    preflight_payload["policy_hash"] = policy.get("policy_hash")
    if not preflight.passed:
        raise await _reject(
            session,
            PolicyViolation(
                f"Pre-flight check failed: {', '.join(preflight.reasons)}",
                reasons=preflight.reasons,
                details={"preflight": preflight_payload},
            ),
            user_id=user_id,
            proposal_id=proposal_id,
            now=now,
        )

    if gateway is None:
        from services.exchange import get_trading_gateway

        gateway = get_trading_gateway()

    execution = await get_execution_for_proposal(session, proposal_id)
    if execution is None:
        execution = await _claim(session, proposal, policy, preflight_payload, now)
        execution_logger.info(
            "Execution claimed",
            user_id=user_id,
            proposal_id=proposal_id,
            execution_id=execution.id,
            client_order_id=execution.client_order_id,
        )
        return await _place(session, execution, proposal, gateway, context.reference_price, now)

    if execution.status in (ExecutionStatus.SUBMITTED.value, ExecutionStatus.FILLED.value):
        raise Conflict(
            "This proposal was already executed",
            code="ALREADY_EXECUTED",
            details={"execution_id": execution.id, "exchange_order_id": execution.exchange_order_id},
        )
    if execution.status == ExecutionStatus.FAILED.value:
        raise Conflict(
            "Execution already failed",
            code="INVALID_STATUS",
            details={"execution_id": execution.id, "last_error": execution.last_error},
        )
    # A young CLAIMED or SUBMITTING row belongs to an attempt that may still be running.
    in_flight_since = None
    if execution.status == ExecutionStatus.SUBMITTING.value:
        in_flight_since = execution.submitting_at
    elif execution.status == ExecutionStatus.CLAIMED.value:
        in_flight_since = execution.updated_at or execution.created_at
    if in_flight_since is not None and now - in_flight_since < timedelta(seconds=int(settings.SUBMITTING_TTL_SECONDS)):
        raise ExecutionInProgress(
            "Execution in progress; retry shortly",
            details={"execution_id": execution.id},
        )

    # Lookups here never count toward escalation; the stale-SUBMITTING sweep owns that.
    outcome = await reconcile_execution(
        session, execution, gateway, now=now, count_miss=False, count_errors=False
    )
    if outcome["state"] == FOUND:
        return _result(execution, state="reconciled", message="Order found via reconciliation", reconciled=True)
    if outcome["state"] == LOOKUP_FAILED:
        raise ExchangeTransient(
            "Exchange unreachable during reconciliation; retry later",
            details={"execution_id": execution.id},
        )
    return await _place(session, execution, proposal, gateway, context.reference_price, now)

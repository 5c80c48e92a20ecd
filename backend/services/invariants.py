"""Read-only audit of the execution ledger.

Run after every worker pass and on demand from the maintenance route. A
non-empty result never repairs anything; it only reports what needs a human.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AgentPolicy, ExecutionStatus, ProposalStatus, TradeExecution, TradeProposal
from services.execution_ledger import ORDER_BEARING_STATUSES
from services.trading_agent.presets import ALLOWED_CONFIDENCE_LEVELS
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("invariants")


def _scoped(query, column, user_id: Optional[str]):
    if user_id:
        return query.where(column == user_id)
    return query


async def check_execution_invariants(
    session: AsyncSession,
    user_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or utcnow()
    violations: list[dict[str, Any]] = []

    duplicates = await session.execute(
        _scoped(
            select(TradeExecution.proposal_id, func.count(TradeExecution.id))
            .group_by(TradeExecution.proposal_id)
            .having(func.count(TradeExecution.id) > 1),
            TradeExecution.user_id,
            user_id,
        )
    )
    for proposal_id, count in duplicates.all():
        violations.append({"rule": "duplicate_execution", "proposal_id": proposal_id, "count": int(count)})

    # Twice the in-flight TTL gives the sweep one full pass to act first.
    stale_cutoff = now - timedelta(seconds=2 * int(settings.SUBMITTING_TTL_SECONDS))
    stale = await session.execute(
        _scoped(
            select(TradeExecution.id, TradeExecution.proposal_id).where(
                and_(
                    TradeExecution.status == ExecutionStatus.SUBMITTING.value,
                    TradeExecution.submitting_at < stale_cutoff,
                )
            ),
            TradeExecution.user_id,
            user_id,
        )
    )
    for execution_id, proposal_id in stale.all():
        violations.append({"rule": "stale_submitting", "execution_id": execution_id, "proposal_id": proposal_id})

    orphaned = await session.execute(
        _scoped(
            select(TradeExecution.id, TradeExecution.status).where(
                and_(
                    TradeExecution.status.in_(sorted(ORDER_BEARING_STATUSES)),
                    TradeExecution.exchange_order_id.is_(None),
                )
            ),
            TradeExecution.user_id,
            user_id,
        )
    )
    for execution_id, status in orphaned.all():
        violations.append({"rule": "missing_exchange_order_id", "execution_id": execution_id, "status": status})

    no_coid = await session.execute(
        _scoped(
            select(TradeExecution.id).where(
                or_(TradeExecution.client_order_id.is_(None), TradeExecution.client_order_id == "")
            ),
            TradeExecution.user_id,
            user_id,
        )
    )
    for (execution_id,) in no_coid.all():
        violations.append({"rule": "missing_client_order_id", "execution_id": execution_id})

    executed_without_row = await session.execute(
        _scoped(
            select(TradeProposal.id)
            .outerjoin(TradeExecution, TradeExecution.proposal_id == TradeProposal.id)
            .where(
                and_(
                    TradeProposal.status == ProposalStatus.EXECUTED.value,
                    TradeExecution.id.is_(None),
                )
            ),
            TradeProposal.user_id,
            user_id,
        )
    )
    for (proposal_id,) in executed_without_row.all():
        violations.append({"rule": "executed_without_execution", "proposal_id": proposal_id})

    active = await session.execute(
        _scoped(
            select(AgentPolicy.user_id, func.count(AgentPolicy.id))
            .where(AgentPolicy.is_active.is_(True))
            .group_by(AgentPolicy.user_id)
            .having(func.count(AgentPolicy.id) > 1),
            AgentPolicy.user_id,
            user_id,
        )
    )
    for owner, count in active.all():
        violations.append({"rule": "multiple_active_policies", "user_id": owner, "count": int(count)})

    bad_confidence = await session.execute(
        _scoped(
            select(TradeProposal.id, TradeProposal.confidence).where(
                TradeProposal.confidence.not_in(list(ALLOWED_CONFIDENCE_LEVELS))
            ),
            TradeProposal.user_id,
            user_id,
        )
    )
    for proposal_id, confidence in bad_confidence.all():
        violations.append({"rule": "invalid_confidence", "proposal_id": proposal_id, "confidence": confidence})

    if violations:
        logger.error("Execution invariants violated", user_id=user_id, violations=violations)
    return {"ok": not violations, "checked_at": now.isoformat() + "Z", "violations": violations}

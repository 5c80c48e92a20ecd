import sys
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import (
    Base,
    ExecutionEvent,
    PromotionLevel,
    TradeExecution,
    TradeProposal,
    UserTradingSettings,
)
from services.execution_ledger import client_order_id_for
from services.promotion import (
    ExecutionMetrics,
    compute_execution_metrics,
    evaluate_promotion,
    get_promotion_status,
    order_limit_for,
    promote_if_eligible,
    run_promotion_sweep,
)
from services.trading_settings import ensure_trading_settings


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "promotion.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


_PROPOSAL_STATUS = {
    "SUBMITTED": "EXECUTED",
    "FILLED": "EXECUTED",
    "FAILED": "FAILED",
    "SUBMITTING": "APPROVED",
    "CLAIMED": "APPROVED",
}


async def _seed_executions(
    session: AsyncSession,
    now,
    count: int,
    *,
    status: str = "FILLED",
    user_id: str = "user-1",
    reconciled: bool = False,
) -> None:
    for _ in range(count):
        proposal_id = uuid.uuid4().hex
        execution_id = uuid.uuid4().hex
        session.add(
            TradeProposal(
                id=proposal_id,
                user_id=user_id,
                status=_PROPOSAL_STATUS[status],
                asset="BTC-EUR",
                side="buy",
                order_type="market",
                order_value_eur=25.0,
                confidence=75,
                created_by="USER",
                expires_at=now + timedelta(minutes=30),
                created_at=now - timedelta(hours=1),
                updated_at=now - timedelta(hours=1),
            )
        )
        session.add(
            TradeExecution(
                id=execution_id,
                user_id=user_id,
                proposal_id=proposal_id,
                status=status,
                client_order_id=client_order_id_for(execution_id),
                market="BTC-EUR",
                side="buy",
                order_type="market",
                order_value_eur=25.0,
                preflight_passed=True,
                reconcile_attempts=1 if reconciled else 0,
                last_reconciled_at=now - timedelta(minutes=5) if reconciled else None,
                created_at=now - timedelta(hours=1),
                updated_at=now - timedelta(hours=1),
            )
        )
    await session.commit()


def test_levels_map_to_order_ceilings():
    assert order_limit_for("TRAINING") == 25.0
    assert order_limit_for("validated") == 100.0
    assert order_limit_for("PRODUCTION") == 500.0
    assert order_limit_for("MATURE") is None
    # Unknown or missing values fall back to the most restrictive level.
    assert order_limit_for(None) == 25.0
    assert order_limit_for("bogus") == 25.0


def test_evaluation_reports_the_first_unmet_requirement():
    too_few = evaluate_promotion(PromotionLevel.TRAINING, ExecutionMetrics(total_executions=99, successful=99))
    assert too_few["eligible"] is False
    assert too_few["next_level"] == "VALIDATED"
    assert "Need 100 executions" in too_few["reason"]

    unreliable = evaluate_promotion(
        PromotionLevel.TRAINING, ExecutionMetrics(total_executions=100, successful=97, failed=3)
    )
    assert unreliable["eligible"] is False
    assert unreliable["reason"].startswith("Success rate 97.0%")

    fragile = evaluate_promotion(
        PromotionLevel.TRAINING, ExecutionMetrics(total_executions=100, successful=100, recovered=6)
    )
    assert fragile["eligible"] is False
    assert fragile["reason"].startswith("Recovery rate 6.0%")

    ready = evaluate_promotion(
        PromotionLevel.TRAINING, ExecutionMetrics(total_executions=100, successful=98, failed=2, recovered=5)
    )
    assert ready["eligible"] is True
    assert ready["new_limit_eur"] == 100.0


def test_mature_is_terminal():
    result = evaluate_promotion(PromotionLevel.MATURE, ExecutionMetrics(total_executions=5000, successful=5000))

    assert result["eligible"] is False
    assert result["next_level"] is None


@pytest.mark.asyncio
async def test_metrics_count_settled_executions_only(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await _seed_executions(session, now, 3, status="FILLED")
            await _seed_executions(session, now, 1, status="SUBMITTED", reconciled=True)
            await _seed_executions(session, now, 1, status="FAILED")
            await _seed_executions(session, now, 2, status="SUBMITTING")
            await _seed_executions(session, now, 1, status="CLAIMED")
            await _seed_executions(session, now, 4, status="FILLED", user_id="user-2")

            metrics = await compute_execution_metrics(session, "user-1")

        assert metrics.total_executions == 5
        assert metrics.successful == 4
        assert metrics.failed == 1
        assert metrics.recovered == 1
        assert metrics.to_payload()["success_rate"] == 0.8
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_new_user_starts_in_training(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            status = await get_promotion_status(session, "user-1")

        assert status["current_level"] == "TRAINING"
        assert status["order_limit_eur"] == 25.0
        assert status["metrics"]["total_executions"] == 0
        assert status["eligible"] is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_promotion_moves_one_level_and_records_an_event(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            # Enough history for PRODUCTION, but promotion still climbs one step.
            await _seed_executions(session, now, 500, status="FILLED")

            first = await promote_if_eligible(session, "user-1", now=now)
            assert first["promoted"] is True
            assert first["current_level"] == "TRAINING"
            assert first["next_level"] == "VALIDATED"

            row = await session.get(UserTradingSettings, "user-1", populate_existing=True)
            assert row.promotion_level == "VALIDATED"
            assert row.promoted_at == now

            status = await get_promotion_status(session, "user-1")
            assert status["order_limit_eur"] == 100.0
            assert status["next_level"] == "PRODUCTION"

            events = (
                (await session.execute(select(ExecutionEvent).where(ExecutionEvent.event_type == "promotion")))
                .scalars()
                .all()
            )
            assert len(events) == 1
            assert events[0].payload_json["from_level"] == "TRAINING"
            assert events[0].payload_json["to_level"] == "VALIDATED"
            assert events[0].payload_json["new_limit_eur"] == 100.0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failures_hold_the_level(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await _seed_executions(session, now, 95, status="FILLED")
            await _seed_executions(session, now, 5, status="FAILED")

            outcome = await promote_if_eligible(session, "user-1", now=now)

            assert outcome["promoted"] is False
            assert outcome["reason"].startswith("Success rate 95.0%")
            row = await session.get(UserTradingSettings, "user-1", populate_existing=True)
            assert row.promotion_level == "TRAINING"
            assert row.promoted_at is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_sweep_checks_every_non_mature_user(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await ensure_trading_settings(session, "ready")
            await ensure_trading_settings(session, "new")
            mature = await ensure_trading_settings(session, "mature")
            mature.promotion_level = "MATURE"
            await session.commit()
            await _seed_executions(session, now, 100, status="FILLED", user_id="ready")

            summary = await run_promotion_sweep(session, now=now)
            assert summary == {"checked": 2, "promoted": 1}

            again = await run_promotion_sweep(session, now=now + timedelta(minutes=1))
            assert again == {"checked": 2, "promoted": 0}
    finally:
        await engine.dispose()

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base
from services.budget_tracker import check_signal_budget, get_budget_status, record_signal_call

NOON = datetime(2026, 3, 10, 12, 0, 0)
BUDGET = {"max_signal_calls_per_hour": 5, "max_signal_calls_per_day": 8}


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "budget_tracker.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


async def _seed_calls(session: AsyncSession, user_id: str, times: list[datetime]) -> None:
    for called_at in times:
        await record_signal_call(session, user_id, success=True, now=called_at)
    await session.commit()


@pytest.mark.asyncio
async def test_fifth_call_in_hour_allowed_sixth_deferred_one_hour(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await _seed_calls(session, "user-1", [NOON - timedelta(minutes=m) for m in (50, 40, 30, 20)])

            fifth = await check_signal_budget(session, "user-1", BUDGET, now=NOON)
            assert fifth.allowed is True
            assert fifth.calls_last_hour == 4

            await _seed_calls(session, "user-1", [NOON])
            sixth = await check_signal_budget(session, "user-1", BUDGET, now=NOON)
            assert sixth.allowed is False
            assert sixth.reason == "HOURLY_BUDGET_EXHAUSTED"
            assert sixth.retry_at == NOON + timedelta(hours=1)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_calls_leave_the_hour_window(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await _seed_calls(session, "user-1", [NOON - timedelta(minutes=m) for m in (61, 59, 58, 57, 56)])

            status = await check_signal_budget(session, "user-1", BUDGET, now=NOON)
            assert status.allowed is True
            assert status.calls_last_hour == 4
            assert status.calls_today == 5

            payload = await get_budget_status(session, "user-1", BUDGET, now=NOON)
            assert payload["hour_window_frees_at"] == "2026-03-10T12:01:00Z"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_daily_exhaustion_defers_to_next_midnight(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await _seed_calls(session, "user-1", [NOON - timedelta(hours=h) for h in range(2, 10)])
            # Yesterday's calls never count toward today.
            await _seed_calls(session, "user-1", [NOON - timedelta(hours=14)])

            status = await check_signal_budget(session, "user-1", BUDGET, now=NOON)
            assert status.calls_today == 8
            assert status.allowed is False
            assert status.reason == "DAILY_BUDGET_EXHAUSTED"
            assert status.retry_at == datetime(2026, 3, 11, 0, 0, 0)

            other = await check_signal_budget(session, "user-2", BUDGET, now=NOON)
            assert other.allowed is True
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_zero_budget_never_allows_a_call(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            status = await check_signal_budget(session, "user-1", {}, now=NOON)
            assert status.allowed is False
    finally:
        await engine.dispose()

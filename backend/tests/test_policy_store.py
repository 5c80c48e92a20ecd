import sys
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AgentPolicy, Base, ScanJob
from services import policy_store
from services.trading_errors import NotFound, ValidationError
from services.trading_settings import get_trading_enabled, read_trading_settings, set_trading_enabled


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "policy_store.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


@pytest.mark.asyncio
async def test_activation_is_exclusive_per_user(tmp_path, policy_config):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            first = await policy_store.create_policy(session, "user-1", name="First", config=policy_config, activate=True)
            second = await policy_store.create_policy(session, "user-1", name="Second", config=policy_config)
            other_user = await policy_store.create_policy(session, "user-2", name="Theirs", activate=True)

            activated = await policy_store.activate_policy(session, "user-1", second["id"])
            assert activated["is_active"] is True

            rows = (
                (await session.execute(select(AgentPolicy).where(AgentPolicy.is_active.is_(True))))
                .scalars()
                .all()
            )
            active_by_user = {row.user_id: row.id for row in rows}
            assert len(rows) == 2
            assert active_by_user == {"user-1": second["id"], "user-2": other_user["id"]}

            active = await policy_store.get_active_policy(session, "user-1")
            assert active["id"] == second["id"]
            assert (await policy_store.get_policy(session, "user-1", first["id"]))["is_active"] is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_activation_creates_scan_job_with_policy_interval(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            policy = await policy_store.create_policy_from_preset(session, "user-1", "hunter")
            assert policy["is_active"] is True
            assert policy["preset_id"] == "hunter"

            job = (await session.execute(select(ScanJob).where(ScanJob.user_id == "user-1"))).scalars().one()
            assert job.interval_minutes == 60

            await policy_store.update_policy(
                session, "user-1", policy["id"], config={"scan": {"interval_minutes": 15}}
            )
            await session.refresh(job)
            assert job.interval_minutes == 15
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_bumps_version_and_keeps_other_fields(tmp_path, policy_config):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            created = await policy_store.create_policy(session, "user-1", name="Mine", config=policy_config)
            updated = await policy_store.update_policy(
                session, "user-1", created["id"], config={"risk": {"max_order_value_eur": 45.0}}
            )

            assert updated["version"] == 2
            assert updated["config"]["risk"]["max_order_value_eur"] == 45.0
            assert updated["config"]["assets"]["allowlist"] == ["BTC-EUR", "ETH-EUR"]
            assert updated["policy_hash"] != created["policy_hash"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_deactivate_never_deletes(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            created = await policy_store.create_policy_from_preset(session, "user-1", "observer")
            await policy_store.deactivate_policy(session, "user-1", created["id"])

            assert await policy_store.get_active_policy(session, "user-1") is None
            policies = await policy_store.list_policies(session, "user-1")
            assert [policy["id"] for policy in policies] == [created["id"]]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_policies_are_scoped_to_owner(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            created = await policy_store.create_policy(session, "user-1", name="Mine")

            assert await policy_store.get_policy(session, "user-2", created["id"]) is None
            with pytest.raises(NotFound):
                await policy_store.activate_policy(session, "user-2", created["id"])
            with pytest.raises(ValidationError):
                await policy_store.create_policy_from_preset(session, "user-1", "degen")
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_kill_switch_defaults_to_disabled(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            assert await get_trading_enabled(session, "user-1") is False

            enabled = await set_trading_enabled(session, "user-1", True)
            assert enabled["trading_enabled"] is True
            assert (await read_trading_settings(session, "user-2"))["trading_enabled"] is False
    finally:
        await engine.dispose()

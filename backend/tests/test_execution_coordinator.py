import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings
from models.database import (
    Base,
    ExecutionEvent,
    TradeExecution,
    TradeHistory,
    TradeProposal,
    UserTradingSettings,
)
from services import policy_store, proposal_store
from services.exchange.base import ExchangeGateway, ExchangeOrder
from services.execution_coordinator import execute_proposal
from services.trading_errors import (
    AuthDenied,
    Conflict,
    ExchangeRejected,
    ExchangeTransient,
    ExchangeUnknownOutcome,
    ExecutionInProgress,
    PolicyViolation,
    ProposalExpired,
    TradingError,
)
from services.trading_settings import ensure_trading_settings, set_trading_enabled


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "execution.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


class _FakeGateway(ExchangeGateway):
    """In-memory venue keyed by clientOrderId."""

    read_only = False

    def __init__(self, *, place_error: Optional[Exception] = None, record_before_error: bool = False):
        self.orders: dict[str, ExchangeOrder] = {}
        self.place_calls = 0
        self.lookups = 0
        self.place_error = place_error
        self.record_before_error = record_before_error
        self.lookup_error: Optional[Exception] = None

    async def fetch_accounts(self):
        return {}

    async def fetch_balances(self):
        return []

    async def fetch_positions(self):
        return []

    async def fetch_orders(self, market=None, *, limit=100):
        return list(self.orders.values())

    async def fetch_transactions(self, *, limit=100):
        return []

    async def fetch_candles(self, market, *, interval="1h", limit=25):
        return []

    async def fetch_ticker(self, market):
        return 60000.0

    async def get_order(self, market, order_id):
        for order in self.orders.values():
            if order.order_id == order_id:
                return order
        return None

    async def find_by_client_order_id(self, client_order_id, *, market=None):
        self.lookups += 1
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.orders.get(client_order_id)

    async def place_order(
        self,
        *,
        client_order_id,
        market,
        side,
        order_type,
        amount=None,
        amount_quote=None,
        price=None,
    ):
        self.ensure_can_trade()
        self.place_calls += 1
        # Yield so concurrent attempts interleave around the network call.
        await asyncio.sleep(0.01)
        order = ExchangeOrder(
            order_id=f"ex-{len(self.orders) + 1}",
            market=market,
            side=side,
            order_type=order_type,
            status="new",
            client_order_id=client_order_id,
            amount=amount,
            amount_quote=amount_quote,
            price=price,
        )
        if self.place_error is not None:
            if self.record_before_error:
                self.orders[client_order_id] = order
            raise self.place_error
        self.orders[client_order_id] = order
        return order

    async def cancel_order(self, market, order_id):
        return None


async def _approved_proposal(
    session_factory, policy_config, btc_buy, now, *, enable_trading=True, promotion_level="VALIDATED"
) -> str:
    async with session_factory() as session:
        policy = await policy_store.create_policy(
            session, "user-1", name="Mine", config=policy_config, activate=True
        )
        if enable_trading:
            await set_trading_enabled(session, "user-1", True)
        settings_row = await ensure_trading_settings(session, "user-1")
        settings_row.promotion_level = promotion_level
        await session.commit()
        proposal = await proposal_store.create_proposal(
            session, "user-1", btc_buy, created_by="USER", policy=policy, now=now
        )
        await proposal_store.accept_proposal(session, "user-1", proposal["id"], now=now)
        return proposal["id"]


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://exchange.test/v2/order")
    response = httpx.Response(status_code, request=request, json={"error": "rejected"})
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


async def _count(session_factory, column) -> int:
    async with session_factory() as session:
        return int((await session.execute(select(func.count(column)))).scalar() or 0)


@pytest.mark.asyncio
async def test_execute_submits_one_order_and_marks_proposal_executed(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            result = await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)

        assert result["success"] is True
        assert result["state"] == "submitted"
        assert result["status"] == "SUBMITTED"
        assert result["exchange_order_id"] == "ex-1"
        assert result["client_order_id"] == f"IV-{result['execution_id'][:20]}"
        assert gateway.orders[result["client_order_id"]].amount_quote == 40.0

        async with session_factory() as session:
            proposal = await session.get(TradeProposal, proposal_id)
            assert proposal.status == "EXECUTED"
            trade = (await session.execute(select(TradeHistory))).scalars().one()
            assert trade.execution_id == result["execution_id"]

            with pytest.raises(Conflict) as exc_info:
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
            assert exc_info.value.code == "ALREADY_EXECUTED"
        assert gateway.place_calls == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_ten_concurrent_executes_place_exactly_one_order(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async def _attempt():
            async with session_factory() as session:
                try:
                    return await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
                except TradingError as exc:
                    return exc

        results = await asyncio.gather(*[_attempt() for _ in range(10)])

        assert gateway.place_calls == 1
        assert await _count(session_factory, TradeExecution.id) == 1
        successes = [item for item in results if isinstance(item, dict)]
        assert successes
        assert all(item["success"] for item in successes)
        assert len({item["execution_id"] for item in successes}) == 1
        for item in results:
            if not isinstance(item, dict):
                assert isinstance(item, (Conflict, ExecutionInProgress))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_lost_response_is_reconciled_instead_of_placed_again(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway(place_error=httpx.ReadTimeout("read timed out"), record_before_error=True)
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            with pytest.raises(ExchangeUnknownOutcome):
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)

        async with session_factory() as session:
            row = (await session.execute(select(TradeExecution))).scalars().one()
            assert row.status == "SUBMITTING"
            assert row.error_class == "SOFT"
            assert row.exchange_order_id is None

        # Still inside the in-flight window: refuse rather than guess.
        async with session_factory() as session:
            with pytest.raises(ExecutionInProgress):
                await execute_proposal(
                    session, "user-1", proposal_id, gateway=gateway, now=now + timedelta(seconds=5)
                )

        async with session_factory() as session:
            result = await execute_proposal(
                session, "user-1", proposal_id, gateway=gateway, now=now + timedelta(seconds=60)
            )

        assert result["reconciled"] is True
        assert result["state"] == "reconciled"
        assert result["status"] == "SUBMITTED"
        assert result["exchange_order_id"] == "ex-1"
        assert gateway.place_calls == 1
        assert await _count(session_factory, TradeExecution.id) == 1

        async with session_factory() as session:
            proposal = await session.get(TradeProposal, proposal_id)
            assert proposal.status == "EXECUTED"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unreachable_venue_stays_retryable_across_execute_attempts(
    tmp_path, policy_config, btc_buy, now, monkeypatch
):
    monkeypatch.setattr(settings, "MAX_RECONCILE_ATTEMPTS", 3)
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway(place_error=httpx.ReadTimeout("read timed out"), record_before_error=True)
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            with pytest.raises(ExchangeUnknownOutcome):
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
        assert len(gateway.orders) == 1

        gateway.lookup_error = httpx.ConnectError("connection refused")
        for attempt in range(1, 5):
            async with session_factory() as session:
                with pytest.raises(ExchangeTransient) as exc_info:
                    await execute_proposal(
                        session, "user-1", proposal_id, gateway=gateway, now=now + timedelta(minutes=attempt)
                    )
                assert exc_info.value.retryable is True

        async with session_factory() as session:
            execution = (await session.execute(select(TradeExecution))).scalars().one()
            proposal = await session.get(TradeProposal, proposal_id)
            assert execution.status == "SUBMITTING"
            assert execution.reconcile_attempts == 0
            assert proposal.status == "APPROVED"

        # Once the venue answers again the live order is adopted, not placed twice.
        gateway.lookup_error = None
        async with session_factory() as session:
            result = await execute_proposal(
                session, "user-1", proposal_id, gateway=gateway, now=now + timedelta(minutes=10)
            )
        assert result["reconciled"] is True
        assert result["exchange_order_id"] == "ex-1"
        assert gateway.place_calls == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_hard_rejection_fails_execution_and_proposal(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway(place_error=_http_error(400))
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            with pytest.raises(ExchangeRejected):
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)

        async with session_factory() as session:
            execution = (await session.execute(select(TradeExecution))).scalars().one()
            proposal = await session.get(TradeProposal, proposal_id)
            assert execution.status == "FAILED"
            assert execution.error_class == "HARD"
            assert proposal.status == "FAILED"

            with pytest.raises(Conflict):
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
        assert gateway.place_calls == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_expired_approved_proposal_is_refused(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            with pytest.raises(ProposalExpired) as exc_info:
                await execute_proposal(
                    session, "user-1", proposal_id, gateway=gateway, now=now + timedelta(minutes=61)
                )
            assert exc_info.value.status_code == 409
            assert exc_info.value.code == "PROPOSAL_EXPIRED"

        assert gateway.place_calls == 0
        assert await _count(session_factory, TradeExecution.id) == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_kill_switch_off_rejects_without_touching_exchange(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(
            session_factory, policy_config, btc_buy, now, enable_trading=False
        )

        async with session_factory() as session:
            with pytest.raises(AuthDenied) as exc_info:
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
            assert exc_info.value.code == "TRADING_DISABLED"

            events = (
                (await session.execute(select(ExecutionEvent).where(ExecutionEvent.event_type == "execution_rejected")))
                .scalars()
                .all()
            )
            assert len(events) == 1
        assert gateway.place_calls == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_hard_preflight_uses_current_active_policy(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(session_factory, policy_config, btc_buy, now)

        async with session_factory() as session:
            await policy_store.create_policy_from_preset(session, "user-1", "observer", activate=True)
            with pytest.raises(PolicyViolation) as exc_info:
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
            assert exc_info.value.status_code == 422
            assert "DAILY_TRADE_CAP_REACHED" in exc_info.value.reasons

        assert gateway.place_calls == 0
        async with session_factory() as session:
            proposal = await session.get(TradeProposal, proposal_id)
            assert proposal.status == "APPROVED"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_training_level_caps_order_value_before_claim(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        proposal_id = await _approved_proposal(
            session_factory, policy_config, btc_buy, now, promotion_level="TRAINING"
        )

        async with session_factory() as session:
            with pytest.raises(PolicyViolation) as exc_info:
                await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
            assert exc_info.value.reasons == ["ORDER_VALUE_ABOVE_PROMOTION_LIMIT"]

        assert gateway.place_calls == 0
        assert await _count(session_factory, TradeExecution.id) == 0
        async with session_factory() as session:
            proposal = await session.get(TradeProposal, proposal_id)
            assert proposal.status == "APPROVED"

            settings_row = await session.get(UserTradingSettings, "user-1")
            settings_row.promotion_level = "VALIDATED"
            await session.commit()

            result = await execute_proposal(session, "user-1", proposal_id, gateway=gateway, now=now)
            assert result["status"] == "SUBMITTED"
        assert gateway.place_calls == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unapproved_proposal_cannot_execute(tmp_path, policy_config, btc_buy, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        gateway = _FakeGateway()
        async with session_factory() as session:
            policy = await policy_store.create_policy(
                session, "user-1", name="Mine", config=policy_config, activate=True
            )
            await set_trading_enabled(session, "user-1", True)
            proposal = await proposal_store.create_proposal(session, "user-1", btc_buy, policy=policy, now=now)

            with pytest.raises(Conflict) as exc_info:
                await execute_proposal(session, "user-1", proposal["id"], gateway=gateway, now=now)
            assert exc_info.value.code == "INVALID_STATUS"
        assert gateway.place_calls == 0
    finally:
        await engine.dispose()

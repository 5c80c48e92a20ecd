from sqlalchemy import (
    Column,
    Float,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import ExchangeAmount

logger = logging.getLogger(__name__)

Base = declarative_base()


class ProposalStatus(str, enum.Enum):
    PROPOSED = "PROPOSED"
    EXPIRED = "EXPIRED"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class ActionType(str, enum.Enum):
    ACCEPT = "ACCEPT"
    MODIFY = "MODIFY"
    DECLINE = "DECLINE"


class ExecutionStatus(str, enum.Enum):
    CLAIMED = "CLAIMED"  # Row inserted, nothing sent yet
    SUBMITTING = "SUBMITTING"  # Written before the exchange call
    SUBMITTED = "SUBMITTED"  # Exchange acknowledged, order id known
    FILLED = "FILLED"
    FAILED = "FAILED"


class ScanJobStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class PromotionLevel(str, enum.Enum):
    """Operational track record; each level raises the per-order ceiling."""

    TRAINING = "TRAINING"
    VALIDATED = "VALIDATED"
    PRODUCTION = "PRODUCTION"
    MATURE = "MATURE"


# ==================== POLICY ====================


class AgentPolicy(Base):
    """Per-user risk, budget and gating configuration. Never hard-deleted."""

    __tablename__ = "agent_policies"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    preset_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    config_json = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # At most one active policy per user, enforced by the store as well.
        Index(
            "uq_agent_policies_user_active",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_agent_policies_user_created", "user_id", "created_at"),
    )


class UserTradingSettings(Base):
    """Per-user kill switch and promotion level. Missing row means trading is disabled."""

    __tablename__ = "user_trading_settings"

    user_id = Column(String, primary_key=True)
    trading_enabled = Column(Boolean, nullable=False, default=False)
    promotion_level = Column(String, nullable=False, default=PromotionLevel.TRAINING.value)
    promoted_at = Column(DateTime, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ==================== SCANNING ====================


class ScanJob(Base):
    """One schedulable scan per user, claimed through lock_owner/lock_expires_at."""

    __tablename__ = "scan_jobs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=ScanJobStatus.ACTIVE.value)
    interval_minutes = Column(Integer, nullable=False, default=60)
    next_run_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    runs_today = Column(Integer, nullable=False, default=0)
    signal_calls_today = Column(Integer, nullable=False, default=0)
    last_reset_date = Column(String, nullable=True)  # YYYY-MM-DD in SCAN_DAY_TIMEZONE
    last_run_at = Column(DateTime, nullable=True)
    last_outcome = Column(String, nullable=True)
    last_triggers_json = Column(JSON, default=list)
    lock_owner = Column(String, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_scan_jobs_status_next_run", "status", "next_run_at"),
        Index("idx_scan_jobs_lock_expires", "lock_expires_at"),
    )


class MarketSnapshot(Base):
    """Append-only market pulse observation."""

    __tablename__ = "market_snapshots"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    scan_job_id = Column(String, nullable=True, index=True)
    volatility_24h = Column(Float, nullable=False, default=0.0)
    move_1h = Column(Float, nullable=False, default=0.0)
    move_4h = Column(Float, nullable=False, default=0.0)
    volume_z = Column(Float, nullable=False, default=0.0)
    portfolio_value_eur = Column(ExchangeAmount, nullable=True)
    gate_fired = Column(Boolean, nullable=True)
    triggers_json = Column(JSON, default=list)
    assets_json = Column(JSON, default=dict)
    observed_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_market_snapshots_user_observed", "user_id", "observed_at"),
    )


class SignalUsageLog(Base):
    """Fact log of signal-generator calls; source of truth for call budgets."""

    __tablename__ = "signal_usage_log"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    scan_job_id = Column(String, nullable=True)
    snapshot_id = Column(String, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    candidates_returned = Column(Integer, nullable=False, default=0)
    triggers_json = Column(JSON, default=list)
    error = Column(Text, nullable=True)
    called_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_signal_usage_user_called", "user_id", "called_at"),
    )


# ==================== PROPOSALS ====================


class TradeProposal(Base):
    """Candidate trade with a fixed time-to-live awaiting a user decision."""

    __tablename__ = "trade_proposals"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    policy_id = Column(String, nullable=True)
    scan_job_id = Column(String, nullable=True)
    snapshot_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ProposalStatus.PROPOSED.value)
    asset = Column(String, nullable=False)
    side = Column(String, nullable=False)
    order_type = Column(String, nullable=False, default="market")
    order_value_eur = Column(ExchangeAmount, nullable=False)
    limit_price = Column(ExchangeAmount, nullable=True)
    confidence = Column(Integer, nullable=False)
    rationale_json = Column(JSON, default=dict)
    preflight_json = Column(JSON, default=dict)
    created_by = Column(String, nullable=False, default="AI")  # AI | USER
    expires_at = Column(DateTime, nullable=False)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_trade_proposals_user_status", "user_id", "status"),
        Index("idx_trade_proposals_status_expires", "status", "expires_at"),
    )


class TradeAction(Base):
    """Immutable record of the user decision behind a proposal transition."""

    __tablename__ = "trade_actions"

    id = Column(String, primary_key=True)
    proposal_id = Column(
        String,
        ForeignKey("trade_proposals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)  # ACCEPT | MODIFY | DECLINE
    from_status = Column(String, nullable=False)
    to_status = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    changes_json = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# ==================== EXECUTION ====================


class TradeExecution(Base):
    """One row per approved proposal; proposal_id is the idempotency key."""

    __tablename__ = "trade_executions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    proposal_id = Column(
        String,
        ForeignKey("trade_proposals.id"),
        nullable=False,
    )
    status = Column(String, nullable=False, default=ExecutionStatus.CLAIMED.value)
    client_order_id = Column(String, nullable=False)
    exchange_order_id = Column(String, nullable=True)
    market = Column(String, nullable=True)
    side = Column(String, nullable=True)
    order_type = Column(String, nullable=True)
    order_value_eur = Column(ExchangeAmount, nullable=True)
    filled_quantity = Column(ExchangeAmount, nullable=True)
    average_price = Column(ExchangeAmount, nullable=True)
    fee_eur = Column(ExchangeAmount, nullable=True)
    preflight_passed = Column(Boolean, nullable=False, default=False)
    preflight_json = Column(JSON, default=dict)
    policy_id = Column(String, nullable=True)
    policy_snapshot_json = Column(JSON, default=dict)
    policy_hash = Column(String, nullable=True)
    reconcile_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    error_class = Column(String, nullable=True)  # SOFT | HARD
    submitting_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    filled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    last_reconciled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("proposal_id", name="uq_trade_executions_proposal"),
        UniqueConstraint("client_order_id", name="uq_trade_executions_client_order"),
        Index("idx_trade_executions_status_updated", "status", "updated_at"),
    )


class ExecutionEvent(Base):
    """Append-only audit log for execution attempts and rejections."""

    __tablename__ = "execution_events"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    proposal_id = Column(String, nullable=True, index=True)
    execution_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, default="info")
    message = Column(Text, nullable=True)
    payload_json = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class TradeHistory(Base):
    """Placed orders; feeds cooldown, anti-flip, trade caps and drawdown checks."""

    __tablename__ = "trade_history"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    execution_id = Column(String, nullable=False, unique=True)
    proposal_id = Column(String, nullable=False)
    asset = Column(String, nullable=False)
    side = Column(String, nullable=False)
    order_value_eur = Column(ExchangeAmount, nullable=False)
    quantity = Column(ExchangeAmount, nullable=True)
    price = Column(ExchangeAmount, nullable=True)
    fee_eur = Column(ExchangeAmount, nullable=True)
    realized_pnl_eur = Column(ExchangeAmount, nullable=True)
    executed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_trade_history_user_executed", "user_id", "executed_at"),
        Index("idx_trade_history_user_asset", "user_id", "asset", "executed_at"),
    )


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


# Apply pragmas on each new SQLite connection
event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across the API and worker processes for SQLite."""
    if "sqlite" not in settings.DATABASE_URL:
        yield
        return

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock_file = None
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        if os.name == "posix":
            import fcntl

            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            return

        # Non-posix platforms: continue without an OS-level file lock.
        yield
    finally:
        try:
            lock_file.close()
        except OSError:
            pass


async def init_database():
    """Initialize database and apply Alembic migrations."""
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session

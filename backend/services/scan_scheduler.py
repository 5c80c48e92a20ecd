"""Scan scheduler: one job per user, claimed exclusively, run pulse -> gate -> signal -> proposals.

Claiming is a single conditional UPDATE on (lock_owner, lock_expires_at); the
worker that sees rowcount 0 skips the job. A crashed worker's claim becomes
reclaimable once its lock expires. Budget and gate outcomes are ordinary
scheduling decisions and only move ``next_run_at``.
"""

from __future__ import annotations

import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AsyncSessionLocal, MarketSnapshot, ScanJob, ScanJobStatus
from services.budget_tracker import check_signal_budget, get_budget_status, record_signal_call
from services.market_pulse import MarketPulseGenerator
from services.policy_store import get_active_policy
from services.proposal_store import create_proposal, expire_stale_proposals
from services.signal_generator import SignalGenerator, get_signal_generator, validate_candidates
from services.trading_agent.gate import evaluate_gate
from services.trading_errors import Conflict, NotFound
from utils.logger import scheduler_logger as logger
from utils.utcnow import local_day_key, next_local_midnight, utcnow

DEFAULT_INTERVAL_MINUTES = 60


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


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _serialize_job(row: ScanJob) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "interval_minutes": int(row.interval_minutes or DEFAULT_INTERVAL_MINUTES),
        "next_run_at": _to_iso(row.next_run_at),
        "runs_today": int(row.runs_today or 0),
        "signal_calls_today": int(row.signal_calls_today or 0),
        "last_reset_date": row.last_reset_date,
        "last_run_at": _to_iso(row.last_run_at),
        "last_outcome": row.last_outcome,
        "last_triggers": list(row.last_triggers_json or []),
        "locked": row.lock_owner is not None,
        "lock_expires_at": _to_iso(row.lock_expires_at),
    }


def _serialize_snapshot(row: MarketSnapshot) -> dict[str, Any]:
    return {
        "id": row.id,
        "volatility_24h": row.volatility_24h,
        "move_1h": row.move_1h,
        "move_4h": row.move_4h,
        "volume_z": row.volume_z,
        "portfolio_value_eur": row.portfolio_value_eur,
        "assets": row.assets_json or {},
        "observed_at": _to_iso(row.observed_at),
    }


def apply_day_reset(row: ScanJob, now: datetime) -> bool:
    """Zero the daily counters when the local day changed since the last reset."""
    today = local_day_key(now, settings.SCAN_DAY_TIMEZONE)
    if row.last_reset_date == today:
        return False
    row.runs_today = 0
    row.signal_calls_today = 0
    row.last_reset_date = today
    row.updated_at = now
    return True


async def get_scan_job_row(session: AsyncSession, user_id: str) -> Optional[ScanJob]:
    return (
        (
            await session.execute(
                select(ScanJob).where(ScanJob.user_id == user_id).execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )


async def ensure_scan_job(
    session: AsyncSession,
    user_id: str,
    *,
    interval_minutes: Optional[int] = None,
) -> dict[str, Any]:
    """Create the user's job (due now) or adopt a new interval on the existing one."""
    now = _now()
    row = await get_scan_job_row(session, user_id)
    if row is not None:
        if interval_minutes and int(interval_minutes) != int(row.interval_minutes or 0):
            row.interval_minutes = int(interval_minutes)
            row.updated_at = now
            await session.commit()
            await session.refresh(row)
            logger.info("Scan interval updated", user_id=user_id, job_id=row.id, interval_minutes=row.interval_minutes)
        return _serialize_job(row)

    row = ScanJob(
        id=_new_id(),
        user_id=user_id,
        status=ScanJobStatus.ACTIVE.value,
        interval_minutes=int(interval_minutes or DEFAULT_INTERVAL_MINUTES),
        next_run_at=now,
        runs_today=0,
        signal_calls_today=0,
        last_reset_date=local_day_key(now, settings.SCAN_DAY_TIMEZONE),
        last_triggers_json=[],
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        # Concurrent activation created the job first.
        await session.rollback()
        row = await get_scan_job_row(session, user_id)
        if row is None:
            raise
        return _serialize_job(row)
    await session.refresh(row)
    logger.info("Scan job created", user_id=user_id, job_id=row.id, interval_minutes=row.interval_minutes)
    return _serialize_job(row)


async def get_scan_status(session: AsyncSession, user_id: str) -> dict[str, Any]:
    row = await get_scan_job_row(session, user_id)
    policy = await get_active_policy(session, user_id)
    budget = None
    if policy is not None:
        budget = await get_budget_status(session, user_id, (policy.get("config") or {}).get("budget"))
    latest = (
        (
            await session.execute(
                select(MarketSnapshot)
                .where(MarketSnapshot.user_id == user_id)
                .order_by(MarketSnapshot.observed_at.desc())
                .limit(1)
            )
        )
        .scalars()
        .first()
    )
    return {
        "job": _serialize_job(row) if row else None,
        "policy_id": policy.get("id") if policy else None,
        "budget": budget,
        "latest_snapshot": _serialize_snapshot(latest) if latest else None,
    }


async def _require_job(session: AsyncSession, user_id: str) -> ScanJob:
    row = await get_scan_job_row(session, user_id)
    if row is None:
        raise NotFound("No scan job for this user; activate a policy first", code="SCAN_JOB_NOT_FOUND")
    return row


async def pause_scan(session: AsyncSession, user_id: str) -> dict[str, Any]:
    row = await _require_job(session, user_id)
    row.status = ScanJobStatus.PAUSED.value
    row.updated_at = _now()
    await session.commit()
    await session.refresh(row)
    logger.info("Scan paused", user_id=user_id, job_id=row.id)
    return _serialize_job(row)


async def resume_scan(session: AsyncSession, user_id: str) -> dict[str, Any]:
    row = await _require_job(session, user_id)
    now = _now()
    row.status = ScanJobStatus.ACTIVE.value
    row.next_run_at = now
    row.updated_at = now
    await session.commit()
    await session.refresh(row)
    logger.info("Scan resumed", user_id=user_id, job_id=row.id)
    return _serialize_job(row)


async def claim_job(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    *,
    now: Optional[datetime] = None,
    require_due: bool = True,
) -> bool:
    """Compare-and-set the lock fields. True only for the single winning worker."""
    now = now or _now()
    conditions = [
        ScanJob.id == job_id,
        or_(ScanJob.lock_owner.is_(None), ScanJob.lock_expires_at.is_(None), ScanJob.lock_expires_at < now),
    ]
    if require_due:
        conditions.append(ScanJob.status == ScanJobStatus.ACTIVE.value)
        conditions.append(ScanJob.next_run_at <= now)
    result = await session.execute(
        update(ScanJob)
        .where(and_(*conditions))
        .values(
            lock_owner=worker_id,
            lock_expires_at=now + timedelta(seconds=int(settings.SCAN_LOCK_TTL_SECONDS)),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) > 0


async def claim_due_jobs(
    session: AsyncSession,
    worker_id: str,
    *,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[str]:
    now = now or _now()
    candidates = (
        (
            await session.execute(
                select(ScanJob.id)
                .where(
                    and_(
                        ScanJob.status == ScanJobStatus.ACTIVE.value,
                        ScanJob.next_run_at <= now,
                        or_(ScanJob.lock_owner.is_(None), ScanJob.lock_expires_at < now),
                    )
                )
                .order_by(ScanJob.next_run_at.asc())
                .limit(int(limit or settings.SCHEDULER_MAX_JOBS_PER_TICK))
            )
        )
        .scalars()
        .all()
    )
    claimed = []
    for job_id in candidates:
        if await claim_job(session, job_id, worker_id, now=now):
            claimed.append(job_id)
        else:
            logger.debug("Job claimed by another worker", job_id=job_id, worker_id=worker_id)
    return claimed


async def release_job_lock(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    *,
    next_run_at: Optional[datetime] = None,
    outcome: Optional[str] = None,
    triggers: Optional[list[str]] = None,
    ran: bool = False,
    signal_called: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    now = now or _now()
    values: dict[str, Any] = {"lock_owner": None, "lock_expires_at": None, "updated_at": now}
    if next_run_at is not None:
        values["next_run_at"] = max(next_run_at, now)
    if outcome is not None:
        values["last_outcome"] = outcome
        values["last_run_at"] = now
    if triggers is not None:
        values["last_triggers_json"] = list(triggers)
    if ran:
        values["runs_today"] = ScanJob.runs_today + 1
    if signal_called:
        values["signal_calls_today"] = ScanJob.signal_calls_today + 1
    result = await session.execute(
        update(ScanJob)
        .where(and_(ScanJob.id == job_id, ScanJob.lock_owner == worker_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = (result.rowcount or 0) > 0
    if not released:
        logger.warning("Lock lost before release", job_id=job_id, worker_id=worker_id)
    return released


async def cleanup_expired_locks(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    now = now or _now()
    result = await session.execute(
        update(ScanJob)
        .where(and_(ScanJob.lock_owner.is_not(None), ScanJob.lock_expires_at < now))
        .values(lock_owner=None, lock_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    cleared = int(result.rowcount or 0)
    if cleared:
        logger.warning("Cleared expired scan locks", count=cleared)
    return cleared


async def _store_snapshot(
    session: AsyncSession,
    job: ScanJob,
    snapshot: dict[str, Any],
    *,
    gate_fired: bool,
    triggers: list[str],
    now: datetime,
) -> MarketSnapshot:
    row = MarketSnapshot(
        id=_new_id(),
        user_id=job.user_id,
        scan_job_id=job.id,
        volatility_24h=float(snapshot.get("volatility_24h") or 0.0),
        move_1h=float(snapshot.get("move_1h") or 0.0),
        move_4h=float(snapshot.get("move_4h") or 0.0),
        volume_z=float(snapshot.get("volume_z") or 0.0),
        portfolio_value_eur=snapshot.get("portfolio_value_eur"),
        gate_fired=gate_fired,
        triggers_json=list(triggers),
        assets_json=snapshot.get("assets") or {},
        observed_at=snapshot.get("observed_at") or now,
        created_at=now,
    )
    session.add(row)
    await session.commit()
    return row


async def run_scan_for_job(
    session: AsyncSession,
    job_id: str,
    worker_id: str,
    *,
    pulse: MarketPulseGenerator,
    signal_generator: Optional[SignalGenerator],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Run one claimed job end to end and release its lock with the next run time."""
    now = now or _now()
    job = await session.get(ScanJob, job_id)
    if job is None:
        return {"job_id": job_id, "outcome": "missing"}
    await session.refresh(job)
    if job.lock_owner != worker_id:
        return {"job_id": job_id, "user_id": job.user_id, "outcome": "not_owner"}

    user_id = job.user_id
    log = logger.with_context(job_id=job_id, user_id=user_id, worker_id=worker_id)
    outcome: dict[str, Any] = {
        "job_id": job_id,
        "user_id": user_id,
        "triggers": [],
        "snapshot_id": None,
        "proposal_ids": [],
        "dropped_candidates": 0,
    }
    ran = False
    signal_called = False
    next_run_at: Optional[datetime] = None
    interval = int(job.interval_minutes or DEFAULT_INTERVAL_MINUTES)

    try:
        if apply_day_reset(job, now):
            await session.commit()
            log.info("Daily scan counters reset", day=job.last_reset_date)

        outcome["expired_proposals"] = await expire_stale_proposals(session, user_id, now=now)

        policy = await get_active_policy(session, user_id)
        if policy is None:
            outcome["outcome"] = "no_active_policy"
            next_run_at = now + timedelta(minutes=interval)
            return outcome

        config = policy.get("config") or {}
        scan_cfg = config.get("scan") or {}
        interval = int(scan_cfg.get("interval_minutes") or interval)

        max_scans = scan_cfg.get("max_scans_per_day")
        if max_scans is not None and int(job.runs_today or 0) >= int(max_scans):
            outcome["outcome"] = "daily_scan_cap_reached"
            next_run_at = next_local_midnight(now, settings.SCAN_DAY_TIMEZONE)
            log.info("Daily scan cap reached", runs_today=job.runs_today, max_scans=max_scans)
            return outcome

        ran = True
        snapshot = await pulse.generate(user_id=user_id, policy_config=config, now=now)
        gate = evaluate_gate(config.get("gate"), snapshot)
        outcome["triggers"] = gate.triggers
        snapshot_row = await _store_snapshot(
            session, job, snapshot, gate_fired=gate.fired, triggers=gate.triggers, now=now
        )
        outcome["snapshot_id"] = snapshot_row.id

        if not gate.fired:
            outcome["outcome"] = "no_trigger" if gate.enabled else "gate_disabled"
            next_run_at = now + timedelta(minutes=interval)
            return outcome

        if not bool(scan_cfg.get("ai_enabled", True)):
            outcome["outcome"] = "signal_disabled"
            next_run_at = now + timedelta(minutes=interval)
            return outcome

        if signal_generator is None:
            outcome["outcome"] = "signal_generator_unavailable"
            next_run_at = now + timedelta(minutes=interval)
            log.warning("Gate fired but no signal generator is configured", triggers=gate.triggers)
            return outcome

        budget = await check_signal_budget(session, user_id, config.get("budget"), now=now)
        outcome["budget"] = budget.to_payload()
        if not budget.allowed:
            outcome["outcome"] = str(budget.reason).lower()
            next_run_at = budget.retry_at
            log.info("Signal budget exhausted, deferring", reason=budget.reason, retry_at=_to_iso(budget.retry_at))
            return outcome

        snapshot_payload = _serialize_snapshot(snapshot_row)
        snapshot_payload["triggers"] = gate.triggers
        signal_called = True
        try:
            raw = await signal_generator.generate(user_id=user_id, policy=config, snapshot=snapshot_payload)
        except Exception as exc:
            await record_signal_call(
                session,
                user_id,
                scan_job_id=job_id,
                snapshot_id=snapshot_row.id,
                success=False,
                triggers=gate.triggers,
                error=str(exc),
                now=now,
            )
            await session.commit()
            log.warning("Signal generator call failed", error=str(exc))
            outcome["outcome"] = "signal_failed"
            next_run_at = now + timedelta(minutes=interval)
            return outcome

        candidates, dropped = validate_candidates(raw)
        for item in dropped:
            log.warning("Dropped malformed candidate", reasons=item["reasons"])
        outcome["dropped_candidates"] = len(dropped)
        await record_signal_call(
            session,
            user_id,
            scan_job_id=job_id,
            snapshot_id=snapshot_row.id,
            success=True,
            candidates_returned=len(candidates),
            triggers=gate.triggers,
            now=now,
        )
        await session.commit()

        for candidate in candidates:
            proposal = await create_proposal(
                session,
                user_id,
                candidate,
                created_by="AI",
                policy=policy,
                scan_job_id=job_id,
                snapshot_id=snapshot_row.id,
                now=now,
            )
            outcome["proposal_ids"].append(proposal["id"])

        outcome["outcome"] = "proposals_created" if outcome["proposal_ids"] else "no_candidates"
        busy = scan_cfg.get("busy_interval_minutes")
        if outcome["proposal_ids"] and busy:
            next_run_at = now + timedelta(minutes=int(busy))
        else:
            next_run_at = now + timedelta(minutes=interval)
        return outcome
    except Exception as exc:
        await session.rollback()
        log.exception("Scan failed", error=str(exc))
        outcome["outcome"] = "error"
        outcome["error"] = str(exc)
        next_run_at = now + timedelta(minutes=interval)
        return outcome
    finally:
        await release_job_lock(
            session,
            job_id,
            worker_id,
            next_run_at=next_run_at,
            outcome=outcome.get("outcome"),
            triggers=outcome.get("triggers"),
            ran=ran,
            signal_called=signal_called,
            now=now,
        )
        outcome["next_run_at"] = _to_iso(max(next_run_at, now) if next_run_at else None)
        log.info(
            "Scan finished",
            outcome=outcome.get("outcome"),
            triggers=outcome.get("triggers"),
            proposals=len(outcome.get("proposal_ids") or []),
            next_run_at=outcome["next_run_at"],
        )


def _default_pulse() -> MarketPulseGenerator:
    from services.exchange import get_read_gateway

    return MarketPulseGenerator(get_read_gateway())


async def run_scheduler_tick(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    *,
    worker_id: Optional[str] = None,
    pulse: Optional[MarketPulseGenerator] = None,
    signal_generator: Optional[SignalGenerator] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """Claim every due job and run them one after another."""
    worker_id = worker_id or default_worker_id()
    now = now or _now()

    async with session_factory() as session:
        expired = await expire_stale_proposals(session, now=now)
        job_ids = await claim_due_jobs(session, worker_id, now=now, limit=limit)

    results = []
    if job_ids:
        pulse = pulse or _default_pulse()
        signal_generator = signal_generator or get_signal_generator()
        for job_id in job_ids:
            async with session_factory() as session:
                results.append(
                    await run_scan_for_job(
                        session,
                        job_id,
                        worker_id,
                        pulse=pulse,
                        signal_generator=signal_generator,
                        now=now,
                    )
                )

    return {
        "worker_id": worker_id,
        "expired_proposals": expired,
        "claimed": len(job_ids),
        "results": results,
    }


async def request_immediate_scan(
    session: AsyncSession,
    user_id: str,
    *,
    pulse: Optional[MarketPulseGenerator] = None,
    signal_generator: Optional[SignalGenerator] = None,
    worker_id: Optional[str] = None,
) -> dict[str, Any]:
    """Run the user's job now, ignoring ``next_run_at``; 409 while another worker holds it."""
    row = await get_scan_job_row(session, user_id)
    if row is None:
        policy = await get_active_policy(session, user_id)
        if policy is None:
            raise NotFound("No scan job for this user; activate a policy first", code="SCAN_JOB_NOT_FOUND")
        job = await ensure_scan_job(
            session,
            user_id,
            interval_minutes=(policy.get("config") or {}).get("scan", {}).get("interval_minutes"),
        )
        job_id = job["id"]
    else:
        job_id = row.id

    worker_id = worker_id or default_worker_id()
    now = _now()
    if not await claim_job(session, job_id, worker_id, now=now, require_due=False):
        raise Conflict("A scan for this user is already running", code="SCAN_IN_PROGRESS")
    return await run_scan_for_job(
        session,
        job_id,
        worker_id,
        pulse=pulse or _default_pulse(),
        signal_generator=signal_generator or get_signal_generator(),
        now=now,
    )

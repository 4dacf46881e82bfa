"""Named periodic sweeps with a shared re-entrancy guard.

Every run is recorded in ``crm_sweep_run`` and guarded by a lease row in
``crm_sweep_lock``, so the API process and any number of worker processes see
the same run history and never execute the same sweep concurrently. A lease
that outlives ``sweep_lock_ttl_seconds`` is treated as abandoned.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Literal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.automation.assignment import assign_leads
from growthengine.automation.escalation import check_stale_deals
from growthengine.automation.followups import check_follow_ups
from growthengine.automation.scoring import recalculate_all_scores
from growthengine.context import reset_correlation_id, reset_sweep_name, set_correlation_id, set_sweep_name
from growthengine.core.config import Settings, get_settings
from growthengine.core.database import SessionLocal
from growthengine.crm.models import CRMSweepLock, CRMSweepRun, as_utc, utcnow
from growthengine.metrics import observe_sweep, observe_sweep_overlap
from growthengine.otel import sweep_span


logger = logging.getLogger("growthengine.automation.scheduler")

SweepFn = Callable[[Session, datetime], Any]
SweepDispatcher = Callable[[str, dict[str, Any]], str | None]
RunStatus = Literal["queued", "running", "succeeded", "failed", "skipped"]

ASSIGN_LEADS = "assign_leads"
CHECK_STALE_DEALS = "check_stale_deals"
RECALCULATE_SCORES = "recalculate_scores"
CHECK_FOLLOW_UPS = "check_follow_ups"

TASK_PREFIX = "growthengine.sweeps."

_STARTED = ("running", "succeeded", "failed")


@dataclass(frozen=True)
class SweepRun:
    name: str
    status: RunStatus
    started_at: datetime | None
    finished_at: datetime | None
    correlation_id: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    id: uuid.UUID | None = None
    task_id: str | None = None
    requested_by: uuid.UUID | None = None
    created_at: datetime | None = None


@dataclass
class SweepJob:
    name: str
    interval: timedelta
    fn: SweepFn
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_started_at: datetime | None = None
    last_run: SweepRun | None = None

    @property
    def running(self) -> bool:
        return self.lock.locked()


def summarize(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if isinstance(result, dict):
        return dict(result)
    as_dict = getattr(result, "as_dict", None)
    if callable(as_dict):
        return as_dict()
    if isinstance(result, (list, tuple)):
        return {"count": len(result)}
    return {"result": str(result)}


def _run_from_record(record: CRMSweepRun) -> SweepRun:
    return SweepRun(
        name=record.name,
        status=record.status,  # type: ignore[arg-type]
        started_at=as_utc(record.started_at),
        finished_at=as_utc(record.finished_at),
        correlation_id=record.correlation_id,
        summary=json.loads(record.summary_json) if record.summary_json else {},
        error=record.error,
        id=record.id,
        task_id=record.task_id,
        requested_by=record.requested_by,
        created_at=as_utc(record.created_at),
    )


class UnknownSweepError(KeyError):
    pass


class SweepDispatchError(RuntimeError):
    pass


class SweepScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
        lock_ttl_seconds: float = 3600,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._jobs: dict[str, SweepJob] = {}

    def register(self, name: str, interval_seconds: float, fn: SweepFn) -> SweepJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job = SweepJob(name=name, interval=timedelta(seconds=interval_seconds), fn=fn)
        self._jobs[name] = job
        return job

    def get(self, name: str) -> SweepJob:
        job = self._jobs.get(name)
        if job is None:
            raise UnknownSweepError(name)
        return job

    def names(self) -> list[str]:
        return list(self._jobs)

    def next_due(self, name: str) -> datetime:
        job = self.get(name)
        latest = self._latest_run(name)
        candidates = [value for value in (job.last_started_at, latest.started_at if latest else None) if value]
        if not candidates:
            return self._clock()
        return max(candidates) + job.interval

    def due_jobs(self, now: datetime | None = None) -> list[str]:
        reference = now or self._clock()
        return [name for name in self._jobs if self.next_due(name) <= reference]

    def tick(self, now: datetime | None = None) -> list[SweepRun]:
        reference = now or self._clock()
        return [self.run_now(name, now=reference) for name in self.due_jobs(reference)]

    def is_running(self, name: str) -> bool:
        job = self.get(name)
        if job.running:
            return True
        session = self._session_factory()
        try:
            lease = session.get(CRMSweepLock, name)
            if lease is None or lease.holder is None or lease.locked_until is None:
                return False
            return as_utc(lease.locked_until) > self._clock()
        finally:
            session.close()

    def run_now(self, name: str, now: datetime | None = None, run_id: uuid.UUID | None = None) -> SweepRun:
        """Run one sweep to completion, or skip it if that sweep is already running anywhere.

        ``run_id`` names a queued ``crm_sweep_run`` row created by :meth:`enqueue`;
        the run is recorded on that row instead of a new one.
        Errors are logged and reported in the returned run; they never propagate.
        """
        job = self.get(name)
        started_at = now or self._clock()

        if not job.lock.acquire(blocking=False):
            return self._skip(name, started_at, run_id)

        holder = f"{name}:{uuid.uuid4().hex}"
        try:
            claimed = self._claim(name, holder, started_at)
        except SQLAlchemyError as exc:
            job.lock.release()
            error = str(exc)[:500]
            logger.exception("sweep.failed", extra={"sweep": name, "status": "failed", "error": error})
            observe_sweep(name, "failed", 0.0)
            return SweepRun(name=name, status="failed", started_at=started_at, finished_at=started_at, error=error)
        if not claimed:
            job.lock.release()
            return self._skip(name, started_at, run_id)

        try:
            record_id, correlation_id = self._start_record(name, run_id, started_at)
        except SQLAlchemyError:
            logger.exception("sweep.record_failed", extra={"sweep": name})
            record_id, correlation_id = None, None
        correlation_id = correlation_id or f"sweep-{name}-{uuid.uuid4()}"

        correlation_token = set_correlation_id(correlation_id)
        sweep_token = set_sweep_name(name)
        job.last_started_at = started_at
        started = time.perf_counter()
        final_status: RunStatus = "failed"
        summary: dict[str, Any] = {}
        error: str | None = None

        try:
            logger.info("sweep.started", extra={"sweep": name})
            with sweep_span(name, correlation_id):
                session = self._session_factory()
                try:
                    summary = summarize(job.fn(session, started_at))
                finally:
                    session.close()
            final_status = "succeeded"
        except Exception as exc:
            error = str(exc)[:500]
            logger.exception("sweep.failed", extra={"sweep": name, "status": "failed", "error": error})
        finally:
            duration = time.perf_counter() - started
            observe_sweep(name, final_status, duration)
            run = SweepRun(
                name=name,
                status=final_status,
                started_at=started_at,
                finished_at=self._clock(),
                correlation_id=correlation_id,
                summary=summary,
                error=error,
                id=record_id,
            )
            job.last_run = run
            self._finish(name, holder, run)
            if final_status == "succeeded":
                logger.info(
                    "sweep.finished",
                    extra={"sweep": name, "status": final_status, "duration_ms": round(duration * 1000, 2)},
                )
            reset_sweep_name(sweep_token)
            reset_correlation_id(correlation_token)
            job.lock.release()

        return run

    def enqueue(
        self,
        name: str,
        dispatcher: SweepDispatcher,
        *,
        requested_by: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> SweepRun:
        """Record a queued run and hand it to the worker through ``dispatcher``."""
        self.get(name)
        session = self._session_factory()
        try:
            record = CRMSweepRun(
                name=name,
                status="queued",
                requested_by=requested_by,
                correlation_id=correlation_id,
                created_at=self._clock(),
            )
            session.add(record)
            session.commit()
            try:
                record.task_id = dispatcher(f"{TASK_PREFIX}{name}", {"run_id": str(record.id)})
            except Exception as exc:
                record.status = "failed"
                record.error = f"dispatch failed: {exc}"[:500]
                record.finished_at = self._clock()
                session.commit()
                logger.exception("sweep.dispatch_failed", extra={"sweep": name, "error": str(exc)})
                raise SweepDispatchError(name) from exc
            session.commit()
            session.refresh(record)
            logger.info("sweep.queued", extra={"sweep": name, "status": "queued"})
            return _run_from_record(record)
        finally:
            session.close()

    def list_runs(self, name: str | None = None, limit: int = 50) -> list[SweepRun]:
        session = self._session_factory()
        try:
            stmt = select(CRMSweepRun)
            if name is not None:
                stmt = stmt.where(CRMSweepRun.name == name)
            stmt = stmt.order_by(CRMSweepRun.created_at.desc()).limit(limit)
            return [_run_from_record(record) for record in session.scalars(stmt)]
        finally:
            session.close()

    def jobs(self) -> list[dict[str, Any]]:
        snapshot: list[dict[str, Any]] = []
        for name, job in self._jobs.items():
            last_run = self._latest_run(name) or job.last_run
            snapshot.append(
                {
                    "name": name,
                    "interval_seconds": int(job.interval.total_seconds()),
                    "running": self.is_running(name),
                    "next_due_at": self.next_due(name),
                    "last_started_at": last_run.started_at if last_run else None,
                    "last_status": last_run.status if last_run else None,
                    "last_summary": last_run.summary if last_run else None,
                    "last_error": last_run.error if last_run else None,
                }
            )
        return snapshot

    def beat_schedule(self, task_prefix: str = TASK_PREFIX) -> dict[str, dict[str, Any]]:
        return {
            name: {"task": f"{task_prefix}{name}", "schedule": job.interval.total_seconds()}
            for name, job in self._jobs.items()
        }

    def _latest_run(self, name: str) -> SweepRun | None:
        session = self._session_factory()
        try:
            record = session.scalar(
                select(CRMSweepRun)
                .where(CRMSweepRun.name == name, CRMSweepRun.status.in_(_STARTED))
                .order_by(CRMSweepRun.started_at.desc())
                .limit(1)
            )
            return _run_from_record(record) if record is not None else None
        finally:
            session.close()

    def _claim(self, name: str, holder: str, now: datetime) -> bool:
        session = self._session_factory()
        try:
            if session.get(CRMSweepLock, name) is None:
                try:
                    with session.begin_nested():
                        session.add(CRMSweepLock(name=name))
                except IntegrityError:
                    logger.debug("sweep.lock_row_exists", extra={"sweep": name})
            result = session.execute(
                update(CRMSweepLock)
                .where(
                    CRMSweepLock.name == name,
                    or_(CRMSweepLock.locked_until.is_(None), CRMSweepLock.locked_until <= now),
                )
                .values(holder=holder, locked_until=now + self._lock_ttl)
            )
            session.commit()
            return result.rowcount == 1
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def _skip(self, name: str, started_at: datetime, run_id: uuid.UUID | None) -> SweepRun:
        observe_sweep_overlap(name)
        logger.warning("sweep.skipped_overlap", extra={"sweep": name, "status": "skipped"})
        if run_id is not None:
            session = self._session_factory()
            try:
                record = session.get(CRMSweepRun, run_id)
                if record is not None and record.status == "queued":
                    record.status = "skipped"
                    record.finished_at = started_at
                    session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("sweep.record_failed", extra={"sweep": name})
            finally:
                session.close()
        return SweepRun(name=name, status="skipped", started_at=started_at, finished_at=started_at, id=run_id)

    def _start_record(
        self, name: str, run_id: uuid.UUID | None, started_at: datetime
    ) -> tuple[uuid.UUID, str | None]:
        session = self._session_factory()
        try:
            record = session.get(CRMSweepRun, run_id) if run_id is not None else None
            if record is None or record.name != name or record.status != "queued":
                record = CRMSweepRun(name=name, created_at=started_at)
                session.add(record)
            record.status = "running"
            record.started_at = started_at
            session.commit()
            return record.id, record.correlation_id
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def _finish(self, name: str, holder: str, run: SweepRun) -> None:
        session = self._session_factory()
        try:
            if run.id is not None:
                record = session.get(CRMSweepRun, run.id)
                if record is not None:
                    record.status = run.status
                    record.correlation_id = run.correlation_id
                    record.summary_json = json.dumps(run.summary, default=str)
                    record.error = run.error
                    record.finished_at = run.finished_at
            session.execute(
                update(CRMSweepLock)
                .where(CRMSweepLock.name == name, CRMSweepLock.holder == holder)
                .values(holder=None, locked_until=None)
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("sweep.record_failed", extra={"sweep": name})
        finally:
            session.close()


def build_scheduler(
    settings: Settings | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
    clock: Callable[[], datetime] = utcnow,
) -> SweepScheduler:
    resolved = settings or get_settings()
    scheduler = SweepScheduler(
        session_factory=session_factory,
        clock=clock,
        lock_ttl_seconds=resolved.sweep_lock_ttl_seconds,
    )
    scheduler.register(ASSIGN_LEADS, resolved.assignment_interval_seconds, assign_leads)
    scheduler.register(CHECK_STALE_DEALS, resolved.stale_check_interval_seconds, check_stale_deals)
    scheduler.register(RECALCULATE_SCORES, resolved.score_recalc_interval_seconds, recalculate_all_scores)
    scheduler.register(CHECK_FOLLOW_UPS, resolved.follow_up_interval_seconds, check_follow_ups)
    return scheduler


@lru_cache
def get_scheduler() -> SweepScheduler:
    return build_scheduler()

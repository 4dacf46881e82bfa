from __future__ import annotations

import smtplib
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine import mailer, worker
from growthengine.automation.scheduler import (
    ASSIGN_LEADS,
    CHECK_FOLLOW_UPS,
    CHECK_STALE_DEALS,
    RECALCULATE_SCORES,
    build_scheduler,
)
from growthengine.core.config import get_settings
from growthengine.core.database import Base
from growthengine.crm.models import CRMDeal, CRMUser


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    mailer.outbox.clear()
    yield
    get_settings.cache_clear()
    mailer.outbox.clear()


def test_beat_schedule_has_one_entry_per_sweep() -> None:
    schedule = worker.celery_app.conf.beat_schedule

    assert set(schedule) == {ASSIGN_LEADS, CHECK_STALE_DEALS, RECALCULATE_SCORES, CHECK_FOLLOW_UPS}
    assert schedule[ASSIGN_LEADS] == {"task": "growthengine.sweeps.assign_leads", "schedule": 30.0}
    assert schedule[CHECK_STALE_DEALS]["schedule"] == 43200.0
    for entry in schedule.values():
        assert entry["task"] in worker.celery_app.tasks


def test_task_runs_sweep_through_scheduler(
    session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    scheduler = build_scheduler(session_factory=session_factory)
    monkeypatch.setattr(worker, "get_scheduler", lambda: scheduler)
    session = session_factory()
    session.add(CRMUser(email="rep@example.com", role="rep"))
    session.add(CRMDeal(name="Inbound lead", stage="Lead"))
    session.commit()

    result = worker.assign_leads_task()

    assert result["status"] == "succeeded"
    assert result["summary"] == {"assigned": 1, "skipped": 0}
    session.expire_all()
    deal = session.scalar(select(CRMDeal))
    assert deal is not None and deal.owner_id is not None
    session.close()


def test_stale_check_on_start_respects_flag(
    session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    scheduler = build_scheduler(session_factory=session_factory)
    monkeypatch.setattr(worker, "get_scheduler", lambda: scheduler)

    monkeypatch.setenv("RUN_STALE_ON_START", "false")
    get_settings.cache_clear()
    worker.run_stale_check_on_start()
    assert scheduler.get(CHECK_STALE_DEALS).last_run is None

    monkeypatch.setenv("RUN_STALE_ON_START", "true")
    get_settings.cache_clear()
    worker.run_stale_check_on_start()
    last_run = scheduler.get(CHECK_STALE_DEALS).last_run
    assert last_run is not None
    assert last_run.status == "succeeded"


class BrokenSender:
    def send(self, message: mailer.OutboundEmail) -> bool:
        raise smtplib.SMTPServerDisconnected("connection dropped")


def test_send_email_logs_to_outbox_without_smtp() -> None:
    assert mailer.send_email(to="rep@example.com", subject="Hello", html="<p>Hi</p>") is True
    assert list(mailer.outbox) == [mailer.OutboundEmail(to="rep@example.com", subject="Hello", html="<p>Hi</p>")]


def test_send_email_swallows_transport_errors() -> None:
    assert mailer.send_email(to="rep@example.com", subject="Hello", html="<p>Hi</p>", sender=BrokenSender()) is False
    assert mailer.send_email(to="", subject="Nobody", html="") is False
    assert not mailer.outbox


class RejectingSender:
    def send(self, message: mailer.OutboundEmail) -> bool:
        raise ValueError("recipient rejected by template")


def test_send_email_swallows_unexpected_sender_errors(caplog: pytest.LogCaptureFixture) -> None:
    result = mailer.send_email(to="rep@example.com", subject="Hello", html="<p>Hi</p>", sender=RejectingSender())

    assert result is False
    assert any(record.getMessage() == "email.failed" for record in caplog.records)


def test_outbox_keeps_only_recent_messages() -> None:
    for index in range(mailer.OUTBOX_LIMIT + 25):
        mailer.send_email(to=f"rep{index}@example.com", subject=f"Reminder {index}", html="")

    assert len(mailer.outbox) == mailer.OUTBOX_LIMIT
    assert mailer.outbox[0].subject == "Reminder 25"
    assert mailer.outbox[-1].subject == f"Reminder {mailer.OUTBOX_LIMIT + 24}"


def test_task_records_run_on_queued_row(
    session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    scheduler = build_scheduler(session_factory=session_factory)
    monkeypatch.setattr(worker, "get_scheduler", lambda: scheduler)
    dispatched: list[tuple[str, dict[str, str]]] = []
    queued = scheduler.enqueue(
        RECALCULATE_SCORES,
        lambda task_name, kwargs: dispatched.append((task_name, kwargs)) or "task-7",
    )

    task_name, kwargs = dispatched[0]
    result = worker.celery_app.tasks[task_name](**kwargs)

    assert result["id"] == str(queued.id)
    assert result["status"] == "succeeded"
    runs = scheduler.list_runs(RECALCULATE_SCORES)
    assert len(runs) == 1
    assert runs[0].id == queued.id
    assert runs[0].status == "succeeded"
    assert runs[0].task_id == "task-7"
    assert runs[0].started_at is not None and runs[0].finished_at is not None

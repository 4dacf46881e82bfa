from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.automation import assignment
from growthengine.automation.assignment import assign_leads, assignment_candidates
from growthengine.core.config import get_settings
from growthengine.core.database import Base
from growthengine.crm.models import CRMActivity, CRMDeal, CRMNotification, CRMUser


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _user(session: Session, email: str, *, role: str = "rep", offset_minutes: int = 0, active: bool = True) -> CRMUser:
    user = CRMUser(email=email, role=role, is_active=active, created_at=NOW - timedelta(days=30) + timedelta(minutes=offset_minutes))
    session.add(user)
    session.commit()
    return user


def _leads(session: Session, count: int) -> list[CRMDeal]:
    deals = [
        CRMDeal(
            name=f"Lead {index}",
            value=Decimal("100"),
            stage="Lead",
            created_at=NOW - timedelta(hours=count - index),
            last_activity_date=NOW,
        )
        for index in range(count)
    ]
    session.add_all(deals)
    session.commit()
    return deals


def test_round_robin_across_candidates(db_session: Session) -> None:
    first = _user(db_session, "first@example.com", offset_minutes=1)
    second = _user(db_session, "second@example.com", role="manager", offset_minutes=2)
    deals = _leads(db_session, 5)
    deal_ids = [deal.id for deal in deals]

    summary = assign_leads(db_session, NOW)

    assert summary.count == 5
    owners = {deal_id: user_id for deal_id, user_id in summary.assigned}
    assert [owners[deal_id] for deal_id in deal_ids] == [first.id, second.id, first.id, second.id, first.id]

    stored = {deal.id: deal.owner_id for deal in db_session.scalars(select(CRMDeal)).all()}
    assert stored == owners


def test_assignment_logs_activity_notifies_and_stamps_user(db_session: Session) -> None:
    rep = _user(db_session, "rep@example.com")
    (deal,) = _leads(db_session, 1)

    assign_leads(db_session, NOW)

    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.deal_id == deal.id))
    assert activity is not None
    assert activity.type == "SYSTEM"
    assert activity.content == "System assigned lead to rep@example.com"

    notification = db_session.scalar(select(CRMNotification).where(CRMNotification.user_id == rep.id))
    assert notification is not None
    assert notification.type == "ASSIGNMENT"
    assert notification.deal_id == deal.id

    db_session.refresh(rep)
    assert rep.last_assigned_at is not None


def test_least_recently_assigned_goes_first(db_session: Session) -> None:
    recent = _user(db_session, "recent@example.com", offset_minutes=1)
    recent.last_assigned_at = NOW - timedelta(minutes=5)
    stale = _user(db_session, "stale@example.com", offset_minutes=2)
    stale.last_assigned_at = NOW - timedelta(days=2)
    never = _user(db_session, "never@example.com", offset_minutes=3)
    db_session.commit()

    assert [user.email for user in assignment_candidates(db_session)] == [
        never.email,
        stale.email,
        recent.email,
    ]


def test_interns_admins_and_inactive_users_are_not_candidates(db_session: Session) -> None:
    _user(db_session, "admin@example.com", role="admin")
    _user(db_session, "intern@example.com", role="intern")
    _user(db_session, "gone@example.com", active=False)
    _leads(db_session, 2)

    summary = assign_leads(db_session, NOW)

    assert summary.count == 0
    assert all(deal.owner_id is None for deal in db_session.scalars(select(CRMDeal)).all())


def test_only_unowned_lead_stage_deals_are_assigned(db_session: Session) -> None:
    rep = _user(db_session, "rep@example.com")
    other = _user(db_session, "other@example.com", offset_minutes=5)
    owned = CRMDeal(name="Owned", value=Decimal("1"), stage="Lead", owner_id=other.id, last_activity_date=NOW)
    qualified = CRMDeal(name="Qualified", value=Decimal("1"), stage="Qualified", last_activity_date=NOW)
    db_session.add_all([owned, qualified])
    db_session.commit()
    (lead,) = _leads(db_session, 1)

    summary = assign_leads(db_session, NOW)

    assert summary.assigned == [(lead.id, rep.id)]
    db_session.refresh(qualified)
    assert qualified.owner_id is None


def test_rerun_is_a_no_op(db_session: Session) -> None:
    _user(db_session, "rep@example.com")
    _leads(db_session, 3)

    assert assign_leads(db_session, NOW).count == 3
    second = assign_leads(db_session, NOW + timedelta(seconds=30))

    assert second.count == 0
    assert len(db_session.scalars(select(CRMActivity)).all()) == 3


def test_batch_size_limits_one_run(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ASSIGNMENT_BATCH_SIZE", "2")
    get_settings.cache_clear()
    _user(db_session, "rep@example.com")
    _leads(db_session, 3)

    assert assign_leads(db_session, NOW).count == 2
    assert assign_leads(db_session, NOW).count == 1


def test_failed_assignment_rolls_back_only_that_lead(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    first = _user(db_session, "first@example.com", offset_minutes=1)
    _user(db_session, "second@example.com", offset_minutes=2)
    deal_ids = [deal.id for deal in _leads(db_session, 3)]
    real_notification = assignment.create_notification

    def flaky_notification(session: Session, **kwargs: object) -> object:
        if kwargs.get("deal_id") == deal_ids[1]:
            raise RuntimeError("notification store unavailable")
        return real_notification(session, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(assignment, "create_notification", flaky_notification)

    summary = assign_leads(db_session, NOW)

    assert summary.assigned == [(deal_ids[0], first.id), (deal_ids[2], first.id)]
    assert summary.skipped == 1
    db_session.expire_all()
    owners = [db_session.get(CRMDeal, deal_id).owner_id for deal_id in deal_ids]  # type: ignore[union-attr]
    assert owners == [first.id, None, first.id]
    failed_activity = db_session.scalars(select(CRMActivity).where(CRMActivity.deal_id == deal_ids[1])).all()
    assert failed_activity == []


def test_no_candidates_warns_and_leaves_leads_unowned(
    db_session: Session, caplog: pytest.LogCaptureFixture
) -> None:
    _user(db_session, "intern@example.com", role="intern")
    _leads(db_session, 2)
    caplog.set_level(logging.WARNING)

    summary = assign_leads(db_session, NOW)

    assert summary.count == 0
    assert all(deal.owner_id is None for deal in db_session.scalars(select(CRMDeal)).all())
    warnings = [record for record in caplog.records if record.getMessage() == "assignment.no_candidates"]
    assert len(warnings) == 1
    assert getattr(warnings[0], "count", None) == 2

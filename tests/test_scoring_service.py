from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.automation.scoring import (
    calculate_score,
    compute_score,
    recalculate_all_scores,
    recalculate_deal_score,
)
from growthengine.core.config import get_settings
from growthengine.core.database import Base
from growthengine.crm.models import CRMActivity, CRMContact, CRMDeal, as_utc


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


def _activity(type: str, *, days_ago: float = 0, content: str | None = None) -> CRMActivity:
    return CRMActivity(type=type, content=content, occurred_at=NOW - timedelta(days=days_ago))


def _deal(session: Session, *, stage: str = "Lead", name: str = "Acme renewal") -> CRMDeal:
    deal = CRMDeal(name=name, value=Decimal("1000"), stage=stage, probability=10, last_activity_date=NOW)
    session.add(deal)
    session.commit()
    return deal


def test_no_activities_scores_zero_without_latest_date() -> None:
    result = compute_score([], now=NOW)
    assert result.score == 0
    assert result.latest_date is None
    assert result.error is None


def test_opens_and_clicks_add_points() -> None:
    activities = [_activity("EMAIL_OPENED"), _activity("EMAIL_OPENED"), _activity("LINK_CLICKED")]
    assert compute_score(activities, now=NOW).score == 20


def test_contact_touches_only_count_for_contacts() -> None:
    activities = [_activity("CALL"), _activity("MEETING"), _activity("NOTE"), _activity("EMAIL")]
    assert compute_score(activities, subject_type="deal", now=NOW).score == 0
    assert compute_score(activities, subject_type="contact", now=NOW).score == 6


def test_legacy_system_rows_are_scored_by_content() -> None:
    activities = [
        _activity("SYSTEM", content="Email Opened (pixel fired)"),
        _activity("SYSTEM", content="Link Clicked: https://example.com"),
        _activity("SYSTEM", content="System assigned lead to rep@example.com"),
    ]
    assert compute_score(activities, now=NOW).score == 15


def test_silence_beyond_five_days_costs_a_flat_penalty() -> None:
    activities = [_activity("LINK_CLICKED", days_ago=6) for _ in range(4)]
    result = compute_score(activities, now=NOW)
    assert result.score == 20
    assert result.latest_date == NOW - timedelta(days=6)


def test_exactly_five_days_of_silence_is_not_penalised() -> None:
    activities = [_activity("LINK_CLICKED", days_ago=5)]
    assert compute_score(activities, now=NOW).score == 10


def test_penalty_uses_most_recent_activity() -> None:
    activities = [_activity("LINK_CLICKED", days_ago=30), _activity("EMAIL_OPENED", days_ago=1)]
    result = compute_score(activities, now=NOW)
    assert result.score == 15
    assert result.latest_date == NOW - timedelta(days=1)


def test_score_is_clamped_to_bounds() -> None:
    many_clicks = [_activity("LINK_CLICKED") for _ in range(15)]
    assert compute_score(many_clicks, now=NOW).score == 100

    one_old_open = [_activity("EMAIL_OPENED", days_ago=10)]
    assert compute_score(one_old_open, now=NOW).score == 0


def test_decay_settings_come_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCORE_DECAY_DAYS", "1")
    monkeypatch.setenv("SCORE_DECAY_PENALTY", "5")
    get_settings.cache_clear()

    activities = [_activity("LINK_CLICKED", days_ago=2)]
    assert compute_score(activities, now=NOW).score == 5


def test_calculate_score_reads_deal_or_contact_activity(db_session: Session) -> None:
    contact = CRMContact(first_name="Dana")
    db_session.add(contact)
    db_session.flush()
    deal = _deal(db_session)
    db_session.add_all(
        [
            CRMActivity(deal_id=deal.id, contact_id=contact.id, type="EMAIL_OPENED", occurred_at=NOW),
            CRMActivity(deal_id=None, contact_id=contact.id, type="CALL", occurred_at=NOW),
        ]
    )
    db_session.commit()

    deal_score = calculate_score(db_session, "deal", deal.id, now=NOW)
    contact_score = calculate_score(db_session, "contact", contact.id, now=NOW)

    assert deal_score.score == 5
    assert contact_score.score == 7
    assert as_utc(contact_score.latest_date) == NOW


def test_calculate_score_reports_storage_errors(db_session: Session) -> None:
    CRMActivity.__table__.drop(bind=db_session.get_bind())

    result = calculate_score(db_session, "deal", uuid.uuid4(), now=NOW)

    assert result.score == 0
    assert result.latest_date is None
    assert result.error

    CRMActivity.__table__.create(bind=db_session.get_bind())


def test_recalculate_deal_score_persists(db_session: Session) -> None:
    deal = _deal(db_session)
    db_session.add(CRMActivity(deal_id=deal.id, type="LINK_CLICKED", occurred_at=NOW))
    db_session.commit()

    result = recalculate_deal_score(db_session, deal.id, now=NOW)

    assert result["score"] == 10
    db_session.refresh(deal)
    assert deal.lead_score == 10
    assert as_utc(deal.score_updated_at) == NOW


def test_recalculate_deal_score_missing_deal_is_404(db_session: Session) -> None:
    with pytest.raises(HTTPException) as exc_info:
        recalculate_deal_score(db_session, uuid.uuid4(), now=NOW)
    assert exc_info.value.status_code == 404


def test_recalculate_all_scores_skips_terminal_deals(db_session: Session) -> None:
    open_deal = _deal(db_session, name="Open")
    closed_deal = _deal(db_session, name="Closed", stage="Closed")
    for deal in (open_deal, closed_deal):
        db_session.add(CRMActivity(deal_id=deal.id, type="EMAIL_OPENED", occurred_at=NOW - timedelta(days=1)))
    db_session.commit()

    summary = recalculate_all_scores(db_session, NOW)

    assert summary == {"updated": 1, "failures": 0}
    db_session.refresh(open_deal)
    db_session.refresh(closed_deal)
    assert open_deal.lead_score == 5
    assert closed_deal.lead_score is None

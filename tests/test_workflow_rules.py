from __future__ import annotations

import math
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.automation.rules import (
    describe_action,
    dry_run_rule,
    evaluate_condition,
    evaluate_workflow_rules,
    to_number,
    to_text,
)
from growthengine.core.config import get_settings
from growthengine.core.database import Base
from growthengine.crm.models import CRMDeal, CRMNotification, CRMUser, CRMWorkflowRule


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


def _deal(**overrides: object) -> CRMDeal:
    values: dict[str, object] = {
        "name": "Globex expansion",
        "value": Decimal("60000.00"),
        "stage": "Negotiation",
        "probability": 70,
        "is_stale": False,
        "cold_pool": False,
        "last_activity_date": NOW,
    }
    values.update(overrides)
    return CRMDeal(**values)


def _rule(name: str, field: str, op: str, value: str, action: str = "send_notification", action_value: str | None = None) -> CRMWorkflowRule:
    return CRMWorkflowRule(
        name=name,
        is_active=True,
        trigger_field=field,
        trigger_op=op,
        trigger_value=value,
        action_type=action,
        action_value=action_value,
    )


def test_to_number_treats_unparseable_values_as_nan() -> None:
    assert to_number("50000") == 50000.0
    assert to_number(Decimal("12.50")) == 12.5
    assert math.isnan(to_number("lots"))
    assert math.isnan(to_number(None))
    assert math.isnan(to_number(True))


def test_to_number_reads_leading_number_from_text() -> None:
    assert to_number("50,000") == 50.0
    assert to_number("50000 USD") == 50000.0
    assert to_number("  -12.5%") == -12.5
    assert to_number("1_000") == 1.0
    assert to_number(".5") == 0.5
    assert to_number("2e3 units") == 2000.0
    assert math.isnan(to_number("USD 50000"))
    assert math.isnan(to_number(""))


def test_to_text_renders_booleans_and_integral_numbers() -> None:
    assert to_text(True) == "true"
    assert to_text(False) == "false"
    assert to_text(Decimal("60000.00")) == "60000"
    assert to_text(12.5) == "12.5"
    assert to_text(None) == ""


def test_numeric_operators() -> None:
    deal = _deal()
    assert evaluate_condition(deal, "deal_value", "gt", "50000")
    assert evaluate_condition(deal, "deal_value", "gte", "60000")
    assert not evaluate_condition(deal, "deal_value", "lt", "60000")
    assert evaluate_condition(deal, "probability", "lte", "70")


def test_numeric_comparison_with_text_never_matches() -> None:
    deal = _deal()
    assert not evaluate_condition(deal, "deal_value", "gt", "abc")
    assert not evaluate_condition(deal, "deal_value", "lt", "abc")
    assert not evaluate_condition(deal, "stage", "gt", "0")


def test_equality_is_case_insensitive_text() -> None:
    deal = _deal()
    assert evaluate_condition(deal, "stage", "eq", "negotiation")
    assert evaluate_condition(deal, "stage", "neq", "Lead")
    assert evaluate_condition(deal, "deal_value", "eq", "60000")


def test_boolean_fields_compare_as_text() -> None:
    deal = _deal(is_stale=True)
    assert evaluate_condition(deal, "is_stale", "eq", "true")
    assert evaluate_condition(deal, "cold_pool", "eq", "FALSE")
    assert not evaluate_condition(deal, "is_stale", "gt", "0")


def test_contains_is_case_insensitive_substring() -> None:
    deal = _deal(stage="Proposal Sent")
    assert evaluate_condition(deal, "stage", "contains", "proposal")
    assert not evaluate_condition(deal, "stage", "contains", "closed")


def test_unknown_field_or_operator_never_matches() -> None:
    deal = _deal()
    assert not evaluate_condition(deal, "owner", "eq", "x")
    assert not evaluate_condition(deal, "stage", "regex", "Neg.*")


def test_describe_action_texts() -> None:
    assert describe_action("cc_manager", None) == "Manager CC has been activated for this deal."
    assert describe_action("change_stage", "Won") == "Stage will be changed to: Won"
    assert describe_action("assign_to", "rep@example.com") == "Deal will be assigned to user: rep@example.com"
    assert describe_action("send_notification", "Big deal") == "A notification has been dispatched: Big deal"


def test_evaluate_returns_matches_in_rule_order_and_notifies_owner(db_session: Session) -> None:
    owner = CRMUser(email="owner@example.com", role="rep")
    db_session.add(owner)
    db_session.flush()
    deal = _deal(owner_id=owner.id)
    db_session.add(deal)
    db_session.add(_rule("Big deal", "deal_value", "gt", "50000", "cc_manager"))
    db_session.commit()
    db_session.add(_rule("Late stage", "stage", "eq", "negotiation", "change_stage", "Contract"))
    db_session.add(_rule("Never", "probability", "lt", "10"))
    db_session.commit()

    triggered = evaluate_workflow_rules(db_session, deal)
    db_session.commit()

    assert [item.rule_name for item in triggered] == ["Big deal", "Late stage"]
    assert triggered[1].action_value == "Contract"

    notifications = db_session.scalars(select(CRMNotification).where(CRMNotification.user_id == owner.id)).all()
    assert sorted(item.title for item in notifications) == [
        "Workflow Triggered: Big deal",
        "Workflow Triggered: Late stage",
    ]
    assert all(item.type == "WORKFLOW" for item in notifications)


def test_evaluate_ignores_inactive_and_deleted_rules(db_session: Session) -> None:
    deal = _deal()
    db_session.add(deal)
    inactive = _rule("Inactive", "deal_value", "gt", "1")
    inactive.is_active = False
    deleted = _rule("Deleted", "deal_value", "gt", "1")
    deleted.deleted_at = NOW
    db_session.add_all([inactive, deleted])
    db_session.commit()

    assert evaluate_workflow_rules(db_session, deal) == []


def test_evaluate_without_owner_creates_no_notifications(db_session: Session) -> None:
    deal = _deal(owner_id=None)
    db_session.add(deal)
    db_session.add(_rule("Big deal", "deal_value", "gt", "50000"))
    db_session.commit()

    assert len(evaluate_workflow_rules(db_session, deal)) == 1
    assert db_session.scalars(select(CRMNotification)).all() == []


def test_evaluate_degrades_to_empty_when_rule_table_is_missing(db_session: Session) -> None:
    deal = _deal()
    db_session.add(deal)
    db_session.commit()
    CRMWorkflowRule.__table__.drop(bind=db_session.get_bind())

    assert evaluate_workflow_rules(db_session, deal) == []

    CRMWorkflowRule.__table__.create(bind=db_session.get_bind())


def test_dry_run_counts_open_deals_only(db_session: Session) -> None:
    db_session.add_all(
        [
            _deal(name="A", value=Decimal("70000")),
            _deal(name="B", value=Decimal("10000")),
            _deal(name="C", value=Decimal("90000"), stage="Closed"),
        ]
    )
    db_session.commit()

    result = dry_run_rule(db_session, "deal_value", "gt", "50000")

    assert result["total_deals"] == 2
    assert result["matched_count"] == 1
    assert result["matched_deals"][0]["name"] == "A"
    assert db_session.scalars(select(CRMNotification)).all() == []

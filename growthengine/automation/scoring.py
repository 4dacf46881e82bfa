"""Lead scoring.

A score is a bounded 0-100 engagement measure built from a subject's activity
log: opens and clicks add points, contact-level touches add a little, and a
long silence costs a flat penalty.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.core.config import get_settings
from growthengine.crm.models import CRMActivity, CRMDeal, as_utc, utcnow
from growthengine.metrics import observe_lead_score


logger = logging.getLogger("growthengine.automation.scoring")

SubjectType = Literal["deal", "contact"]

SCORE_MIN = 0
SCORE_MAX = 100

_EVENT_POINTS: dict[str, int] = {
    "EMAIL_OPENED": 5,
    "LINK_CLICKED": 10,
}
_CONTACT_TOUCH_POINTS: dict[str, int] = {
    "CALL": 2,
    "MEETING": 2,
    "NOTE": 2,
}
# Tracking events recorded before EMAIL_OPENED/LINK_CLICKED existed were stored as SYSTEM rows.
_LEGACY_SYSTEM_PHRASES: tuple[tuple[str, int], ...] = (
    ("email opened", 5),
    ("link clicked", 10),
)


@dataclass(frozen=True)
class ScoreResult:
    score: int
    latest_date: datetime | None
    error: str | None = None


def _activity_points(activity: CRMActivity, subject_type: SubjectType) -> int:
    points = _EVENT_POINTS.get(activity.type)
    if points is not None:
        return points
    if subject_type == "contact" and activity.type in _CONTACT_TOUCH_POINTS:
        return _CONTACT_TOUCH_POINTS[activity.type]
    if activity.type == "SYSTEM" and activity.content:
        content = activity.content.lower()
        for phrase, legacy_points in _LEGACY_SYSTEM_PHRASES:
            if phrase in content:
                return legacy_points
    return 0


def clamp_score(raw: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, raw))


def compute_score(
    activities: Iterable[CRMActivity],
    *,
    subject_type: SubjectType = "deal",
    now: datetime | None = None,
) -> ScoreResult:
    settings = get_settings()
    reference = as_utc(now) or utcnow()

    raw = 0
    latest: datetime | None = None
    for activity in activities:
        raw += _activity_points(activity, subject_type)
        occurred_at = as_utc(activity.occurred_at)
        if occurred_at is not None and (latest is None or occurred_at > latest):
            latest = occurred_at

    if latest is not None and reference - latest > timedelta(days=settings.score_decay_days):
        raw -= settings.score_decay_penalty

    return ScoreResult(score=clamp_score(raw), latest_date=latest)


def _load_activities(session: Session, subject_type: SubjectType, subject_id: uuid.UUID) -> list[CRMActivity]:
    column = CRMActivity.deal_id if subject_type == "deal" else CRMActivity.contact_id
    stmt = select(CRMActivity).where(column == subject_id).order_by(CRMActivity.occurred_at.desc())
    return list(session.scalars(stmt).all())


def calculate_score(
    session: Session,
    subject_type: SubjectType,
    subject_id: uuid.UUID,
    now: datetime | None = None,
) -> ScoreResult:
    """Compute a score without persisting it. Never raises."""
    try:
        activities = _load_activities(session, subject_type, subject_id)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("score.calculate_failed", extra={"error": str(exc)})
        return ScoreResult(score=0, latest_date=None, error=str(exc)[:500])
    return compute_score(activities, subject_type=subject_type, now=now)


def recalculate_deal_score(session: Session, deal_id: uuid.UUID, now: datetime | None = None) -> dict[str, Any]:
    """Compute and persist a deal's score. Database errors propagate."""
    deal = session.get(CRMDeal, deal_id)
    if deal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")

    result = compute_score(_load_activities(session, "deal", deal_id), subject_type="deal", now=now)
    stamped_at = as_utc(now) or utcnow()
    deal.lead_score = result.score
    deal.score_updated_at = stamped_at
    session.add(deal)
    session.commit()
    observe_lead_score(result.score)

    return {
        "deal_id": deal_id,
        "score": result.score,
        "latest_date": result.latest_date,
        "score_updated_at": stamped_at,
    }


def recalculate_all_scores(session: Session, now: datetime) -> dict[str, int]:
    """Rescore every open deal so the silence penalty reaches deals with no new events."""
    settings = get_settings()
    deal_ids = list(
        session.scalars(
            select(CRMDeal.id).where(CRMDeal.stage.not_in(settings.terminal_stages)).order_by(CRMDeal.created_at)
        ).all()
    )

    updated = 0
    failures = 0
    for deal_id in deal_ids:
        try:
            recalculate_deal_score(session, deal_id, now=now)
            updated += 1
        except (SQLAlchemyError, HTTPException) as exc:
            session.rollback()
            failures += 1
            logger.warning("score.recalculate_failed", extra={"deal_id": str(deal_id), "error": str(exc)})

    logger.info("score.recalculated", extra={"count": updated})
    return {"updated": updated, "failures": failures}

"""Stale and cold-pool escalation.

Inactive deals move through three tiers, each keyed on time since the last
activity:

* A, stale alert: flag the deal and warn its owner.
* B, escalation: tell the owner's manager, once.
* C, cold pool: unassign the deal for manual re-triage.

Every tier query excludes deals already past that tier's flag, so each
transition fires at most once per threshold crossing.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from html import escape

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.automation.notify import create_notification
from growthengine.core.config import get_settings
from growthengine.crm.models import CRMActivity, CRMDeal, CRMUser, as_utc
from growthengine.mailer import send_email
from growthengine.metrics import observe_escalation


logger = logging.getLogger("growthengine.automation.escalation")


@dataclass
class PendingEmail:
    to: str
    subject: str
    html: str


@dataclass
class EscalationSummary:
    stale_alerts: list[uuid.UUID] = field(default_factory=list)
    escalations: list[uuid.UUID] = field(default_factory=list)
    cold_pooled: list[uuid.UUID] = field(default_factory=list)
    failures: int = 0

    @property
    def count(self) -> int:
        return len(self.stale_alerts) + len(self.escalations) + len(self.cold_pooled)

    def as_dict(self) -> dict[str, int]:
        return {
            "stale_alerts": len(self.stale_alerts),
            "escalations": len(self.escalations),
            "cold_pooled": len(self.cold_pooled),
            "failures": self.failures,
        }


def days_inactive(deal: CRMDeal, now: datetime) -> int:
    last_activity = as_utc(deal.last_activity_date) or now
    return max(0, (now - last_activity) // timedelta(days=1))


def _display_name(user: CRMUser) -> str:
    return user.full_name or user.email


def _alert_html(heading: str, greeting_to: CRMUser, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{paragraph}</p>" for paragraph in paragraphs)
    return (
        '<div style="font-family:sans-serif;max-width:560px;margin:auto">'
        f"<h2>{escape(heading)}</h2>"
        f"<p>Hi {escape(_display_name(greeting_to))},</p>"
        f"{body}"
        '<hr style="border:none;border-top:1px solid #e5e7eb;margin:24px 0"/>'
        '<p style="color:#9ca3af;font-size:11px">GrowthEngine automated alert</p>'
        "</div>"
    )


def _stale_alert_query(now: datetime, terminal_stages: list[str], threshold_days: int) -> Select[tuple[uuid.UUID]]:
    return (
        select(CRMDeal.id)
        .where(
            CRMDeal.last_activity_date < now - timedelta(days=threshold_days),
            CRMDeal.stage.not_in(terminal_stages),
            CRMDeal.cold_pool.is_(False),
            CRMDeal.is_stale.is_(False),
            CRMDeal.owner_id.is_not(None),
        )
        .order_by(CRMDeal.last_activity_date, CRMDeal.id)
    )


def _escalation_query(now: datetime, terminal_stages: list[str], threshold_days: int) -> Select[tuple[uuid.UUID]]:
    return (
        select(CRMDeal.id)
        .where(
            CRMDeal.last_activity_date < now - timedelta(days=threshold_days),
            CRMDeal.stage.not_in(terminal_stages),
            CRMDeal.is_stale.is_(True),
            CRMDeal.escalation_sent_at.is_(None),
            CRMDeal.cold_pool.is_(False),
        )
        .order_by(CRMDeal.last_activity_date, CRMDeal.id)
    )


def _cold_pool_query(now: datetime, terminal_stages: list[str], threshold_days: int) -> Select[tuple[uuid.UUID]]:
    return (
        select(CRMDeal.id)
        .where(
            CRMDeal.last_activity_date < now - timedelta(days=threshold_days),
            CRMDeal.stage.not_in(terminal_stages),
            CRMDeal.cold_pool.is_(False),
        )
        .order_by(CRMDeal.last_activity_date, CRMDeal.id)
    )


def _apply_stale_alert(session: Session, deal: CRMDeal, now: datetime) -> list[PendingEmail] | None:
    owner = deal.owner
    if owner is None:
        return None
    days = days_inactive(deal, now)

    deal.is_stale = True
    session.add(deal)
    session.add(
        CRMActivity(
            deal_id=deal.id,
            type="ALERT",
            content=f"[STALE ALERT] Deal inactive for {days} day(s). Owner: {owner.email}.",
            occurred_at=now,
        )
    )
    create_notification(
        session,
        user_id=owner.id,
        type="STALE_ALERT",
        title=f"Stale Deal: {deal.name}",
        body=f"This deal has had no activity for {days} day(s). Please follow up immediately.",
        deal_id=deal.id,
    )
    html = _alert_html(
        "Stale Deal Alert",
        owner,
        [
            f"The deal <strong>{escape(deal.name)}</strong> has had <strong>no activity for {days} day(s)</strong>.",
            "Please log a call, email, or note to keep this deal moving.",
            "If no activity is logged within 10 days, this deal will be moved to the Cold Pool.",
        ],
    )
    return [PendingEmail(to=owner.email, subject=f"[Action Required] Stale Deal: {deal.name}", html=html)]


def _apply_escalation(session: Session, deal: CRMDeal, now: datetime) -> list[PendingEmail] | None:
    owner = deal.owner
    manager = owner.manager if owner is not None else None
    if owner is None or manager is None:
        # left un-stamped so the deal escalates once a manager is set
        logger.debug("escalation.no_manager", extra={"deal_id": str(deal.id)})
        return None
    days = days_inactive(deal, now)

    deal.escalation_sent_at = now
    session.add(deal)
    session.add(
        CRMActivity(
            deal_id=deal.id,
            type="ALERT",
            content=f"[ESCALATION] Deal inactive for {days} day(s). Manager {manager.email} notified.",
            occurred_at=now,
        )
    )
    html = _alert_html(
        "Stale Deal Escalation",
        manager,
        [
            f"The deal <strong>{escape(deal.name)}</strong> owned by "
            f"<strong>{escape(_display_name(owner))}</strong> has had no activity for {days} day(s).",
            "The owner was alerted and has not logged any activity since.",
        ],
    )
    return [PendingEmail(to=manager.email, subject=f"[Escalation] Stale Deal: {deal.name}", html=html)]


def _apply_cold_pool(session: Session, deal: CRMDeal, now: datetime) -> list[PendingEmail] | None:
    former_owner = deal.owner
    days = days_inactive(deal, now)

    deal.cold_pool = True
    deal.is_stale = True
    deal.owner = None
    deal.owner_id = None
    session.add(deal)
    session.add(
        CRMActivity(
            deal_id=deal.id,
            type="SYSTEM",
            content=f"[COLD POOL] Deal moved to Cold Pool after {days} days of inactivity. Owner unassigned.",
            occurred_at=now,
        )
    )
    if former_owner is None:
        return []

    create_notification(
        session,
        user_id=former_owner.id,
        type="COLD_POOL",
        title=f"Deal Moved to Cold Pool: {deal.name}",
        body=f"After {days} days without activity, this deal has been moved to the Cold Pool and unassigned.",
        deal_id=deal.id,
    )
    html = _alert_html(
        "Deal Moved to Cold Pool",
        former_owner,
        [
            f"The deal <strong>{escape(deal.name)}</strong> has been moved to the <strong>Cold Pool</strong> "
            f"after <strong>{days} days</strong> of inactivity.",
            "The deal has been unassigned from your pipeline. An admin can re-activate and reassign it at any time.",
        ],
    )
    return [PendingEmail(to=former_owner.email, subject=f"[Cold Pool] Deal Moved: {deal.name}", html=html)]


# A handler stages one deal's transition; None means the deal was skipped.
TierHandler = Callable[[Session, CRMDeal, datetime], "list[PendingEmail] | None"]


def _run_tier(
    session: Session,
    tier: str,
    deal_ids: list[uuid.UUID],
    handler: TierHandler,
    now: datetime,
    fired: list[uuid.UUID],
    summary: EscalationSummary,
) -> None:
    for deal_id in deal_ids:
        try:
            deal = session.get(CRMDeal, deal_id)
            if deal is None:
                continue
            emails = handler(session, deal, now)
            if emails is None:
                session.rollback()
                continue
            session.commit()
        except Exception as exc:
            session.rollback()
            summary.failures += 1
            logger.warning("escalation.deal_failed", extra={"deal_id": str(deal_id), "tier": tier, "error": str(exc)})
            continue

        fired.append(deal_id)
        observe_escalation(tier)
        logger.info("escalation.fired", extra={"deal_id": str(deal_id), "tier": tier})
        for email in emails:
            try:
                delivered = send_email(to=email.to, subject=email.subject, html=email.html)
            except Exception as exc:
                delivered = False
                logger.warning("escalation.email_failed", extra={"deal_id": str(deal_id), "tier": tier, "error": str(exc)})
            if not delivered:
                summary.failures += 1


def check_stale_deals(session: Session, now: datetime) -> EscalationSummary:
    """Run tiers A, B and C in order; each deal's transition commits on its own."""
    settings = get_settings()
    terminal = list(settings.terminal_stages)
    summary = EscalationSummary()

    tiers: list[tuple[str, Select[tuple[uuid.UUID]], TierHandler, list[uuid.UUID]]] = [
        ("stale_alert", _stale_alert_query(now, terminal, settings.stale_after_days), _apply_stale_alert, summary.stale_alerts),
        ("escalation", _escalation_query(now, terminal, settings.escalate_after_days), _apply_escalation, summary.escalations),
        ("cold_pool", _cold_pool_query(now, terminal, settings.cold_pool_after_days), _apply_cold_pool, summary.cold_pooled),
    ]

    for tier, stmt, handler, fired in tiers:
        try:
            deal_ids = list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            session.rollback()
            summary.failures += 1
            logger.warning("escalation.query_failed", extra={"tier": tier, "error": str(exc)})
            continue
        logger.info("escalation.candidates", extra={"tier": tier, "count": len(deal_ids)})
        _run_tier(session, tier, deal_ids, handler, now, fired, summary)

    return summary

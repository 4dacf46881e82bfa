from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from html import escape

from sqlalchemy import select
from sqlalchemy.orm import Session

from growthengine.automation.notify import create_notification
from growthengine.core.config import get_settings
from growthengine.crm.models import CRMDeal
from growthengine.mailer import send_email


logger = logging.getLogger("growthengine.automation.followups")


@dataclass
class FollowUpSummary:
    notified: list[uuid.UUID] = field(default_factory=list)
    failures: int = 0

    @property
    def count(self) -> int:
        return len(self.notified)

    def as_dict(self) -> dict[str, int]:
        return {"notified": self.count, "failures": self.failures}


def due_follow_ups(session: Session, now: datetime) -> list[uuid.UUID]:
    settings = get_settings()
    stmt = (
        select(CRMDeal.id)
        .where(
            CRMDeal.owner_id.is_not(None),
            CRMDeal.next_follow_up_at.is_not(None),
            CRMDeal.next_follow_up_at <= now,
            CRMDeal.follow_up_notified.is_(False),
            CRMDeal.stage.not_in(settings.terminal_stages),
        )
        .order_by(CRMDeal.next_follow_up_at, CRMDeal.id)
    )
    return list(session.scalars(stmt).all())


def check_follow_ups(session: Session, now: datetime) -> FollowUpSummary:
    """Remind owners of due follow-ups, once per scheduled follow-up."""
    summary = FollowUpSummary()
    for deal_id in due_follow_ups(session, now):
        try:
            deal = session.get(CRMDeal, deal_id)
            if deal is None or deal.owner is None:
                continue
            owner = deal.owner
            to_email, greeting, deal_name = owner.email, owner.full_name or owner.email, deal.name
            create_notification(
                session,
                user_id=owner.id,
                type="FOLLOW_UP",
                title=f"Follow-up due: {deal.name}",
                body="A scheduled follow-up for this deal is now due.",
                deal_id=deal.id,
            )
            deal.follow_up_notified = True
            session.add(deal)
            session.commit()
        except Exception as exc:
            session.rollback()
            summary.failures += 1
            logger.warning("follow_up.failed", extra={"deal_id": str(deal_id), "error": str(exc)})
            continue

        summary.notified.append(deal_id)
        try:
            delivered = send_email(
                to=to_email,
                subject=f"[Reminder] Follow up on {deal_name}",
                html=(
                    f"<p>Hi {escape(greeting)},</p>"
                    f"<p>Your follow-up for <strong>{escape(deal_name)}</strong> is due now.</p>"
                ),
            )
        except Exception as exc:
            delivered = False
            logger.warning("follow_up.email_failed", extra={"deal_id": str(deal_id), "error": str(exc)})
        if not delivered:
            summary.failures += 1

    if summary.notified:
        logger.info("follow_up.notified", extra={"count": summary.count})
    return summary

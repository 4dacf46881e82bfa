from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from growthengine.automation.notify import create_notification
from growthengine.core.config import get_settings
from growthengine.crm.models import CRMActivity, CRMDeal, CRMUser
from growthengine.metrics import observe_leads_assigned


logger = logging.getLogger("growthengine.automation.assignment")

LEAD_STAGE = "Lead"
ASSIGNABLE_ROLES = ("rep", "manager")


@dataclass
class AssignmentSummary:
    assigned: list[tuple[uuid.UUID, uuid.UUID]] = field(default_factory=list)
    skipped: int = 0

    @property
    def count(self) -> int:
        return len(self.assigned)

    def as_dict(self) -> dict[str, int]:
        return {"assigned": self.count, "skipped": self.skipped}


def unassigned_leads(session: Session, limit: int) -> list[CRMDeal]:
    stmt = (
        select(CRMDeal)
        .where(CRMDeal.stage == LEAD_STAGE, CRMDeal.owner_id.is_(None))
        .order_by(CRMDeal.created_at, CRMDeal.id)
        .limit(limit)
    )
    return list(session.scalars(stmt).all())


def assignment_candidates(session: Session) -> list[CRMUser]:
    """Active reps and managers, least recently assigned first; never-assigned users lead."""
    stmt = (
        select(CRMUser)
        .where(CRMUser.is_active.is_(True), CRMUser.role.in_(ASSIGNABLE_ROLES))
        .order_by(
            CRMUser.last_assigned_at.is_not(None),
            CRMUser.last_assigned_at,
            CRMUser.created_at,
            CRMUser.id,
        )
    )
    return list(session.scalars(stmt).all())


def _assign_one(session: Session, deal: CRMDeal, user: CRMUser, now: datetime) -> bool:
    claimed = session.execute(
        update(CRMDeal)
        .where(CRMDeal.id == deal.id, CRMDeal.owner_id.is_(None))
        .values(owner_id=user.id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        session.rollback()
        return False

    user.last_assigned_at = now
    session.add(user)
    session.add(
        CRMActivity(
            deal_id=deal.id,
            contact_id=deal.contact_id,
            type="SYSTEM",
            content=f"System assigned lead to {user.email}",
            occurred_at=now,
        )
    )
    create_notification(
        session,
        user_id=user.id,
        type="ASSIGNMENT",
        title="New lead assigned",
        body=f"You have been assigned the lead: {deal.name}",
        deal_id=deal.id,
    )
    session.commit()
    return True


def assign_leads(session: Session, now: datetime) -> AssignmentSummary:
    """Round-robin every unowned lead across the candidate pool.

    Lead ``i`` (oldest first) goes to candidate ``i mod m``. Each assignment commits
    on its own, and a lead claimed by someone else in the meantime is skipped.
    """
    settings = get_settings()
    summary = AssignmentSummary()

    leads = unassigned_leads(session, settings.assignment_batch_size)
    if not leads:
        return summary

    candidates = assignment_candidates(session)
    if not candidates:
        logger.warning("assignment.no_candidates", extra={"count": len(leads)})
        return summary

    lead_ids = [lead.id for lead in leads]
    candidate_ids = [candidate.id for candidate in candidates]

    for index, deal_id in enumerate(lead_ids):
        user_id = candidate_ids[index % len(candidate_ids)]
        try:
            deal = session.get(CRMDeal, deal_id)
            user = session.get(CRMUser, user_id)
            if deal is None or user is None:
                summary.skipped += 1
                continue
            if _assign_one(session, deal, user, now):
                summary.assigned.append((deal_id, user_id))
                logger.info("assignment.assigned", extra={"deal_id": str(deal_id), "user_id": str(user_id)})
            else:
                summary.skipped += 1
        except Exception as exc:
            session.rollback()
            summary.skipped += 1
            logger.warning("assignment.failed", extra={"deal_id": str(deal_id), "error": str(exc)})

    observe_leads_assigned(summary.count)
    return summary

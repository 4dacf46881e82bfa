from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from growthengine import audit
from growthengine.automation.rules import TriggeredAction, dry_run_rule, evaluate_workflow_rules
from growthengine.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMNotification,
    CRMUser,
    CRMWorkflowRule,
    as_utc,
    utcnow,
)
from growthengine.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealCreate,
    DealRead,
    DealUpdate,
    NotificationRead,
    PipelineStats,
    StageStats,
    TriggeredActionRead,
    UserRead,
    UserUpdate,
    WorkflowRuleCreate,
    WorkflowRuleRead,
    WorkflowRuleTestRequest,
    WorkflowRuleTestResponse,
    WorkflowRuleUpdate,
)
from growthengine.mailer import send_email


logger = logging.getLogger("growthengine.crm")

# Activity types written by automation; they never count as engagement on the deal.
AUTOMATION_ACTIVITY_TYPES = frozenset({"SYSTEM", "ALERT"})


@dataclass
class ActorUser:
    user_id: uuid.UUID
    email: str
    role: str
    correlation_id: str | None = None


def record_activity(
    session: Session,
    deal: CRMDeal,
    *,
    type: str,
    content: str | None,
    contact_id: uuid.UUID | None = None,
    actor_id: uuid.UUID | None = None,
    occurred_at: datetime | None = None,
) -> CRMActivity:
    """Append an activity and move the deal's inactivity clock for engagement types.

    A touched deal that is not cold-pooled also loses its stale and escalation marks,
    so the next period of silence counts as a new threshold crossing.
    """
    occurred = as_utc(occurred_at) or utcnow()
    activity = CRMActivity(
        deal_id=deal.id,
        contact_id=contact_id or deal.contact_id,
        type=type,
        content=content,
        actor_id=actor_id,
        occurred_at=occurred,
    )
    session.add(activity)

    if type not in AUTOMATION_ACTIVITY_TYPES:
        last_activity = as_utc(deal.last_activity_date)
        if last_activity is None or occurred > last_activity:
            deal.last_activity_date = occurred
        if not deal.cold_pool:
            deal.is_stale = False
            deal.escalation_sent_at = None
        session.add(deal)
    return activity


class UserService:
    def sync_user(self, session: Session, email: str, full_name: str | None = None) -> CRMUser:
        """Find or create the user behind an identity token; the very first user becomes admin."""
        normalized = email.strip().lower()
        user = session.scalar(select(CRMUser).where(func.lower(CRMUser.email) == normalized))
        if user is not None:
            return user

        existing = session.scalar(select(func.count()).select_from(CRMUser)) or 0
        user = CRMUser(email=normalized, full_name=full_name, role="admin" if existing == 0 else "rep")
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("user.synced", extra={"user_id": str(user.id)})
        return user

    def list_users(self, session: Session) -> list[UserRead]:
        rows = session.scalars(select(CRMUser).order_by(CRMUser.created_at, CRMUser.email)).all()
        return [UserRead.model_validate(row) for row in rows]

    def update_user(self, session: Session, user_id: uuid.UUID, dto: UserUpdate, actor_user: ActorUser) -> UserRead:
        user = self._load_user(session, user_id)
        before = UserRead.model_validate(user).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        if "manager_id" in payload and payload["manager_id"] is not None:
            if payload["manager_id"] == user.id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="user cannot manage themselves")
            manager = self._load_user(session, payload["manager_id"])
            if manager.manager_id == user.id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="manager hierarchy is one level deep")

        for key in ["role", "is_active", "manager_id", "full_name"]:
            if key in payload:
                setattr(user, key, payload[key])
        session.add(user)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.user",
            entity_id=str(user.id),
            action="user.updated",
            before=before,
            after=UserRead.model_validate(user).model_dump(mode="json"),
        )
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    def _load_user(self, session: Session, user_id: uuid.UUID) -> CRMUser:
        user = session.get(CRMUser, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return user


class CompanyService:
    def create_company(self, session: Session, dto: CompanyCreate) -> CompanyRead:
        company = CRMCompany(name=dto.name.strip(), domain=dto.domain, industry=dto.industry, revenue=dto.revenue)
        session.add(company)
        session.commit()
        session.refresh(company)
        return CompanyRead.model_validate(company)

    def list_companies(self, session: Session) -> list[CompanyRead]:
        rows = session.scalars(select(CRMCompany).order_by(CRMCompany.name)).all()
        return [CompanyRead.model_validate(row) for row in rows]


class ContactService:
    def create_contact(self, session: Session, dto: ContactCreate) -> ContactRead:
        if dto.company_id is not None and session.get(CRMCompany, dto.company_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")
        contact = CRMContact(
            first_name=dto.first_name.strip(),
            last_name=dto.last_name,
            email=str(dto.email) if dto.email else None,
            phone=dto.phone,
            company_id=dto.company_id,
        )
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def list_contacts(self, session: Session, company_id: uuid.UUID | None = None) -> list[ContactRead]:
        stmt = select(CRMContact).order_by(CRMContact.first_name, CRMContact.last_name)
        if company_id is not None:
            stmt = stmt.where(CRMContact.company_id == company_id)
        return [ContactRead.model_validate(row) for row in session.scalars(stmt).all()]

    def load_contact(self, session: Session, contact_id: uuid.UUID) -> CRMContact:
        contact = session.get(CRMContact, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return contact


@dataclass
class _PendingEmail:
    to: str
    subject: str
    html: str


@dataclass
class _AppliedActions:
    emails: list[_PendingEmail] = field(default_factory=list)


class DealService:
    def list_deals(
        self,
        session: Session,
        *,
        stage: str | None = None,
        owner_id: uuid.UUID | None = None,
        cold_pool: bool | None = None,
        limit: int = 200,
    ) -> list[DealRead]:
        stmt = select(CRMDeal).order_by(CRMDeal.created_at.desc()).limit(limit)
        if stage is not None:
            stmt = stmt.where(CRMDeal.stage == stage)
        if owner_id is not None:
            stmt = stmt.where(CRMDeal.owner_id == owner_id)
        if cold_pool is not None:
            stmt = stmt.where(CRMDeal.cold_pool.is_(cold_pool))
        return [DealRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self.load_deal(session, deal_id))

    def create_deal(self, session: Session, dto: DealCreate, actor_user: ActorUser) -> DealRead:
        payload = dto.model_dump()
        self._validate_references(session, payload)
        now = utcnow()

        deal = CRMDeal(
            name=dto.name.strip(),
            value=dto.value,
            stage=dto.stage.strip(),
            probability=dto.probability,
            company_id=dto.company_id,
            contact_id=dto.contact_id,
            owner_id=dto.owner_id,
            closing_date=dto.closing_date,
            next_follow_up_at=dto.next_follow_up_at,
            last_activity_date=now,
        )
        session.add(deal)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.deal",
            entity_id=str(deal.id),
            action="deal.created",
            before=None,
            after=DealRead.model_validate(deal).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(deal)
        return self._run_workflows(session, deal)

    def update_deal(self, session: Session, deal_id: uuid.UUID, dto: DealUpdate, actor_user: ActorUser) -> DealRead:
        deal = self.load_deal(session, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)
        self._validate_references(session, payload)

        if "stage" in payload and payload["stage"] is not None:
            new_stage = payload["stage"].strip()
            if new_stage != deal.stage:
                record_activity(
                    session,
                    deal,
                    type="STAGE_CHANGE",
                    content=f"Stage changed from {deal.stage} to {new_stage}",
                    actor_id=actor_user.user_id,
                )
            payload["stage"] = new_stage

        if "next_follow_up_at" in payload:
            current = as_utc(deal.next_follow_up_at)
            if as_utc(payload["next_follow_up_at"]) != current:
                deal.follow_up_notified = False

        if payload.get("cold_pool") is False and deal.cold_pool:
            # reactivation restarts the inactivity clock
            deal.is_stale = False
            deal.escalation_sent_at = None
            deal.last_activity_date = utcnow()

        for key in [
            "name",
            "value",
            "stage",
            "probability",
            "company_id",
            "contact_id",
            "owner_id",
            "closing_date",
            "next_follow_up_at",
            "cold_pool",
        ]:
            if key in payload:
                if key in {"name", "stage", "value", "probability", "cold_pool"} and payload[key] is None:
                    continue
                setattr(deal, key, payload[key])
        session.add(deal)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.deal",
            entity_id=str(deal.id),
            action="deal.updated",
            before=before,
            after=DealRead.model_validate(deal).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(deal)
        return self._run_workflows(session, deal)

    def log_activity(
        self,
        session: Session,
        deal_id: uuid.UUID,
        dto: ActivityCreate,
        actor_user: ActorUser,
    ) -> ActivityRead:
        deal = self.load_deal(session, deal_id)
        activity = record_activity(
            session,
            deal,
            type=dto.type,
            content=dto.content,
            contact_id=dto.contact_id,
            actor_id=actor_user.user_id,
            occurred_at=dto.occurred_at,
        )
        session.commit()
        session.refresh(activity)
        return ActivityRead.model_validate(activity)

    def list_activities(self, session: Session, deal_id: uuid.UUID) -> list[ActivityRead]:
        self.load_deal(session, deal_id)
        rows = session.scalars(
            select(CRMActivity)
            .where(CRMActivity.deal_id == deal_id)
            .order_by(CRMActivity.occurred_at.desc(), CRMActivity.id)
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]

    def pipeline_stats(self, session: Session) -> PipelineStats:
        rows = session.execute(
            select(
                CRMDeal.stage,
                func.count(CRMDeal.id),
                func.coalesce(func.sum(CRMDeal.value), 0),
                func.coalesce(func.sum(CRMDeal.value * CRMDeal.probability), 0),
            )
            .group_by(CRMDeal.stage)
            .order_by(CRMDeal.stage)
        ).all()

        by_stage: list[StageStats] = []
        total_deals = 0
        total_value = Decimal("0")
        weighted = Decimal("0")
        for stage, count, value_sum, weighted_sum in rows:
            stage_value = Decimal(str(value_sum))
            by_stage.append(StageStats(stage=stage, count=int(count), value=stage_value))
            total_deals += int(count)
            total_value += stage_value
            weighted += Decimal(str(weighted_sum))

        return PipelineStats(
            total_deals=total_deals,
            total_pipeline_value=total_value,
            expected_revenue=(weighted / Decimal(100)).quantize(Decimal("0.01")),
            by_stage=by_stage,
        )

    def load_deal(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.get(CRMDeal, deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _validate_references(self, session: Session, payload: dict[str, Any]) -> None:
        if payload.get("owner_id") is not None:
            owner = session.get(CRMUser, payload["owner_id"])
            if owner is None or not owner.is_active:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="owner must be an active user")
        if payload.get("company_id") is not None and session.get(CRMCompany, payload["company_id"]) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")
        if payload.get("contact_id") is not None and session.get(CRMContact, payload["contact_id"]) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")

    def _run_workflows(self, session: Session, deal: CRMDeal) -> DealRead:
        triggered = evaluate_workflow_rules(session, deal)
        applied = self._apply_actions(session, deal, triggered)
        session.commit()
        session.refresh(deal)

        for email in applied.emails:
            send_email(to=email.to, subject=email.subject, html=email.html)

        result = DealRead.model_validate(deal)
        result.triggered_actions = [TriggeredActionRead(**action.as_dict()) for action in triggered]
        return result

    def _apply_actions(self, session: Session, deal: CRMDeal, triggered: list[TriggeredAction]) -> _AppliedActions:
        """Apply matched actions once; the resulting changes are not re-evaluated."""
        applied = _AppliedActions()
        for action in triggered:
            if action.action_type == "cc_manager":
                owner = deal.owner
                manager = owner.manager if owner is not None else None
                if manager is None:
                    continue
                applied.emails.append(
                    _PendingEmail(
                        to=manager.email,
                        subject=f"[CC] Deal update: {deal.name}",
                        html=(
                            f"<p>Hi {escape(manager.full_name or manager.email)},</p>"
                            f"<p>Workflow rule <strong>{escape(action.rule_name)}</strong> matched the deal "
                            f"<strong>{escape(deal.name)}</strong> owned by {escape(owner.email)}.</p>"
                            f"<p>Stage: {escape(deal.stage)} &middot; Value: {deal.value} &middot; "
                            f"Probability: {deal.probability}%</p>"
                        ),
                    )
                )
            elif action.action_type == "change_stage":
                target = (action.action_value or "").strip()
                if not target or target == deal.stage:
                    continue
                record_activity(
                    session,
                    deal,
                    type="SYSTEM",
                    content=f"[WORKFLOW] Stage changed from {deal.stage} to {target} by rule '{action.rule_name}'",
                )
                deal.stage = target
                session.add(deal)
            elif action.action_type == "assign_to":
                assignee = self._resolve_assignee(session, action.action_value)
                if assignee is None:
                    logger.warning(
                        "workflow.assignee_not_found",
                        extra={"deal_id": str(deal.id), "rule_id": str(action.rule_id)},
                    )
                    continue
                if deal.owner_id == assignee.id:
                    continue
                deal.owner_id = assignee.id
                session.add(deal)
                record_activity(
                    session,
                    deal,
                    type="SYSTEM",
                    content=f"[WORKFLOW] Deal assigned to {assignee.email} by rule '{action.rule_name}'",
                )
        return applied

    def _resolve_assignee(self, session: Session, value: str | None) -> CRMUser | None:
        raw = (value or "").strip()
        if not raw:
            return None
        try:
            user = session.get(CRMUser, uuid.UUID(raw))
        except ValueError:
            user = session.scalar(select(CRMUser).where(func.lower(CRMUser.email) == raw.lower()))
        if user is None or not user.is_active:
            return None
        return user


class WorkflowRuleService:
    def list_rules(self, session: Session, *, include_inactive: bool = True) -> list[WorkflowRuleRead]:
        stmt = (
            select(CRMWorkflowRule)
            .where(CRMWorkflowRule.deleted_at.is_(None))
            .order_by(CRMWorkflowRule.created_at, CRMWorkflowRule.id)
        )
        if not include_inactive:
            stmt = stmt.where(CRMWorkflowRule.is_active.is_(True))
        return [self._to_rule_read(rule) for rule in session.scalars(stmt).all()]

    def create_rule(self, session: Session, dto: WorkflowRuleCreate, actor_user: ActorUser) -> WorkflowRuleRead:
        rule = CRMWorkflowRule(
            name=dto.name.strip(),
            is_active=dto.is_active,
            trigger_field=dto.trigger_field,
            trigger_op=dto.trigger_op,
            trigger_value=dto.trigger_value.strip(),
            action_type=dto.action_type,
            action_value=dto.action_value.strip() if dto.action_value else None,
            created_by=actor_user.user_id,
        )
        session.add(rule)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.workflow_rule",
            entity_id=str(rule.id),
            action="workflow.rule.created",
            before=None,
            after=self._to_rule_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        return self._to_rule_read(rule)

    def update_rule(
        self,
        session: Session,
        rule_id: uuid.UUID,
        dto: WorkflowRuleUpdate,
        actor_user: ActorUser,
    ) -> WorkflowRuleRead:
        rule = self._load_rule(session, rule_id)
        before = self._to_rule_read(rule).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        for key in ["name", "is_active", "trigger_field", "trigger_op", "trigger_value", "action_type", "action_value"]:
            if key in payload:
                if key != "action_value" and payload[key] is None:
                    continue
                setattr(rule, key, payload[key])

        if rule.action_type in {"change_stage", "assign_to"} and not (rule.action_value or "").strip():
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"action_value is required for {rule.action_type}",
            )

        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.workflow_rule",
            entity_id=str(rule.id),
            action="workflow.rule.updated",
            before=before,
            after=self._to_rule_read(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        return self._to_rule_read(rule)

    def soft_delete_rule(self, session: Session, rule_id: uuid.UUID, actor_user: ActorUser) -> None:
        rule = self._load_rule(session, rule_id)
        before = self._to_rule_read(rule).model_dump(mode="json")

        rule.deleted_at = utcnow()
        rule.is_active = False
        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()

        audit.record(
            session,
            actor_id=str(actor_user.user_id),
            entity_type="crm.workflow_rule",
            entity_id=str(rule.id),
            action="workflow.rule.deleted",
            before=before,
            after={"deleted_at": rule.deleted_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def test_rule(self, session: Session, dto: WorkflowRuleTestRequest) -> WorkflowRuleTestResponse:
        result = dry_run_rule(session, dto.trigger_field, dto.trigger_op, dto.trigger_value)
        return WorkflowRuleTestResponse.model_validate(result)

    def _load_rule(self, session: Session, rule_id: uuid.UUID) -> CRMWorkflowRule:
        rule = session.scalar(
            select(CRMWorkflowRule).where(CRMWorkflowRule.id == rule_id, CRMWorkflowRule.deleted_at.is_(None))
        )
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow rule not found")
        return rule

    def _to_rule_read(self, rule: CRMWorkflowRule) -> WorkflowRuleRead:
        return WorkflowRuleRead.model_validate(rule)


class NotificationService:
    def list_notifications(
        self,
        session: Session,
        user_id: uuid.UUID,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationRead]:
        stmt = (
            select(CRMNotification)
            .where(CRMNotification.user_id == user_id)
            .order_by(CRMNotification.created_at.desc(), CRMNotification.id)
            .limit(limit)
        )
        if unread_only:
            stmt = stmt.where(CRMNotification.is_read.is_(False))
        return [NotificationRead.model_validate(row) for row in session.scalars(stmt).all()]

    def mark_read(self, session: Session, user_id: uuid.UUID, notification_id: uuid.UUID) -> NotificationRead:
        notification = session.scalar(
            select(CRMNotification).where(
                CRMNotification.id == notification_id,
                CRMNotification.user_id == user_id,
            )
        )
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        notification.is_read = True
        session.add(notification)
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, session: Session, user_id: uuid.UUID) -> int:
        result = session.execute(
            update(CRMNotification)
            .where(CRMNotification.user_id == user_id, CRMNotification.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return int(result.rowcount or 0)

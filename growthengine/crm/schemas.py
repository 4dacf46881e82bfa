from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, StringConstraints, model_validator

from growthengine.automation.rules import ActionType, TriggerField, TriggerOp

Role = Literal["admin", "manager", "rep", "intern"]
ActivityType = Literal[
    "CALL",
    "EMAIL",
    "NOTE",
    "MEETING",
    "SYSTEM",
    "STAGE_CHANGE",
    "ALERT",
    "EMAIL_SENT",
    "EMAIL_OPENED",
    "LINK_CLICKED",
    "FOLLOW_UP",
]

_ACTIONS_REQUIRING_VALUE = {"change_stage", "assign_to"}


def _coerce_trigger_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return value


TriggerValue = Annotated[
    str,
    BeforeValidator(_coerce_trigger_value),
    StringConstraints(strip_whitespace=True, min_length=1),
]


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str | None
    role: Role
    is_active: bool
    manager_id: UUID | None
    last_assigned_at: datetime | None
    created_at: datetime


class UserUpdate(BaseModel):
    role: Role | None = None
    is_active: bool | None = None
    manager_id: UUID | None = None
    full_name: str | None = None


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    domain: str | None = None
    industry: str | None = None
    revenue: Decimal | None = Field(default=None, ge=0)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    domain: str | None
    industry: str | None
    revenue: Decimal | None
    created_at: datetime


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str | None
    email: str | None
    phone: str | None
    company_id: UUID | None
    created_at: datetime


class TriggeredActionRead(BaseModel):
    rule_id: UUID
    rule_name: str
    action_type: str
    action_value: str | None


class DealCreate(BaseModel):
    name: str = Field(min_length=1)
    value: Decimal = Field(default=Decimal("0"), ge=0)
    stage: str = Field(default="Lead", min_length=1)
    probability: int = Field(default=0, ge=0, le=100)
    company_id: UUID | None = None
    contact_id: UUID | None = None
    owner_id: UUID | None = None
    closing_date: date | None = None
    next_follow_up_at: datetime | None = None


class DealUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    stage: str | None = Field(default=None, min_length=1)
    probability: int | None = Field(default=None, ge=0, le=100)
    company_id: UUID | None = None
    contact_id: UUID | None = None
    owner_id: UUID | None = None
    closing_date: date | None = None
    next_follow_up_at: datetime | None = None
    cold_pool: bool | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    value: Decimal
    stage: str
    probability: int
    company_id: UUID | None
    contact_id: UUID | None
    owner_id: UUID | None
    closing_date: date | None
    last_activity_date: datetime
    is_stale: bool
    cold_pool: bool
    escalation_sent_at: datetime | None
    lead_score: int | None
    score_updated_at: datetime | None
    next_follow_up_at: datetime | None
    follow_up_notified: bool
    created_at: datetime
    updated_at: datetime
    triggered_actions: list[TriggeredActionRead] = Field(default_factory=list)


class ActivityCreate(BaseModel):
    type: ActivityType
    content: str | None = None
    contact_id: UUID | None = None
    occurred_at: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID | None
    contact_id: UUID | None
    type: str
    content: str | None
    actor_id: UUID | None
    occurred_at: datetime


class ScoreRead(BaseModel):
    subject_type: Literal["deal", "contact"]
    subject_id: UUID
    score: int = Field(ge=0, le=100)
    latest_date: datetime | None
    score_updated_at: datetime | None = None
    error: str | None = None


class StageStats(BaseModel):
    stage: str
    count: int
    value: Decimal


class PipelineStats(BaseModel):
    total_deals: int
    total_pipeline_value: Decimal
    expected_revenue: Decimal
    by_stage: list[StageStats]


class WorkflowRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    is_active: bool = True
    trigger_field: TriggerField
    trigger_op: TriggerOp
    trigger_value: TriggerValue
    action_type: ActionType
    action_value: str | None = None

    @model_validator(mode="after")
    def validate_action_value(self) -> "WorkflowRuleCreate":
        if self.action_type in _ACTIONS_REQUIRING_VALUE and not (self.action_value or "").strip():
            raise ValueError(f"action_value is required for {self.action_type}")
        return self


class WorkflowRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    trigger_field: TriggerField | None = None
    trigger_op: TriggerOp | None = None
    trigger_value: TriggerValue | None = None
    action_type: ActionType | None = None
    action_value: str | None = None


class WorkflowRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_active: bool
    trigger_field: str
    trigger_op: str
    trigger_value: str
    action_type: str
    action_value: str | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class WorkflowRuleTestRequest(BaseModel):
    trigger_field: TriggerField
    trigger_op: TriggerOp
    trigger_value: TriggerValue


class MatchedDeal(BaseModel):
    id: UUID
    name: str
    stage: str
    value: Decimal


class WorkflowRuleTestResponse(BaseModel):
    matched_count: int
    total_deals: int
    matched_deals: list[MatchedDeal]


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    type: str
    title: str
    body: str | None
    deal_id: UUID | None
    is_read: bool
    created_at: datetime


class EmailSendCreate(BaseModel):
    deal_id: UUID
    contact_id: UUID | None = None
    to_email: EmailStr
    subject: str = Field(min_length=1)
    body_html: str = Field(min_length=1)


class EmailSendRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID | None
    contact_id: UUID | None
    sent_by: UUID | None
    to_email: str
    subject: str
    sent_at: datetime
    open_count: int
    click_count: int
    first_opened_at: datetime | None
    last_opened_at: datetime | None
    first_clicked_at: datetime | None
    last_clicked_at: datetime | None


class SweepRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    name: str
    status: Literal["queued", "running", "succeeded", "failed", "skipped"]
    requested_by: UUID | None = None
    task_id: str | None = None
    correlation_id: str | None
    summary: dict[str, Any]
    error: str | None
    created_at: datetime | None = None
    started_at: datetime | None
    finished_at: datetime | None


class SweepJobRead(BaseModel):
    name: str
    interval_seconds: int
    running: bool
    next_due_at: datetime
    last_started_at: datetime | None
    last_status: str | None
    last_summary: dict[str, Any] | None
    last_error: str | None

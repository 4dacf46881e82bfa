from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal, get_args

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.automation.notify import create_notification
from growthengine.core.config import get_settings
from growthengine.crm.models import CRMDeal, CRMWorkflowRule
from growthengine.metrics import observe_workflow_match


logger = logging.getLogger("growthengine.automation.rules")

TriggerField = Literal["deal_value", "probability", "stage", "is_stale", "cold_pool"]
TriggerOp = Literal["gt", "gte", "lt", "lte", "eq", "neq", "contains"]
ActionType = Literal["cc_manager", "send_notification", "change_stage", "assign_to"]

TRIGGER_FIELDS: tuple[str, ...] = get_args(TriggerField)
TRIGGER_OPS: tuple[str, ...] = get_args(TriggerOp)
ACTION_TYPES: tuple[str, ...] = get_args(ActionType)

_NUMBER_PREFIX = re.compile(r"\s*([+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?))", re.ASCII)

_FIELD_GETTERS: dict[str, Callable[[CRMDeal], Any]] = {
    "deal_value": lambda deal: deal.value,
    "probability": lambda deal: deal.probability,
    "stage": lambda deal: deal.stage,
    "is_stale": lambda deal: deal.is_stale,
    "cold_pool": lambda deal: deal.cold_pool,
}


@dataclass(frozen=True)
class TriggeredAction:
    rule_id: uuid.UUID
    rule_name: str
    action_type: str
    action_value: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "action_type": self.action_type,
            "action_value": self.action_value,
        }


def to_number(value: Any) -> float:
    """Numeric view of a field or trigger value.

    Text is read up to its longest leading number, so ``"50,000"`` is 50 and
    ``"50000 USD"`` is 50000. Text with no leading number is NaN.
    """
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    match = _NUMBER_PREFIX.match(str(value))
    if match is None:
        return math.nan
    return float(match.group(1))


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if math.isfinite(number) and number == int(number):
            return str(int(number))
        return str(number)
    return str(value)


_OPERATORS: dict[str, Callable[[Any, str], bool]] = {
    "gt": lambda left, right: to_number(left) > to_number(right),
    "gte": lambda left, right: to_number(left) >= to_number(right),
    "lt": lambda left, right: to_number(left) < to_number(right),
    "lte": lambda left, right: to_number(left) <= to_number(right),
    "eq": lambda left, right: to_text(left).lower() == to_text(right).lower(),
    "neq": lambda left, right: to_text(left).lower() != to_text(right).lower(),
    "contains": lambda left, right: to_text(right).lower() in to_text(left).lower(),
}


def evaluate_condition(deal: CRMDeal, trigger_field: str, trigger_op: str, trigger_value: str) -> bool:
    getter = _FIELD_GETTERS.get(trigger_field)
    operator = _OPERATORS.get(trigger_op)
    if getter is None or operator is None:
        return False
    return operator(getter(deal), trigger_value)


def rule_matches(rule: CRMWorkflowRule, deal: CRMDeal) -> bool:
    return evaluate_condition(deal, rule.trigger_field, rule.trigger_op, rule.trigger_value)


def describe_action(action_type: str, action_value: str | None) -> str:
    if action_type == "cc_manager":
        return "Manager CC has been activated for this deal."
    if action_type == "send_notification":
        return f"A notification has been dispatched: {action_value or ''}"
    if action_type == "change_stage":
        return f"Stage will be changed to: {action_value or ''}"
    if action_type == "assign_to":
        return f"Deal will be assigned to user: {action_value or ''}"
    return f"Action: {action_type} = {action_value or ''}"


def load_active_rules(session: Session) -> list[CRMWorkflowRule]:
    stmt = (
        select(CRMWorkflowRule)
        .where(CRMWorkflowRule.is_active.is_(True), CRMWorkflowRule.deleted_at.is_(None))
        .order_by(CRMWorkflowRule.created_at, CRMWorkflowRule.id)
    )
    with session.begin_nested():
        return list(session.scalars(stmt).all())


def evaluate_workflow_rules(session: Session, deal: CRMDeal) -> list[TriggeredAction]:
    """Match a deal against every active rule.

    Each match notifies the deal owner, if any. The deal itself is never modified,
    and storage failures degrade to an empty result so the deal write path is not blocked.
    """
    try:
        rules = load_active_rules(session)
    except (OperationalError, ProgrammingError) as exc:
        logger.warning("workflow.rules_unavailable", extra={"deal_id": str(deal.id), "error": str(exc)})
        return []
    except SQLAlchemyError as exc:
        logger.exception("workflow.evaluation_failed", extra={"deal_id": str(deal.id), "error": str(exc)})
        return []

    triggered: list[TriggeredAction] = []
    for rule in rules:
        if not rule_matches(rule, deal):
            continue
        action = TriggeredAction(
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action_type,
            action_value=rule.action_value,
        )
        triggered.append(action)
        observe_workflow_match(rule.action_type)
        logger.info("workflow.rule_matched", extra={"deal_id": str(deal.id), "rule_id": str(rule.id)})

        if deal.owner_id is not None:
            create_notification(
                session,
                user_id=deal.owner_id,
                type="WORKFLOW",
                title=f"Workflow Triggered: {rule.name}",
                body=describe_action(rule.action_type, rule.action_value),
                deal_id=deal.id,
            )

    return triggered


def dry_run_rule(session: Session, trigger_field: str, trigger_op: str, trigger_value: str) -> dict[str, Any]:
    """Evaluate an unsaved condition against every open deal, without side effects."""
    settings = get_settings()
    deals = list(
        session.scalars(
            select(CRMDeal).where(CRMDeal.stage.not_in(settings.terminal_stages)).order_by(CRMDeal.created_at)
        ).all()
    )
    matched = [deal for deal in deals if evaluate_condition(deal, trigger_field, trigger_op, trigger_value)]
    return {
        "matched_count": len(matched),
        "total_deals": len(deals),
        "matched_deals": [
            {"id": deal.id, "name": deal.name, "stage": deal.stage, "value": deal.value} for deal in matched
        ],
    }


from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from growthengine.context import get_correlation_id
from growthengine.crm.models import CRMAuditLog


def record(
    session: Session,
    *,
    actor_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> CRMAuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    entry = CRMAuditLog(
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=before,
        new_value=after,
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    return entry

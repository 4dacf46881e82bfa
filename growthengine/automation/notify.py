from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.crm.models import CRMNotification
from growthengine.metrics import observe_notification


logger = logging.getLogger("growthengine.automation.notify")


def create_notification(
    session: Session,
    *,
    user_id: uuid.UUID,
    type: str,
    title: str,
    body: str | None = None,
    deal_id: uuid.UUID | None = None,
) -> CRMNotification | None:
    """Insert an in-app notification inside a savepoint.

    Best-effort: a failed insert is logged and leaves the caller's transaction usable.
    """
    try:
        with session.begin_nested():
            notification = CRMNotification(
                user_id=user_id,
                type=type,
                title=title,
                body=body,
                deal_id=deal_id,
            )
            session.add(notification)
            session.flush()
    except SQLAlchemyError as exc:
        logger.warning(
            "notification.create_failed",
            extra={"user_id": str(user_id), "deal_id": str(deal_id) if deal_id else None, "error": str(exc)},
        )
        return None
    observe_notification(type)
    return notification

from __future__ import annotations

import base64
import logging
import uuid
from datetime import datetime
from urllib.parse import urlsplit

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from growthengine.automation.scoring import recalculate_deal_score
from growthengine.crm.models import CRMDeal, CRMEmailSend, CRMTrackingEvent, utcnow
from growthengine.crm.schemas import EmailSendCreate, EmailSendRead
from growthengine.crm.service import ActorUser, record_activity


logger = logging.getLogger("growthengine.crm.tracking")

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
SENDS_PAGE_SIZE = 20


def safe_redirect_target(url: str | None) -> str:
    target = (url or "").strip()
    if not target:
        return "/"
    parts = urlsplit(target)
    if parts.scheme in {"http", "https"} and parts.netloc:
        return target
    if not parts.scheme and not parts.netloc and target.startswith("/"):
        return target
    return "/"


class TrackingService:
    def record_send(self, session: Session, dto: EmailSendCreate, actor_user: ActorUser) -> EmailSendRead:
        deal = session.get(CRMDeal, dto.deal_id)
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")

        send = CRMEmailSend(
            deal_id=deal.id,
            contact_id=dto.contact_id or deal.contact_id,
            sent_by=actor_user.user_id,
            to_email=str(dto.to_email),
            subject=dto.subject,
            body_html=dto.body_html,
            body_raw=dto.body_html,
            sent_at=utcnow(),
        )
        session.add(send)
        record_activity(
            session,
            deal,
            type="EMAIL_SENT",
            content=f'Email sent: "{dto.subject}" → {dto.to_email}',
            contact_id=send.contact_id,
            actor_id=actor_user.user_id,
        )
        session.commit()
        session.refresh(send)
        logger.info("email.send_recorded", extra={"deal_id": str(deal.id)})
        return EmailSendRead.model_validate(send)

    def record_open(
        self,
        session: Session,
        send_id: uuid.UUID,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Record a pixel fire. Unknown sends and storage errors are logged, never raised."""
        return self._record_event(
            session,
            send_id,
            event_type="OPEN",
            activity_type="EMAIL_OPENED",
            content="Email Opened (pixel fired)",
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def record_click(
        self,
        session: Session,
        send_id: uuid.UUID,
        url: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        return self._record_event(
            session,
            send_id,
            event_type="CLICK",
            activity_type="LINK_CLICKED",
            content=f"Link clicked: {url}",
            url=url,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def list_sends(self, session: Session, deal_id: uuid.UUID) -> list[EmailSendRead]:
        try:
            rows = session.scalars(
                select(CRMEmailSend)
                .where(CRMEmailSend.deal_id == deal_id)
                .order_by(CRMEmailSend.sent_at.desc())
                .limit(SENDS_PAGE_SIZE)
            ).all()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("email.sends_unavailable", extra={"deal_id": str(deal_id), "error": str(exc)})
            return []
        return [EmailSendRead.model_validate(row) for row in rows]

    def _record_event(
        self,
        session: Session,
        send_id: uuid.UUID,
        *,
        event_type: str,
        activity_type: str,
        content: str,
        url: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        now = utcnow()
        try:
            send = session.get(CRMEmailSend, send_id)
            if send is None:
                logger.info("tracking.unknown_send", extra={"status": event_type})
                return False

            session.add(
                CRMTrackingEvent(
                    send_id=send.id,
                    event_type=event_type,
                    url=url,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    occurred_at=now,
                )
            )
            self._bump_counters(send, event_type, now)
            session.add(send)

            deal = session.get(CRMDeal, send.deal_id) if send.deal_id is not None else None
            if deal is not None:
                record_activity(
                    session,
                    deal,
                    type=activity_type,
                    content=content,
                    contact_id=send.contact_id,
                    occurred_at=now,
                )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("tracking.record_failed", extra={"status": event_type, "error": str(exc)})
            return False

        if deal is not None:
            try:
                recalculate_deal_score(session, deal.id, now=now)
            except (SQLAlchemyError, HTTPException) as exc:
                session.rollback()
                logger.warning("tracking.rescore_failed", extra={"deal_id": str(deal.id), "error": str(exc)})
        return True

    def _bump_counters(self, send: CRMEmailSend, event_type: str, now: datetime) -> None:
        if event_type == "OPEN":
            send.open_count = (send.open_count or 0) + 1
            send.last_opened_at = now
            if send.first_opened_at is None:
                send.first_opened_at = now
        else:
            send.click_count = (send.click_count or 0) + 1
            send.last_clicked_at = now
            if send.first_clicked_at is None:
                send.first_clicked_at = now

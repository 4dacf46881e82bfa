from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from growthengine.automation.scheduler import (
    SweepDispatcher,
    SweepDispatchError,
    SweepScheduler,
    UnknownSweepError,
    get_scheduler,
)
from growthengine.automation.scoring import calculate_score, recalculate_deal_score
from growthengine.context import get_correlation_id
from growthengine.core.auth import AuthUser, get_current_user as get_auth_user
from growthengine.core.celery_app import get_sweep_dispatcher
from growthengine.core.database import get_db
from growthengine.core.rbac import ADMINS, ALL_ROLES, DEAL_WRITERS, MANAGERS, require_roles
from growthengine.crm.models import as_utc
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
    EmailSendCreate,
    EmailSendRead,
    NotificationRead,
    PipelineStats,
    ScoreRead,
    SweepJobRead,
    SweepRunRead,
    UserRead,
    UserUpdate,
    WorkflowRuleCreate,
    WorkflowRuleRead,
    WorkflowRuleTestRequest,
    WorkflowRuleTestResponse,
    WorkflowRuleUpdate,
)
from growthengine.crm.service import (
    ActorUser,
    CompanyService,
    ContactService,
    DealService,
    NotificationService,
    UserService,
    WorkflowRuleService,
)
from growthengine.crm.tracking import TRACKING_PIXEL, TrackingService, safe_redirect_target
from growthengine.middleware.correlation_id import CORRELATION_HEADER

users_router = APIRouter(prefix="/api/users", tags=["crm.users"])
companies_router = APIRouter(prefix="/api", tags=["crm.companies"])
deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])
workflows_router = APIRouter(prefix="/api/workflow-rules", tags=["crm.workflows"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["crm.notifications"])
tracking_router = APIRouter(prefix="/api/track", tags=["crm.tracking"])
automation_router = APIRouter(prefix="/api/automation", tags=["automation"])

user_service = UserService()
company_service = CompanyService()
contact_service = ContactService()
deal_service = DealService()
workflow_service = WorkflowRuleService()
notification_service = NotificationService()
tracking_service = TrackingService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get(CORRELATION_HEADER)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    user = user_service.sync_user(db, auth_user.email, full_name=auth_user.name)
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user is deactivated")
    correlation_id = get_correlation_id() or request.headers.get(CORRELATION_HEADER)
    return ActorUser(user_id=user.id, email=user.email, role=user.role, correlation_id=correlation_id)


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        require_roles(user, *MANAGERS)
        return user_service.list_users(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.patch("/{user_id}", response_model=UserRead)
def update_user(
    request: Request,
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_roles(user, *ADMINS)
        return user_service.update_user(db, user_id, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return company_service.create_company(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return company_service.list_companies(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_company_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return contact_service.create_contact(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    company_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return contact_service.list_contacts(db, company_id=company_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@companies_router.get("/contacts/{contact_id}/score", response_model=ScoreRead)
def get_contact_score(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoreRead | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        contact_service.load_contact(db, contact_id)
        result = calculate_score(db, "contact", contact_id)
        return ScoreRead(
            subject_type="contact",
            subject_id=contact_id,
            score=result.score,
            latest_date=result.latest_date,
            error=result.error,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_score_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return deal_service.create_deal(db, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: str | None = Query(default=None),
    owner_id: uuid.UUID | None = Query(default=None),
    cold_pool: bool | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return deal_service.list_deals(db, stage=stage, owner_id=owner_id, cold_pool=cold_pool, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return deal_service.get_deal(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.patch("/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return deal_service.update_deal(db, deal_id, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/{deal_id}/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return deal_service.list_activities(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/{deal_id}/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_activity(
    request: Request,
    deal_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return deal_service.log_activity(db, deal_id, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/{deal_id}/score", response_model=ScoreRead)
def get_deal_score(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoreRead | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        deal = deal_service.load_deal(db, deal_id)
        result = calculate_score(db, "deal", deal_id)
        return ScoreRead(
            subject_type="deal",
            subject_id=deal_id,
            score=result.score,
            latest_date=result.latest_date,
            score_updated_at=as_utc(deal.score_updated_at),
            error=result.error,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_score_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/{deal_id}/score", response_model=ScoreRead)
def recalculate_score(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoreRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        result = recalculate_deal_score(db, deal_id)
        return ScoreRead(
            subject_type="deal",
            subject_id=result["deal_id"],
            score=result["score"],
            latest_date=result["latest_date"],
            score_updated_at=result["score_updated_at"],
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_score_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@dashboard_router.get("/stats", response_model=PipelineStats)
def dashboard_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStats | JSONResponse:
    try:
        require_roles(user, *MANAGERS)
        return deal_service.pipeline_stats(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_dashboard_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.get("", response_model=list[WorkflowRuleRead])
def list_workflow_rules(
    request: Request,
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRuleRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return workflow_service.list_rules(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.post("", response_model=WorkflowRuleRead, status_code=status.HTTP_201_CREATED)
def create_workflow_rule(
    request: Request,
    dto: WorkflowRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRuleRead | JSONResponse:
    try:
        require_roles(user, *ADMINS)
        return workflow_service.create_rule(db, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.post("/test", response_model=WorkflowRuleTestResponse)
def test_workflow_rule(
    request: Request,
    dto: WorkflowRuleTestRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRuleTestResponse | JSONResponse:
    try:
        require_roles(user, *ADMINS)
        return workflow_service.test_rule(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_rule_test_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.patch("/{rule_id}", response_model=WorkflowRuleRead)
def update_workflow_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: WorkflowRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRuleRead | JSONResponse:
    try:
        require_roles(user, *ADMINS)
        return workflow_service.update_rule(db, rule_id, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_rule_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.delete("/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_workflow_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_roles(user, *ADMINS)
        workflow_service.soft_delete_rule(db, rule_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_rule_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.get("", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return notification_service.list_notifications(db, user.user_id, unread_only=unread_only, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.patch("/read-all", response_model=None)
def mark_all_notifications_read(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_roles(user, *ALL_ROLES)
        return {"updated": notification_service.mark_all_read(db, user.user_id)}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return notification_service.mark_read(db, user.user_id, notification_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tracking_router.post("/send", response_model=EmailSendRead, status_code=status.HTTP_201_CREATED)
def record_email_send(
    request: Request,
    dto: EmailSendCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailSendRead | JSONResponse:
    try:
        require_roles(user, *DEAL_WRITERS)
        return tracking_service.record_send(db, dto, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


def _parse_send_id(raw: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@tracking_router.get("/pixel/{send_id}")
def tracking_pixel(request: Request, send_id: str, db: Session = Depends(get_db)) -> Response:
    parsed = _parse_send_id(send_id)
    if parsed is not None:
        tracking_service.record_open(
            db,
            parsed,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/gif",
        headers={"Cache-Control": "no-store, no-cache, must-revalidate, private"},
    )


@tracking_router.get("/click/{send_id}")
def tracking_click(
    request: Request,
    send_id: str,
    url: str = Query(default="/"),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    parsed = _parse_send_id(send_id)
    if parsed is not None:
        tracking_service.record_click(
            db,
            parsed,
            url,
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        )
    return RedirectResponse(url=safe_redirect_target(url), status_code=status.HTTP_302_FOUND)


@tracking_router.get("/sends/{deal_id}", response_model=list[EmailSendRead])
def list_email_sends(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailSendRead] | JSONResponse:
    try:
        require_roles(user, *ALL_ROLES)
        return tracking_service.list_sends(db, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_send_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_router.get("/jobs", response_model=list[SweepJobRead])
def list_automation_jobs(
    request: Request,
    scheduler: SweepScheduler = Depends(get_scheduler),
    user: ActorUser = Depends(get_current_user),
) -> list[SweepJobRead] | JSONResponse:
    try:
        require_roles(user, *MANAGERS)
        return [SweepJobRead(**job) for job in scheduler.jobs()]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_job_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_router.get("/runs", response_model=list[SweepRunRead])
def list_automation_runs(
    request: Request,
    name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    scheduler: SweepScheduler = Depends(get_scheduler),
    user: ActorUser = Depends(get_current_user),
) -> list[SweepRunRead] | JSONResponse:
    try:
        require_roles(user, *MANAGERS)
        return [SweepRunRead.model_validate(run) for run in scheduler.list_runs(name=name, limit=limit)]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_run_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automation_router.post("/jobs/{name}/run", response_model=SweepRunRead, status_code=status.HTTP_202_ACCEPTED)
def run_automation_job(
    request: Request,
    name: str,
    scheduler: SweepScheduler = Depends(get_scheduler),
    dispatcher: SweepDispatcher = Depends(get_sweep_dispatcher),
    user: ActorUser = Depends(get_current_user),
) -> SweepRunRead | JSONResponse:
    try:
        require_roles(user, *ADMINS)
        try:
            scheduler.get(name)
        except UnknownSweepError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown job: {name}") from exc
        if scheduler.is_running(name):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"job already running: {name}")
        try:
            run = scheduler.enqueue(
                name,
                dispatcher,
                requested_by=user.user_id,
                correlation_id=get_correlation_id() or request.headers.get(CORRELATION_HEADER),
            )
        except SweepDispatchError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"job could not be queued: {name}"
            ) from exc
        return SweepRunRead.model_validate(run)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_job_run_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

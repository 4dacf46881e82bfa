from __future__ import annotations

import logging
import uuid
from typing import Any

from celery.signals import worker_ready

from growthengine.automation.scheduler import (
    ASSIGN_LEADS,
    CHECK_FOLLOW_UPS,
    CHECK_STALE_DEALS,
    RECALCULATE_SCORES,
    TASK_PREFIX,
    get_scheduler,
)
from growthengine.core.celery_app import celery_app
from growthengine.core.config import get_settings
from growthengine.logging import configure_logging
from growthengine.otel import setup_otel


configure_logging()
logger = logging.getLogger("growthengine.worker")
settings = get_settings()

celery_app.conf.beat_schedule = get_scheduler().beat_schedule()

if settings.otel_enabled:
    setup_otel("growthengine-worker", True)


def _run(name: str, run_id: str | None = None) -> dict[str, Any]:
    run = get_scheduler().run_now(name, run_id=uuid.UUID(run_id) if run_id else None)
    return {
        "id": str(run.id) if run.id else None,
        "name": run.name,
        "status": run.status,
        "summary": run.summary,
        "error": run.error,
    }


@celery_app.task(name=f"{TASK_PREFIX}{ASSIGN_LEADS}")
def assign_leads_task(run_id: str | None = None) -> dict[str, Any]:
    return _run(ASSIGN_LEADS, run_id)


@celery_app.task(name=f"{TASK_PREFIX}{CHECK_STALE_DEALS}")
def check_stale_deals_task(run_id: str | None = None) -> dict[str, Any]:
    return _run(CHECK_STALE_DEALS, run_id)


@celery_app.task(name=f"{TASK_PREFIX}{RECALCULATE_SCORES}")
def recalculate_scores_task(run_id: str | None = None) -> dict[str, Any]:
    return _run(RECALCULATE_SCORES, run_id)


@celery_app.task(name=f"{TASK_PREFIX}{CHECK_FOLLOW_UPS}")
def check_follow_ups_task(run_id: str | None = None) -> dict[str, Any]:
    return _run(CHECK_FOLLOW_UPS, run_id)


@worker_ready.connect
def run_stale_check_on_start(**_: Any) -> None:
    if not get_settings().run_stale_on_start:
        return
    logger.info("worker.stale_check_on_start", extra={"sweep": CHECK_STALE_DEALS})
    _run(CHECK_STALE_DEALS)

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from celery import Celery

from growthengine.core.config import get_settings

settings = get_settings()

celery_app = Celery("growthengine", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.timezone = "UTC"
celery_app.conf.task_ignore_result = True


def dispatch_sweep(task_name: str, kwargs: dict[str, Any]) -> str | None:
    result = celery_app.send_task(task_name, kwargs=kwargs)
    return result.id


def get_sweep_dispatcher() -> Callable[[str, dict[str, Any]], str | None]:
    return dispatch_sweep

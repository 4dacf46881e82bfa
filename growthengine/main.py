from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from growthengine.api.routes import router as api_router
from growthengine.core.config import get_settings
from growthengine.logging import configure_logging
from growthengine.middleware.correlation_id import CorrelationIdMiddleware
from growthengine.middleware.request_logging import RequestLoggingMiddleware
from growthengine.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("growthengine.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("api.started", extra={"status": settings.app_env})
    yield
    logger.info("api.stopped")


app = FastAPI(title="GrowthEngine API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("growthengine-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

from contextlib import asynccontextmanager
import logging
import time

from fastapi import APIRouter, FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.requests import Request

from sourcing_worker.api.routes import health, jobs
from sourcing_worker.bootstrap import get_services
from sourcing_worker.core.config import get_settings
from sourcing_worker.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        # Only close services that were actually built by a request.
        if get_services.cache_info().currsize:
            await get_services().close()
            get_services.cache_clear()


api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, tags=["jobs"])

app = FastAPI(title=f"{settings.app_name} queues monitor", lifespan=lifespan)
configure_logging(settings)
_telemetry_runtime = setup_telemetry(settings, component="api")
if _telemetry_runtime.enabled:
    FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def log_ingress_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "ingress request method=%s path=%s status=%s duration_ms=%.1f client=%s",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        request.client.host if request.client else "-",
    )
    return response


app.include_router(api_router)

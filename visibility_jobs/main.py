from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from visibility_jobs.api.router import api_router
from visibility_jobs.core.config import Settings, get_settings
from visibility_jobs.core.telemetry import configure_logging, setup_telemetry
from visibility_jobs.freshness.repository import FreshnessRepository, PostgresFreshnessRepository, get_repository
from visibility_jobs.jobs.handlers import Providers
from visibility_jobs.runtime import build_job_system

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    providers: Providers | None = None,
    repository: FreshnessRepository | None = None,
) -> FastAPI:
    resolved_settings = settings or get_settings()
    configure_logging(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backing_store = repository if repository is not None else get_repository()
        if isinstance(backing_store, PostgresFreshnessRepository):
            await backing_store.ensure_schema()
        system = build_job_system(resolved_settings, repository=backing_store, providers=providers)
        app.state.job_system = system
        system.start()
        try:
            yield
        finally:
            await system.stop()
            app.state.job_system = None
            telemetry_runtime.shutdown()
            if repository is None:
                get_repository.cache_clear()

    app = FastAPI(title=resolved_settings.app_name, lifespan=lifespan)
    telemetry_runtime = setup_telemetry(resolved_settings, app)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()

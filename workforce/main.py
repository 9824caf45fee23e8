from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from workforce.config import settings
from workforce.db import ensure_schema
from workforce.deps import allocation_source_scope
from workforce.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    general_exception_handler
)
from workforce.middleware.request_id import RequestIDMiddleware
from workforce.routers import cache, workload
from workforce.services.alert_service import CapacityAlertEvaluator
from workforce.services.cache_service import WorkloadCacheService
from workforce.utils.cache import TaggedCache
from workforce.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(start_background: bool = True) -> FastAPI:
    """
    Build the API with its own cache and alert evaluator.

    Each app owns a separate ``TaggedCache`` so tests can run isolated instances.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tagged_cache = TaggedCache(
            default_ttl=settings.CACHE_DEFAULT_TTL,
            sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        )
        app.state.workload_cache = WorkloadCacheService(tagged_cache)
        app.state.alert_evaluator = CapacityAlertEvaluator(allocation_source_scope)
        if start_background:
            try:
                ensure_schema()
            except (SQLAlchemyError, ImportError) as e:
                logger.error(f"Database schema check failed, fallback store will serve requests: {e}")
            tagged_cache.start()
            if settings.CAPACITY_ALERTS_ENABLED:
                app.state.alert_evaluator.start()
        logger.info("Workload engine started", extra={"status": settings.ENVIRONMENT})
        try:
            yield
        finally:
            app.state.alert_evaluator.stop()
            tagged_cache.shutdown()
            logger.info("Workload engine stopped")

    app = FastAPI(title="Workforce Capacity API", lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(workload.router)
    app.include_router(cache.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workforce import db as database
from workforce.services.allocation_source import AllocationSource, get_allocation_source
from workforce.services.cache_service import WorkloadCacheService
from workforce.services.commitment_service import CommitmentService

logger = logging.getLogger(__name__)


def get_db() -> Iterator[Optional[Session]]:
    """Database session, or None when no engine can be created (fallback store takes over)."""
    session = None
    try:
        database.get_engine()
        session = database.SessionLocal()
    except (SQLAlchemyError, ImportError) as e:
        logger.warning("Database engine unavailable: %s", e)
    try:
        yield session
    finally:
        if session is not None:
            session.close()


def get_source(db: Optional[Session] = Depends(get_db)) -> AllocationSource:
    return get_allocation_source(db)


def get_workload_cache_service(request: Request) -> WorkloadCacheService:
    return request.app.state.workload_cache


def get_commitment_service(
    request: Request,
    source: AllocationSource = Depends(get_source),
) -> CommitmentService:
    return CommitmentService(source, cache_service=request.app.state.workload_cache)


@contextmanager
def allocation_source_scope() -> Iterator[AllocationSource]:
    """Standalone source for background jobs, with its own session."""
    gen = get_db()
    session = next(gen)
    try:
        yield get_allocation_source(session)
    finally:
        gen.close()

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from workforce.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Bound lazily so importing models never needs a database driver
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def init_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Create the engine and bind SessionLocal to it."""
    global _engine
    database_url = url or settings.database_url_fixed
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    _engine = create_engine(database_url, **kwargs)
    SessionLocal.configure(bind=_engine)
    logger.info("Database engine initialized", extra={"status": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return init_engine()
    return _engine


def ensure_schema() -> None:
    """Create any missing tables for the ORM models."""
    from workforce import models  # noqa: F401  registers the tables on Base

    Base.metadata.create_all(bind=get_engine())

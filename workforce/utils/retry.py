"""
Retry logic with exponential backoff for backend connectivity checks.
"""
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
    after_log
)
import logging
from typing import Callable

from sqlalchemy.exc import OperationalError, InterfaceError

logger = logging.getLogger(__name__)


def retry_database(max_attempts: int = 2) -> Callable:
    """
    Retry decorator for database connectivity.

    Only connection-level driver errors are retried; anything else is a
    programming error and surfaces on the first attempt.

    Usage:
        @retry_database(max_attempts=3)
        def ping(session):
            session.execute(text("SELECT 1"))
    """
    return retry(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type((OperationalError, InterfaceError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.INFO),
        reraise=True
    )

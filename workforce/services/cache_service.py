"""
Cache service for workload dashboards.
"""
import logging
from typing import Any, Dict, Optional

from workforce.config import settings
from workforce.services.allocation_source import AllocationSource
from workforce.services.workload_service import (
    WorkloadCalculationService,
    WorkloadSnapshot,
    WorkloadSummary,
)
from workforce.utils.cache import (
    FLEET_TAG,
    WORKLOAD_SUMMARY_KEY,
    TaggedCache,
    worker_tag,
    workload_cache_key,
)

logger = logging.getLogger(__name__)


class WorkloadCacheService:
    """Cached read paths for dashboards plus the invalidation hooks mutations call."""

    def __init__(
        self,
        cache: TaggedCache,
        workload_ttl: Optional[int] = None,
        summary_ttl: Optional[int] = None,
    ):
        self.cache = cache
        self.workload_ttl = settings.WORKLOAD_CACHE_TTL if workload_ttl is None else workload_ttl
        self.summary_ttl = settings.SUMMARY_CACHE_TTL if summary_ttl is None else summary_ttl

    def get_worker_workload(self, worker_id: str, source: AllocationSource) -> WorkloadSnapshot:
        """Get a worker's snapshot from cache or compute it."""
        return self.cache.wrap(
            workload_cache_key(worker_id),
            lambda: WorkloadCalculationService(source).compute_snapshot(worker_id),
            ttl=self.workload_ttl,
            tags=[worker_tag(worker_id)],
        )

    def get_workload_summary(self, source: AllocationSource) -> WorkloadSummary:
        """Get the fleet summary from cache or compute it."""
        return self.cache.wrap(
            WORKLOAD_SUMMARY_KEY,
            lambda: WorkloadCalculationService(source).get_workload_summary(),
            ttl=self.summary_ttl,
            tags=[FLEET_TAG],
        )

    def invalidate_worker(self, worker_id: str) -> int:
        """Invalidate everything derived from one worker's commitments."""
        deleted = self.cache.invalidate_by_tags([worker_tag(worker_id), FLEET_TAG])
        logger.info("Workload cache invalidated", extra={"worker_id": worker_id})
        return deleted

    def invalidate_all(self) -> None:
        self.cache.flush()
        logger.info("All workload caches invalidated")

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

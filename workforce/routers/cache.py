"""
Cache management and statistics endpoints.
"""
from fastapi import APIRouter, Depends
from workforce.deps import get_workload_cache_service
from workforce.services.cache_service import WorkloadCacheService
from typing import Dict, Any

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("/stats")
def get_cache_stats(
    cache_service: WorkloadCacheService = Depends(get_workload_cache_service),
) -> Dict[str, Any]:
    """Get cache statistics."""
    return cache_service.get_cache_stats()


@router.post("/invalidate/workers/{worker_id}")
def invalidate_worker_cache(
    worker_id: str,
    cache_service: WorkloadCacheService = Depends(get_workload_cache_service),
):
    """Invalidate one worker's cached workload and the fleet summary."""
    deleted = cache_service.invalidate_worker(worker_id)
    return {"message": f"Invalidated {deleted} cache entries for worker {worker_id}"}


@router.post("/invalidate/all")
def invalidate_all_cache(
    cache_service: WorkloadCacheService = Depends(get_workload_cache_service),
):
    """Clear every cached workload aggregate."""
    cache_service.invalidate_all()
    return {"message": "All caches invalidated"}

"""
Workload API Router
"""
from fastapi import APIRouter, Depends, status
from typing import Optional
from pydantic import BaseModel, Field

from workforce.deps import get_commitment_service, get_source, get_workload_cache_service
from workforce.models import ProjectStatus
from workforce.services.allocation_source import AllocationSource
from workforce.services.cache_service import WorkloadCacheService
from workforce.services.commitment_service import CommitmentService
from workforce.services.workload_service import WorkloadCalculationService

router = APIRouter(tags=["workload"])


# ==================== Schemas ====================

class ValidateAssignmentRequest(BaseModel):
    # Range is enforced by the service so every caller gets the same error shape
    involvement_percentage: float
    exclude_project_id: Optional[str] = None


class AssignmentRequest(BaseModel):
    employee_id: str = Field(..., min_length=1)
    involvement_percentage: float
    role: Optional[str] = None


class InvolvementUpdateRequest(BaseModel):
    involvement_percentage: float


class ProjectStatusRequest(BaseModel):
    status: ProjectStatus


class InitiativeAssignmentRequest(BaseModel):
    employee_id: str = Field(..., min_length=1)
    workload_percentage: float


def _commitment_dict(commitment) -> dict:
    data = {
        "worker_id": commitment.worker_id,
    }
    if hasattr(commitment, "project_id"):
        data.update(
            project_id=commitment.project_id,
            involvement_percentage=float(commitment.involvement_percentage),
            project_active=commitment.project_active,
            role=commitment.role,
        )
    else:
        data.update(
            initiative_id=commitment.initiative_id,
            workload_percentage=float(commitment.workload_percentage),
            initiative_active=commitment.initiative_active,
        )
    return data


# ==================== Workload Endpoints ====================

@router.get("/workload/summary")
def get_workload_summary(
    source: AllocationSource = Depends(get_source),
    cache_service: WorkloadCacheService = Depends(get_workload_cache_service),
):
    """Fleet workload summary (cached)"""
    return cache_service.get_workload_summary(source).to_dict()


@router.get("/workload/{worker_id}")
def get_worker_workload(
    worker_id: str,
    source: AllocationSource = Depends(get_source),
    cache_service: WorkloadCacheService = Depends(get_workload_cache_service),
):
    """Workload snapshot for one worker (cached)"""
    return cache_service.get_worker_workload(worker_id, source).to_dict()


@router.post("/workload/{worker_id}/validate")
def validate_assignment(
    worker_id: str,
    request: ValidateAssignmentRequest,
    source: AllocationSource = Depends(get_source),
):
    """Advisory admission check against live data"""
    decision = WorkloadCalculationService(source).validate_assignment_capacity(
        worker_id,
        request.involvement_percentage,
        exclude_project_id=request.exclude_project_id,
    )
    return decision.to_dict()


# ==================== Commitment Endpoints ====================

@router.post("/projects/{project_id}/assignments", status_code=status.HTTP_201_CREATED)
def assign_to_project(
    project_id: str,
    request: AssignmentRequest,
    service: CommitmentService = Depends(get_commitment_service),
):
    commitment = service.assign_to_project(
        request.employee_id, project_id, request.involvement_percentage, role=request.role
    )
    return _commitment_dict(commitment)


@router.put("/projects/{project_id}/assignments/{worker_id}")
def update_involvement(
    project_id: str,
    worker_id: str,
    request: InvolvementUpdateRequest,
    service: CommitmentService = Depends(get_commitment_service),
):
    commitment = service.update_involvement(worker_id, project_id, request.involvement_percentage)
    return _commitment_dict(commitment)


@router.delete("/projects/{project_id}/assignments/{worker_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_from_project(
    project_id: str,
    worker_id: str,
    service: CommitmentService = Depends(get_commitment_service),
):
    service.unassign_from_project(worker_id, project_id)


@router.put("/projects/{project_id}/status")
def update_project_status(
    project_id: str,
    request: ProjectStatusRequest,
    service: CommitmentService = Depends(get_commitment_service),
):
    affected = service.update_project_status(project_id, request.status)
    return {"project_id": project_id, "status": request.status.value, "affected_workers": affected}


@router.post("/initiatives/{initiative_id}/assign")
def assign_initiative(
    initiative_id: str,
    request: InitiativeAssignmentRequest,
    service: CommitmentService = Depends(get_commitment_service),
):
    commitment = service.assign_initiative(initiative_id, request.employee_id, request.workload_percentage)
    return _commitment_dict(commitment)


@router.post("/initiatives/{initiative_id}/cancel")
def cancel_initiative(
    initiative_id: str,
    service: CommitmentService = Depends(get_commitment_service),
):
    service.cancel_initiative(initiative_id)
    return {"initiative_id": initiative_id, "status": "CANCELLED"}

"""
Commitment mutations: assign, revise and release project and initiative work.

Every primary-pool change runs its admission check and its write inside one
per-worker critical section (an in-process ``KeyedLock`` plus the source's
``worker_scope``), so two managers cannot both be told there is room for the
same capacity. Concurrent revisions of one commitment are applied one after
another, each re-validated against the state the previous one left; the last
admitted revision wins. Activating a project re-admits every assignee under
all of their locks at once.
"""
import logging
from contextlib import ExitStack
from typing import Any, List, Optional

from workforce.exceptions import CapacityExceededError, ConflictError, NotFoundError
from workforce.models import InitiativeStatus, ProjectStatus
from workforce.services.allocation_source import (
    AllocationSource,
    InitiativeCommitment,
    ProjectCommitment,
    require_id,
    to_percentage,
)
from workforce.services.cache_service import WorkloadCacheService
from workforce.services.workload_service import AdmissionDecision, WorkloadCalculationService
from workforce.utils.locks import KeyedLock, worker_locks

logger = logging.getLogger(__name__)


class CommitmentService:
    def __init__(
        self,
        source: AllocationSource,
        cache_service: Optional[WorkloadCacheService] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.source = source
        self.cache_service = cache_service
        self.locks = locks or worker_locks
        self.calculator = WorkloadCalculationService(source)

    def _invalidate(self, worker_ids: List[str]) -> None:
        if not self.cache_service:
            return
        for worker_id in dict.fromkeys(worker_ids):
            self.cache_service.invalidate_worker(worker_id)

    def _admit(self, worker_id: str, percentage, exclude_project_id: Optional[str] = None) -> AdmissionDecision:
        decision = self.calculator.validate_assignment_capacity(
            worker_id, percentage, exclude_project_id=exclude_project_id
        )
        if not decision.can_admit:
            logger.info(
                "Commitment rejected: %s",
                "; ".join(decision.warnings),
                extra={"worker_id": worker_id, "project_id": exclude_project_id},
            )
            raise CapacityExceededError(decision, worker_id=worker_id)
        return decision

    # ==================== Project commitments ====================

    def assign_to_project(
        self, worker_id: str, project_id: str, involvement_percentage: Any, role: Optional[str] = None
    ) -> ProjectCommitment:
        """Create a new project commitment if it fits the worker's primary ceiling."""
        worker_id = require_id(worker_id, "worker_id")
        project_id = require_id(project_id, "project_id")
        percentage = to_percentage(involvement_percentage, "involvement_percentage")
        with self.locks.hold(worker_id):
            with self.source.worker_scope(worker_id):
                if self.source.get_project_commitment(worker_id, project_id) is not None:
                    raise ConflictError(
                        "Worker is already assigned to this project",
                        details={"worker_id": worker_id, "project_id": project_id},
                    )
                self._admit(worker_id, percentage)
                commitment = self.source.save_project_commitment(worker_id, project_id, percentage, role=role)
        self._invalidate([worker_id])
        logger.info(
            "Worker assigned to project with %s%% involvement",
            percentage,
            extra={"worker_id": worker_id, "project_id": project_id},
        )
        return commitment

    def update_involvement(self, worker_id: str, project_id: str, involvement_percentage: Any) -> ProjectCommitment:
        """Revise an existing commitment; its current value is not double-counted."""
        worker_id = require_id(worker_id, "worker_id")
        project_id = require_id(project_id, "project_id")
        percentage = to_percentage(involvement_percentage, "involvement_percentage")
        with self.locks.hold(worker_id):
            with self.source.worker_scope(worker_id):
                if self.source.get_project_commitment(worker_id, project_id) is None:
                    raise NotFoundError("Project assignment", f"{project_id}/{worker_id}")
                self._admit(worker_id, percentage, exclude_project_id=project_id)
                commitment = self.source.save_project_commitment(worker_id, project_id, percentage)
        self._invalidate([worker_id])
        logger.info(
            "Involvement updated to %s%%",
            percentage,
            extra={"worker_id": worker_id, "project_id": project_id},
        )
        return commitment

    def unassign_from_project(self, worker_id: str, project_id: str) -> None:
        worker_id = require_id(worker_id, "worker_id")
        project_id = require_id(project_id, "project_id")
        with self.locks.hold(worker_id):
            with self.source.worker_scope(worker_id):
                self.source.delete_project_commitment(worker_id, project_id)
        self._invalidate([worker_id])
        logger.info("Worker unassigned from project", extra={"worker_id": worker_id, "project_id": project_id})

    def update_project_status(self, project_id: str, status: Any) -> List[str]:
        """
        Change a project's lifecycle state. Returns the workers whose totals may have moved.

        Activating a project adds its involvement to every assignee's primary
        total, so each assignee is re-admitted under their lock first. If any
        of them would go over their ceiling the status is left unchanged.
        """
        project_id = require_id(project_id, "project_id")
        status = ProjectStatus(status)
        while True:
            affected = self.source.list_project_workers(project_id)
            with ExitStack() as stack:
                for worker_id in affected:
                    stack.enter_context(self.locks.hold(worker_id))
                for worker_id in affected:
                    stack.enter_context(self.source.worker_scope(worker_id))
                # Someone joined or left the project before the locks were taken
                if self.source.list_project_workers(project_id) != affected:
                    continue
                if status == ProjectStatus.ACTIVE:
                    self._admit_activation(project_id, affected)
                self.source.set_project_status(project_id, status)
            break
        self._invalidate(affected)
        logger.info(
            "Project status changed to %s",
            status.value,
            extra={"project_id": project_id, "status": status.value},
        )
        return affected

    def _admit_activation(self, project_id: str, worker_ids: List[str]) -> None:
        rejected = {}
        for worker_id in worker_ids:
            commitment = self.source.get_project_commitment(worker_id, project_id)
            if commitment is None or commitment.project_active:
                continue
            decision = self.calculator.validate_assignment_capacity(
                worker_id, commitment.involvement_percentage, exclude_project_id=project_id
            )
            if not decision.can_admit:
                rejected[worker_id] = decision
        if rejected:
            logger.info(
                "Project activation rejected for %d worker(s)",
                len(rejected),
                extra={"project_id": project_id, "worker_ids": sorted(rejected)},
            )
            raise ConflictError(
                f"Activating project would exceed capacity for: {', '.join(sorted(rejected))}",
                details={
                    "project_id": project_id,
                    "workers": {worker_id: decision.to_dict() for worker_id, decision in rejected.items()},
                },
            )

    # ==================== Initiative commitments ====================

    def assign_initiative(self, initiative_id: str, worker_id: str, workload_percentage: Any) -> InitiativeCommitment:
        """
        Point an initiative at a worker.

        The secondary pool is not admission-checked; going over the
        over & beyond ceiling shows up in snapshots and capacity alerts.
        """
        initiative_id = require_id(initiative_id, "initiative_id")
        worker_id = require_id(worker_id, "worker_id")
        percentage = to_percentage(workload_percentage, "workload_percentage")
        previous = self.source.get_initiative_assignee(initiative_id)
        with self.locks.hold(worker_id):
            with self.source.worker_scope(worker_id):
                commitment = self.source.save_initiative_commitment(initiative_id, worker_id, percentage)
        self._invalidate([worker_id] + ([previous] if previous else []))
        logger.info(
            "Initiative assigned with %s%% workload",
            percentage,
            extra={"worker_id": worker_id, "initiative_id": initiative_id},
        )
        return commitment

    def cancel_initiative(self, initiative_id: str) -> None:
        initiative_id = require_id(initiative_id, "initiative_id")
        assignee = self.source.get_initiative_assignee(initiative_id)
        self.source.set_initiative_status(initiative_id, InitiativeStatus.CANCELLED)
        if assignee:
            self._invalidate([assignee])
        logger.info("Initiative cancelled", extra={"initiative_id": initiative_id, "worker_id": assignee})

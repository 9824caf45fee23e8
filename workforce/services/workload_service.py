"""
Workload Calculation Service
Single source of truth for worker workload aggregation and admission checks
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from workforce.config import settings
from workforce.exceptions import NotFoundError
from workforce.services.allocation_source import (
    AllocationSource,
    require_id,
    to_percentage,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _pct(value: Decimal) -> str:
    return f"{value:.1f}%"


@dataclass(frozen=True)
class WorkloadSnapshot:
    worker_id: str
    primary_total: Decimal
    secondary_total: Decimal
    combined_total: Decimal
    primary_available: Decimal
    secondary_available: Decimal
    primary_ceiling: Decimal
    secondary_ceiling: Decimal
    is_overloaded: bool
    warnings: List[str]
    computed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "primary_total": float(self.primary_total),
            "secondary_total": float(self.secondary_total),
            "combined_total": float(self.combined_total),
            "primary_available": float(self.primary_available),
            "secondary_available": float(self.secondary_available),
            "primary_ceiling": float(self.primary_ceiling),
            "secondary_ceiling": float(self.secondary_ceiling),
            "is_overloaded": self.is_overloaded,
            "warnings": list(self.warnings),
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class AdmissionDecision:
    can_admit: bool
    current_workload: Decimal
    new_total_workload: Decimal
    available_capacity: Decimal
    primary_ceiling: Decimal
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_admit": self.can_admit,
            "current_workload": float(self.current_workload),
            "new_total_workload": float(self.new_total_workload),
            "available_capacity": float(self.available_capacity),
            "primary_ceiling": float(self.primary_ceiling),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class WorkloadSummary:
    total_workers: int
    overloaded_workers: int
    average_workload: Decimal
    total_project_workload: Decimal
    total_initiative_workload: Decimal
    capacity_utilization: Decimal
    computed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_workers": self.total_workers,
            "overloaded_workers": self.overloaded_workers,
            "average_workload": float(self.average_workload),
            "total_project_workload": float(self.total_project_workload),
            "total_initiative_workload": float(self.total_initiative_workload),
            "capacity_utilization": float(self.capacity_utilization),
            "computed_at": self.computed_at.isoformat(),
        }


class WorkloadCalculationService:
    """
    Aggregates commitments into snapshots and answers admission checks.

    Works against whatever ``AllocationSource`` it is handed and never writes.
    Admission checks always read the source directly; cached snapshots are for
    dashboards only.
    """

    def __init__(self, source: AllocationSource, high_involvement_threshold: Optional[float] = None):
        self.source = source
        threshold = settings.HIGH_INVOLVEMENT_THRESHOLD if high_involvement_threshold is None else high_involvement_threshold
        self.high_involvement_threshold = Decimal(str(threshold))

    # ==================== Snapshots ====================

    def compute_snapshot(self, worker_id: str) -> WorkloadSnapshot:
        """Calculate the full workload snapshot for one worker."""
        worker_id = require_id(worker_id, "worker_id")
        worker = self.source.get_worker(worker_id)

        projects = sorted(self.source.list_active_project_commitments(worker_id), key=lambda c: c.project_id)
        initiatives = sorted(self.source.list_active_initiative_commitments(worker_id), key=lambda c: c.initiative_id)

        primary_total = sum((c.involvement_percentage for c in projects), _ZERO)
        secondary_total = sum((c.workload_percentage for c in initiatives), _ZERO)
        combined_total = primary_total + secondary_total

        warnings: List[str] = []
        if combined_total > worker.primary_ceiling:
            warnings.append(
                f"Total workload ({_pct(combined_total)}) exceeds capacity ({_pct(worker.primary_ceiling)})"
            )
        if secondary_total > worker.secondary_ceiling:
            warnings.append(
                f"Over & Beyond workload ({_pct(secondary_total)}) exceeds capacity ({_pct(worker.secondary_ceiling)})"
            )
        for commitment in projects:
            if commitment.involvement_percentage > self.high_involvement_threshold:
                warnings.append(
                    f"High involvement ({_pct(commitment.involvement_percentage)}) in project: {commitment.project_name}"
                )

        return WorkloadSnapshot(
            worker_id=worker.id,
            primary_total=primary_total,
            secondary_total=secondary_total,
            combined_total=combined_total,
            primary_available=max(_ZERO, worker.primary_ceiling - primary_total),
            secondary_available=max(_ZERO, worker.secondary_ceiling - secondary_total),
            primary_ceiling=worker.primary_ceiling,
            secondary_ceiling=worker.secondary_ceiling,
            is_overloaded=primary_total > worker.primary_ceiling or secondary_total > worker.secondary_ceiling,
            warnings=warnings,
            computed_at=datetime.utcnow(),
        )

    def compute_snapshots(self, worker_ids: Iterable[str]) -> List[WorkloadSnapshot]:
        """Calculate snapshots for several workers, skipping ones deleted meanwhile."""
        results: List[WorkloadSnapshot] = []
        for worker_id in worker_ids:
            try:
                results.append(self.compute_snapshot(worker_id))
            except NotFoundError:
                logger.warning("Worker disappeared before workload calculation", extra={"worker_id": worker_id})
        return results

    def get_workload_summary(self, roles: Optional[Iterable[str]] = None) -> WorkloadSummary:
        """Fleet-wide workload aggregate over active workers in the counted roles."""
        counted_roles = {r.upper() for r in (roles if roles is not None else settings.workload_roles_list)}
        workers = [w for w in self.source.list_workers(active_only=True) if w.role.upper() in counted_roles]
        snapshots = self.compute_snapshots(w.id for w in workers)

        total_workers = len(snapshots)
        total_project = sum((s.primary_total for s in snapshots), _ZERO)
        total_initiative = sum((s.secondary_total for s in snapshots), _ZERO)
        total_capacity = sum((s.primary_ceiling for s in snapshots), _ZERO)
        average = (
            sum((s.combined_total for s in snapshots), _ZERO) / total_workers if total_workers else _ZERO
        )
        utilization = total_project / total_capacity * 100 if total_capacity > 0 else _ZERO

        return WorkloadSummary(
            total_workers=total_workers,
            overloaded_workers=sum(1 for s in snapshots if s.is_overloaded),
            average_workload=average.quantize(Decimal("0.01")),
            total_project_workload=total_project,
            total_initiative_workload=total_initiative,
            capacity_utilization=utilization.quantize(Decimal("0.01")),
            computed_at=datetime.utcnow(),
        )

    # ==================== Admission ====================

    def validate_assignment_capacity(
        self,
        worker_id: str,
        proposed_percentage: Any,
        exclude_project_id: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Check whether a new or revised project commitment fits the primary ceiling.

        Args:
            worker_id: Worker receiving the commitment
            proposed_percentage: Involvement being requested, in [0, 100]
            exclude_project_id: Commitment being revised; its current value is
                left out of the running total so it is not counted twice

        Only advises; persisting the commitment and invalidating caches is up
        to the caller.
        """
        worker_id = require_id(worker_id, "worker_id")
        proposed = to_percentage(proposed_percentage, "involvement_percentage")
        worker = self.source.get_worker(worker_id)

        current = sum(
            (
                c.involvement_percentage
                for c in self.source.list_active_project_commitments(worker_id)
                if exclude_project_id is None or c.project_id != exclude_project_id
            ),
            _ZERO,
        )
        new_total = current + proposed
        can_admit = new_total <= worker.primary_ceiling

        warnings: List[str] = []
        if not can_admit:
            warnings.append(
                f"Assignment would exceed capacity: {_pct(new_total)} > {_pct(worker.primary_ceiling)}"
            )
        if proposed > self.high_involvement_threshold:
            warnings.append(f"High involvement percentage: {_pct(proposed)}")

        return AdmissionDecision(
            can_admit=can_admit,
            current_workload=current,
            new_total_workload=new_total,
            available_capacity=max(_ZERO, worker.primary_ceiling - current),
            primary_ceiling=worker.primary_ceiling,
            warnings=warnings,
        )
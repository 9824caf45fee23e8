"""
Tests for commitment mutations and their admission checks.
"""
import os
import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from workforce.exceptions import (
    BackendUnavailableError,
    CapacityExceededError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
)
from workforce.models import ProjectAssignment, ProjectStatus
from workforce.services.allocation_source import DatabaseAllocationSource
from workforce.services.cache_service import WorkloadCacheService
from workforce.services.commitment_service import CommitmentService
from workforce.services.workload_service import WorkloadCalculationService
from workforce.utils.locks import KeyedLock


@pytest.fixture
def cache_service(tagged_cache):
    return WorkloadCacheService(tagged_cache)


def _primary_total(source, worker_id):
    return WorkloadCalculationService(source).compute_snapshot(worker_id).primary_total


def _fail_writes(source, monkeypatch):
    if isinstance(source, DatabaseAllocationSource):
        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(source.db, "commit", failing_commit)
    else:
        def failing_replace(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", failing_replace)


@pytest.mark.unit
class TestProjectCommitments:

    def test_assign_within_capacity(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1", title="Alpha")

        commitment = CommitmentService(source).assign_to_project("w1", "p1", 40, role="Developer")

        assert commitment.involvement_percentage == Decimal("40")
        assert commitment.project_name == "Alpha"
        assert commitment.role == "Developer"
        assert _primary_total(source, "w1") == Decimal("40")

    def test_assign_over_capacity_is_rejected_and_not_written(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 60)

        with pytest.raises(CapacityExceededError) as exc_info:
            CommitmentService(source).assign_to_project("w1", "p2", 50)

        assert exc_info.value.status_code == 422
        assert exc_info.value.details["new_total_workload"] == 110.0
        assert exc_info.value.details["worker_id"] == "w1"
        assert source.get_project_commitment("w1", "p2") is None
        assert _primary_total(source, "w1") == Decimal("60")

    def test_duplicate_assignment_conflicts(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.assignment("w1", "p1", 10)

        with pytest.raises(ConflictError):
            CommitmentService(source).assign_to_project("w1", "p1", 10)

    def test_assign_rejects_invalid_percentage(self, memory_source, memory_seed):
        memory_seed.worker("w1")
        memory_seed.project("p1")

        with pytest.raises(InvalidArgumentError):
            CommitmentService(memory_source).assign_to_project("w1", "p1", 120)

    def test_assign_unknown_worker(self, backend):
        source, seed = backend
        seed.project("p1")

        with pytest.raises(NotFoundError):
            CommitmentService(source).assign_to_project("ghost", "p1", 10)

    def test_update_involvement_excludes_current_value(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 40)
        seed.assignment("w1", "p2", 50)

        commitment = CommitmentService(source).update_involvement("w1", "p2", 60)

        assert commitment.involvement_percentage == Decimal("60")
        assert _primary_total(source, "w1") == Decimal("100")

    def test_update_involvement_over_capacity_keeps_old_value(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 40)
        seed.assignment("w1", "p2", 50)

        with pytest.raises(CapacityExceededError):
            CommitmentService(source).update_involvement("w1", "p2", 61)

        assert source.get_project_commitment("w1", "p2").involvement_percentage == Decimal("50")

    def test_update_missing_commitment(self, memory_source, memory_seed):
        memory_seed.worker("w1")
        memory_seed.project("p1")

        with pytest.raises(NotFoundError):
            CommitmentService(memory_source).update_involvement("w1", "p1", 10)

    def test_unassign_frees_capacity(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 60)
        service = CommitmentService(source)

        service.unassign_from_project("w1", "p1")
        service.assign_to_project("w1", "p2", 50)

        assert _primary_total(source, "w1") == Decimal("50")

    def test_unassign_missing_commitment(self, backend):
        source, seed = backend
        seed.worker("w1")

        with pytest.raises(NotFoundError):
            CommitmentService(source).unassign_from_project("w1", "p1")

    def test_project_status_change_reports_affected_workers(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.worker("w2")
        seed.project("p1")
        seed.assignment("w2", "p1", 30)
        seed.assignment("w1", "p1", 20)

        affected = CommitmentService(source).update_project_status("p1", ProjectStatus.COMPLETED)

        assert affected == ["w1", "w2"]
        assert _primary_total(source, "w1") == 0

    def test_project_status_rejects_unknown_value(self, memory_source, memory_seed):
        memory_seed.project("p1")

        with pytest.raises(ValueError):
            CommitmentService(memory_source).update_project_status("p1", "ARCHIVED")

    def test_activation_over_capacity_is_rejected(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.worker("w2")
        seed.project("pA")
        seed.project("pB", status=ProjectStatus.PENDING)
        seed.project("pC")
        seed.assignment("w1", "pA", 60)
        seed.assignment("w1", "pB", 40)
        seed.assignment("w2", "pB", 40)
        service = CommitmentService(source)
        # pB does not count yet, so there is room for pC
        service.assign_to_project("w1", "pC", 40)

        with pytest.raises(ConflictError) as exc_info:
            service.update_project_status("pB", ProjectStatus.ACTIVE)

        assert exc_info.value.status_code == 409
        assert list(exc_info.value.details["workers"]) == ["w1"]
        assert exc_info.value.details["workers"]["w1"]["new_total_workload"] == 140.0
        assert source.get_project_commitment("w1", "pB").project_active is False
        assert _primary_total(source, "w1") == Decimal("100")
        assert _primary_total(source, "w2") == 0

    def test_activation_within_capacity(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.worker("w2")
        seed.project("pA")
        seed.project("pB", status=ProjectStatus.ON_HOLD)
        seed.assignment("w1", "pA", 50)
        seed.assignment("w1", "pB", 50)
        seed.assignment("w2", "pB", 30)

        affected = CommitmentService(source).update_project_status("pB", ProjectStatus.ACTIVE)

        assert affected == ["w1", "w2"]
        assert _primary_total(source, "w1") == Decimal("100")
        assert _primary_total(source, "w2") == Decimal("30")

    def test_failed_write_leaves_totals_unchanged(self, backend, monkeypatch):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 60)
        _fail_writes(source, monkeypatch)

        with pytest.raises(BackendUnavailableError):
            CommitmentService(source).assign_to_project("w1", "p2", 30)

        monkeypatch.undo()
        assert source.get_project_commitment("w1", "p2") is None
        assert _primary_total(source, "w1") == Decimal("60")
        # The capacity the failed write would have taken is still free
        CommitmentService(source).assign_to_project("w1", "p2", 40)
        assert _primary_total(source, "w1") == Decimal("100")

    def test_failed_status_change_keeps_old_status(self, backend, monkeypatch):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.assignment("w1", "p1", 60)
        _fail_writes(source, monkeypatch)

        with pytest.raises(BackendUnavailableError):
            CommitmentService(source).update_project_status("p1", ProjectStatus.COMPLETED)

        monkeypatch.undo()
        assert source.get_project_commitment("w1", "p1").project_active is True
        assert _primary_total(source, "w1") == Decimal("60")

    def test_rejected_assignment_leaves_session_usable(self, db_source, db_seed, db_session):
        db_seed.worker("w1")
        db_seed.project("p1")
        db_seed.project("p2")
        db_seed.project("p3")
        db_seed.assignment("w1", "p1", 70)
        service = CommitmentService(db_source)

        with pytest.raises(CapacityExceededError):
            service.assign_to_project("w1", "p2", 40)

        assert db_session.query(ProjectAssignment).filter(ProjectAssignment.employee_id == "w1").count() == 1
        service.assign_to_project("w1", "p3", 30)
        assert _primary_total(db_source, "w1") == Decimal("100")


@pytest.mark.unit
class TestInitiativeCommitments:

    def test_initiatives_are_not_admission_checked(self, backend):
        source, seed = backend
        seed.worker("w1", over_beyond_cap=20)
        seed.initiative("initA", None, 0)

        commitment = CommitmentService(source).assign_initiative("initA", "w1", 25)

        assert commitment.workload_percentage == Decimal("25")
        snapshot = WorkloadCalculationService(source).compute_snapshot("w1")
        assert snapshot.is_overloaded is True

    def test_cancel_initiative_releases_secondary_pool(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.initiative("initA", "w1", 15)

        CommitmentService(source).cancel_initiative("initA")

        assert WorkloadCalculationService(source).compute_snapshot("w1").secondary_total == 0

    def test_unknown_initiative(self, memory_source, memory_seed):
        memory_seed.worker("w1")

        with pytest.raises(NotFoundError):
            CommitmentService(memory_source).assign_initiative("nope", "w1", 10)


@pytest.mark.unit
class TestCacheInvalidation:

    def test_assignment_invalidates_cached_snapshot(self, memory_source, memory_seed, cache_service):
        memory_seed.worker("w1")
        memory_seed.project("p1")
        assert cache_service.get_worker_workload("w1", memory_source).primary_total == 0

        CommitmentService(memory_source, cache_service).assign_to_project("w1", "p1", 35)

        assert cache_service.get_worker_workload("w1", memory_source).primary_total == Decimal("35")

    def test_rejected_assignment_keeps_cache(self, memory_source, memory_seed, cache_service, tagged_cache):
        memory_seed.worker("w1")
        memory_seed.project("p1")
        memory_seed.project("p2")
        memory_seed.assignment("w1", "p1", 90)
        cache_service.get_worker_workload("w1", memory_source)

        with pytest.raises(CapacityExceededError):
            CommitmentService(memory_source, cache_service).assign_to_project("w1", "p2", 20)

        assert "workload:w1" in tagged_cache

    def test_initiative_reassignment_invalidates_both_workers(self, memory_source, memory_seed, cache_service, tagged_cache):
        memory_seed.worker("w1")
        memory_seed.worker("w2")
        memory_seed.initiative("initA", "w1", 10)
        cache_service.get_worker_workload("w1", memory_source)
        cache_service.get_worker_workload("w2", memory_source)

        CommitmentService(memory_source, cache_service).assign_initiative("initA", "w2", 10)

        assert "workload:w1" not in tagged_cache
        assert "workload:w2" not in tagged_cache
        assert cache_service.get_worker_workload("w1", memory_source).secondary_total == 0
        assert cache_service.get_worker_workload("w2", memory_source).secondary_total == Decimal("10")

    def test_project_status_invalidates_every_assignee(self, memory_source, memory_seed, cache_service, tagged_cache):
        memory_seed.worker("w1")
        memory_seed.worker("w2")
        memory_seed.worker("w3")
        memory_seed.project("p1")
        memory_seed.assignment("w1", "p1", 10)
        memory_seed.assignment("w2", "p1", 10)
        for worker_id in ("w1", "w2", "w3"):
            cache_service.get_worker_workload(worker_id, memory_source)

        CommitmentService(memory_source, cache_service).update_project_status("p1", "ON_HOLD")

        assert "workload:w1" not in tagged_cache
        assert "workload:w2" not in tagged_cache
        assert "workload:w3" in tagged_cache


@pytest.mark.unit
class TestConcurrentMutations:

    def _run_concurrently(self, *calls):
        barrier = threading.Barrier(len(calls))
        outcomes = []
        lock = threading.Lock()

        def runner(call):
            barrier.wait(5)
            try:
                result = call()
            except CapacityExceededError as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=runner, args=(call,)) for call in calls]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        return outcomes

    def test_no_double_booking(self, backend):
        source, seed = backend
        seed.worker("w1")
        for project_id in ("p1", "p2", "p3", "p4"):
            seed.project(project_id)
        service = CommitmentService(source, locks=KeyedLock())

        outcomes = self._run_concurrently(
            *[lambda pid=pid: service.assign_to_project("w1", pid, 40) for pid in ("p1", "p2", "p3", "p4")]
        )

        rejected = [o for o in outcomes if isinstance(o, CapacityExceededError)]
        assert len(outcomes) == 4
        assert len(rejected) == 2
        assert _primary_total(source, "w1") == Decimal("80")
        assert len(source.list_project_commitments("w1")) == 2

    def test_competing_revisions_each_revalidated(self, backend):
        source, seed = backend
        seed.worker("w1")
        seed.project("p1")
        seed.project("p2")
        seed.assignment("w1", "p1", 20)
        seed.assignment("w1", "p2", 30)
        service = CommitmentService(source, locks=KeyedLock())

        outcomes = self._run_concurrently(
            lambda: service.update_involvement("w1", "p1", 60),
            lambda: service.update_involvement("w1", "p1", 80),
        )

        assert sum(isinstance(o, CapacityExceededError) for o in outcomes) == 1
        assert source.get_project_commitment("w1", "p1").involvement_percentage == Decimal("60")
        assert _primary_total(source, "w1") <= Decimal("100")


@pytest.mark.unit
@pytest.mark.parametrize("worker_id", ["", "   ", None])
def test_blank_worker_id_is_invalid(memory_source, memory_seed, worker_id):
    memory_seed.project("p1")

    with pytest.raises(InvalidArgumentError):
        CommitmentService(memory_source).assign_to_project(worker_id, "p1", 10)


@pytest.mark.unit
def test_keyed_lock_forgets_released_keys():
    locks = KeyedLock()

    with locks.hold("w1"):
        with locks.hold("w1"):
            assert len(locks) == 1

    assert len(locks) == 0


@pytest.mark.unit
@pytest.mark.parametrize("blank", ["", "   ", None])
def test_blank_ids_are_invalid_for_every_mutation(memory_source, memory_seed, blank):
    memory_seed.worker("w1")
    memory_seed.project("p1")
    memory_seed.assignment("w1", "p1", 10)
    memory_seed.initiative("i1", "w1", 10)
    service = CommitmentService(memory_source)

    for call in (
        lambda: service.unassign_from_project(blank, "p1"),
        lambda: service.unassign_from_project("w1", blank),
        lambda: service.update_project_status(blank, ProjectStatus.ON_HOLD),
        lambda: service.assign_initiative(blank, "w1", 10),
        lambda: service.cancel_initiative(blank),
    ):
        with pytest.raises(InvalidArgumentError):
            call()

    assert memory_source.get_project_commitment("w1", "p1") is not None

"""
Allocation sources: read/write access to workers and their commitments.

Two backends share one contract. ``DatabaseAllocationSource`` is the durable
relational store; ``FileAllocationSource`` is the degraded fallback (JSON files,
or pure memory) used when the database is unreachable. Backends only fetch and
store records; every aggregate is computed in ``workload_service``.
"""
import copy
import json
import logging
import math
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workforce.config import settings
from workforce.exceptions import BackendUnavailableError, InvalidArgumentError, NotFoundError
from workforce.models import (
    Initiative,
    InitiativeStatus,
    Project,
    ProjectAssignment,
    ProjectStatus,
    Role,
    User,
)
from workforce.utils.retry import retry_database

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
MIN_PERCENTAGE = Decimal("0")
MAX_PERCENTAGE = Decimal("100")


def to_percentage(value: Any, field: str = "percentage") -> Decimal:
    """Normalize a percentage to a two-place Decimal in [0, 100]."""
    if isinstance(value, bool) or value is None:
        raise InvalidArgumentError(f"{field} must be a number", details={"field": field, "value": value})
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidArgumentError(f"{field} must be finite", details={"field": field, "value": str(value)})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidArgumentError(f"{field} must be a number", details={"field": field, "value": str(value)})
    if not amount.is_finite():
        raise InvalidArgumentError(f"{field} must be finite", details={"field": field, "value": str(value)})
    amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if amount < MIN_PERCENTAGE or amount > MAX_PERCENTAGE:
        raise InvalidArgumentError(
            f"{field} must be between 0 and 100",
            details={"field": field, "value": str(value)},
        )
    return amount


def _ceiling(value: Any, default: float) -> Decimal:
    if value is None or value == "":
        return Decimal(str(default)).quantize(_CENT)
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def require_id(value: Any, field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidArgumentError(f"{field} is required", details={"field": field})
    return str(value).strip()


def _is_active(status: Any) -> bool:
    raw = getattr(status, "value", status)
    return str(raw or "").upper() == "ACTIVE"


@dataclass(frozen=True)
class Worker:
    id: str
    name: str
    role: str
    is_active: bool
    primary_ceiling: Decimal
    secondary_ceiling: Decimal


@dataclass(frozen=True)
class ProjectCommitment:
    worker_id: str
    project_id: str
    project_name: str
    involvement_percentage: Decimal
    project_active: bool
    role: Optional[str] = None


@dataclass(frozen=True)
class InitiativeCommitment:
    worker_id: str
    initiative_id: str
    initiative_name: str
    workload_percentage: Decimal
    initiative_active: bool


class AllocationSource:
    """Contract every allocation backend implements."""

    name = "abstract"

    # -------- reads --------

    def get_worker(self, worker_id: str) -> Worker:
        raise NotImplementedError

    def list_workers(self, active_only: bool = True) -> List[Worker]:
        raise NotImplementedError

    def list_project_commitments(self, worker_id: str) -> List[ProjectCommitment]:
        raise NotImplementedError

    def list_initiative_commitments(self, worker_id: str) -> List[InitiativeCommitment]:
        raise NotImplementedError

    def get_project_commitment(self, worker_id: str, project_id: str) -> Optional[ProjectCommitment]:
        raise NotImplementedError

    def list_project_workers(self, project_id: str) -> List[str]:
        raise NotImplementedError

    def get_initiative_assignee(self, initiative_id: str) -> Optional[str]:
        raise NotImplementedError

    def list_active_project_commitments(self, worker_id: str) -> List[ProjectCommitment]:
        return [c for c in self.list_project_commitments(worker_id) if c.project_active]

    def list_active_initiative_commitments(self, worker_id: str) -> List[InitiativeCommitment]:
        return [c for c in self.list_initiative_commitments(worker_id) if c.initiative_active]

    # -------- writes --------

    def save_project_commitment(
        self, worker_id: str, project_id: str, involvement_percentage: Decimal, role: Optional[str] = None
    ) -> ProjectCommitment:
        raise NotImplementedError

    def delete_project_commitment(self, worker_id: str, project_id: str) -> None:
        raise NotImplementedError

    def save_initiative_commitment(
        self, initiative_id: str, worker_id: str, workload_percentage: Decimal
    ) -> InitiativeCommitment:
        raise NotImplementedError

    def set_initiative_status(self, initiative_id: str, status: InitiativeStatus) -> None:
        raise NotImplementedError

    def set_project_status(self, project_id: str, status: ProjectStatus) -> None:
        raise NotImplementedError

    @contextmanager
    def worker_scope(self, worker_id: str) -> Iterator["AllocationSource"]:
        """Transactional read-check-write window for one worker."""
        raise NotImplementedError
        yield self  # pragma: no cover


# ==================== Relational backend ====================


class DatabaseAllocationSource(AllocationSource):
    """SQLAlchemy-backed source; the durable system of record."""

    name = "database"

    def __init__(self, db: Session):
        self.db = db
        self._scope_depth = 0

    @contextmanager
    def _guard(self, operation: str, **context):
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Allocation backend error during %s: %s", operation, exc, extra=context)
            raise BackendUnavailableError(
                f"Database unavailable during {operation}",
                details={"operation": operation, "backend": self.name, **context},
            ) from exc

    def _commit(self) -> None:
        if self._scope_depth:
            self.db.flush()
        else:
            self.db.commit()

    def _to_worker(self, user: User) -> Worker:
        return Worker(
            id=user.id,
            name=user.name,
            role=user.role.value if user.role else Role.EMPLOYEE.value,
            is_active=bool(user.is_active),
            primary_ceiling=_ceiling(user.workload_cap, settings.DEFAULT_WORKLOAD_CAP),
            secondary_ceiling=_ceiling(user.over_beyond_cap, settings.DEFAULT_OVER_BEYOND_CAP),
        )

    def _to_project_commitment(self, assignment: ProjectAssignment) -> ProjectCommitment:
        return ProjectCommitment(
            worker_id=assignment.employee_id,
            project_id=assignment.project_id,
            project_name=assignment.project.title if assignment.project else assignment.project_id,
            involvement_percentage=_ceiling(assignment.involvement_percentage, 0),
            project_active=_is_active(assignment.project.status if assignment.project else None),
            role=assignment.role,
        )

    def _to_initiative_commitment(self, initiative: Initiative) -> InitiativeCommitment:
        return InitiativeCommitment(
            worker_id=initiative.assigned_to,
            initiative_id=initiative.id,
            initiative_name=initiative.title,
            workload_percentage=_ceiling(initiative.workload_percentage, 0),
            initiative_active=_is_active(initiative.status),
        )

    def ping(self) -> None:
        self.db.execute(text("SELECT 1"))

    def get_worker(self, worker_id: str) -> Worker:
        with self._guard("get_worker", worker_id=worker_id):
            user = self.db.query(User).filter(User.id == worker_id).first()
        if not user:
            raise NotFoundError("Worker", worker_id)
        return self._to_worker(user)

    def list_workers(self, active_only: bool = True) -> List[Worker]:
        with self._guard("list_workers"):
            query = self.db.query(User)
            if active_only:
                query = query.filter(User.is_active == True)
            users = query.order_by(User.id).all()
        return [self._to_worker(u) for u in users]

    def list_project_commitments(self, worker_id: str) -> List[ProjectCommitment]:
        with self._guard("list_project_commitments", worker_id=worker_id):
            assignments = (
                self.db.query(ProjectAssignment)
                .filter(ProjectAssignment.employee_id == worker_id)
                .all()
            )
            return [self._to_project_commitment(a) for a in assignments]

    def list_initiative_commitments(self, worker_id: str) -> List[InitiativeCommitment]:
        with self._guard("list_initiative_commitments", worker_id=worker_id):
            initiatives = self.db.query(Initiative).filter(Initiative.assigned_to == worker_id).all()
            return [self._to_initiative_commitment(i) for i in initiatives]

    def get_project_commitment(self, worker_id: str, project_id: str) -> Optional[ProjectCommitment]:
        with self._guard("get_project_commitment", worker_id=worker_id, project_id=project_id):
            assignment = self._find_assignment(worker_id, project_id)
            return self._to_project_commitment(assignment) if assignment else None

    def list_project_workers(self, project_id: str) -> List[str]:
        with self._guard("list_project_workers", project_id=project_id):
            rows = (
                self.db.query(ProjectAssignment.employee_id)
                .filter(ProjectAssignment.project_id == project_id)
                .all()
            )
        return sorted(row[0] for row in rows)

    def get_initiative_assignee(self, initiative_id: str) -> Optional[str]:
        with self._guard("get_initiative_assignee", initiative_id=initiative_id):
            initiative = self.db.query(Initiative).filter(Initiative.id == initiative_id).first()
        if not initiative:
            raise NotFoundError("Initiative", initiative_id)
        return initiative.assigned_to

    def _find_assignment(self, worker_id: str, project_id: str) -> Optional[ProjectAssignment]:
        return (
            self.db.query(ProjectAssignment)
            .filter(ProjectAssignment.employee_id == worker_id, ProjectAssignment.project_id == project_id)
            .first()
        )

    def save_project_commitment(
        self, worker_id: str, project_id: str, involvement_percentage: Decimal, role: Optional[str] = None
    ) -> ProjectCommitment:
        with self._guard("save_project_commitment", worker_id=worker_id, project_id=project_id):
            if not self.db.query(Project).filter(Project.id == project_id).first():
                raise NotFoundError("Project", project_id)
            if not self.db.query(User).filter(User.id == worker_id).first():
                raise NotFoundError("Worker", worker_id)
            assignment = self._find_assignment(worker_id, project_id)
            if assignment is None:
                assignment = ProjectAssignment(project_id=project_id, employee_id=worker_id, role=role)
                self.db.add(assignment)
            elif role is not None:
                assignment.role = role
            assignment.involvement_percentage = involvement_percentage
            assignment.updated_at = datetime.utcnow()
            self._commit()
            self.db.refresh(assignment)
            return self._to_project_commitment(assignment)

    def delete_project_commitment(self, worker_id: str, project_id: str) -> None:
        with self._guard("delete_project_commitment", worker_id=worker_id, project_id=project_id):
            assignment = self._find_assignment(worker_id, project_id)
            if assignment is None:
                raise NotFoundError("Project assignment", f"{project_id}/{worker_id}")
            self.db.delete(assignment)
            self._commit()

    def save_initiative_commitment(
        self, initiative_id: str, worker_id: str, workload_percentage: Decimal
    ) -> InitiativeCommitment:
        with self._guard("save_initiative_commitment", worker_id=worker_id, initiative_id=initiative_id):
            initiative = self.db.query(Initiative).filter(Initiative.id == initiative_id).first()
            if not initiative:
                raise NotFoundError("Initiative", initiative_id)
            if not self.db.query(User).filter(User.id == worker_id).first():
                raise NotFoundError("Worker", worker_id)
            initiative.assigned_to = worker_id
            initiative.workload_percentage = workload_percentage
            self._commit()
            self.db.refresh(initiative)
            return self._to_initiative_commitment(initiative)

    def set_initiative_status(self, initiative_id: str, status: InitiativeStatus) -> None:
        with self._guard("set_initiative_status", initiative_id=initiative_id):
            initiative = self.db.query(Initiative).filter(Initiative.id == initiative_id).first()
            if not initiative:
                raise NotFoundError("Initiative", initiative_id)
            initiative.status = InitiativeStatus(status)
            self._commit()

    def set_project_status(self, project_id: str, status: ProjectStatus) -> None:
        with self._guard("set_project_status", project_id=project_id):
            project = self.db.query(Project).filter(Project.id == project_id).first()
            if not project:
                raise NotFoundError("Project", project_id)
            project.status = ProjectStatus(status)
            self._commit()

    @contextmanager
    def worker_scope(self, worker_id: str) -> Iterator["DatabaseAllocationSource"]:
        """Lock the worker row so concurrent writers queue behind this check-then-write."""
        with self._guard("worker_scope", worker_id=worker_id):
            locked = self.db.query(User).filter(User.id == worker_id).with_for_update().first()
        if locked is None:
            self.db.rollback()
            raise NotFoundError("Worker", worker_id)
        self._scope_depth += 1
        try:
            yield self
        except BaseException:
            self._scope_depth -= 1
            self.db.rollback()
            raise
        self._scope_depth -= 1
        if not self._scope_depth:
            with self._guard("worker_scope_commit", worker_id=worker_id):
                self.db.commit()


# ==================== Fallback backend ====================


class FileAllocationSource(AllocationSource):
    """
    Degraded backend kept in JSON files under ``data_dir``.

    With ``data_dir=None`` the store lives only in memory. All access goes
    through one re-entrant lock; writes inside ``worker_scope`` are persisted
    once when the scope exits and discarded if the scope raises or the write
    fails.
    """

    name = "file"

    USERS_FILE = "users.json"
    PROJECTS_FILE = "projects.json"
    ASSIGNMENTS_FILE = "assignments.json"
    INITIATIVES_FILE = "initiatives.json"

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir
        self._lock = threading.RLock()
        self._scope_depth = 0
        self._dirty = False
        self._data: Dict[str, List[Dict[str, Any]]] = {
            self.USERS_FILE: [],
            self.PROJECTS_FILE: [],
            self.ASSIGNMENTS_FILE: [],
            self.INITIATIVES_FILE: [],
        }
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)
            for filename in self._data:
                self._data[filename] = self._read_file(filename)

    # -------- persistence --------

    def _path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)

    def _read_file(self, filename: str) -> List[Dict[str, Any]]:
        path = self._path(filename)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            raise BackendUnavailableError(
                f"Fallback store unreadable: {filename}",
                details={"backend": self.name, "file": filename},
            ) from exc
        return data if isinstance(data, list) else []

    def _stage_file(self, filename: str, records: List[Dict[str, Any]]) -> str:
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{filename}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, default=str)
        except OSError:
            os.remove(tmp_path)
            raise
        return tmp_path

    def _flush(self) -> None:
        """Stage every file before renaming any of them into place."""
        if not self.data_dir:
            return
        staged: List[str] = []
        try:
            for filename, records in self._data.items():
                staged.append(self._stage_file(filename, records))
            for tmp_path, filename in zip(staged, self._data):
                os.replace(tmp_path, self._path(filename))
        except OSError as exc:
            for tmp_path in staged:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            raise BackendUnavailableError(
                "Fallback store unwritable",
                details={"backend": self.name, "data_dir": self.data_dir},
            ) from exc

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """
        Hold the store lock around one mutation.

        Outside a worker scope the change is flushed immediately and the
        in-memory records are restored if the flush fails. Inside a scope
        the flush waits for the outermost scope to exit.
        """
        with self._lock:
            if self._scope_depth:
                yield
                self._dirty = True
                return
            backup = copy.deepcopy(self._data)
            try:
                yield
                self._flush()
            except BaseException:
                self._data = backup
                raise

    # -------- record helpers --------

    def _users(self) -> List[Dict[str, Any]]:
        return self._data[self.USERS_FILE]

    def _projects(self) -> List[Dict[str, Any]]:
        return self._data[self.PROJECTS_FILE]

    def _assignments(self) -> List[Dict[str, Any]]:
        return self._data[self.ASSIGNMENTS_FILE]

    def _initiatives(self) -> List[Dict[str, Any]]:
        return self._data[self.INITIATIVES_FILE]

    @staticmethod
    def _find(records: List[Dict[str, Any]], record_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in records if r.get("id") == record_id), None)

    def _find_assignment(self, worker_id: str, project_id: str) -> Optional[Dict[str, Any]]:
        return next(
            (a for a in self._assignments() if a.get("employeeId") == worker_id and a.get("projectId") == project_id),
            None,
        )

    def _to_worker(self, user: Dict[str, Any]) -> Worker:
        return Worker(
            id=user["id"],
            name=user.get("name") or user["id"],
            role=str(user.get("role") or Role.EMPLOYEE.value).upper(),
            is_active=bool(user.get("isActive", True)),
            primary_ceiling=_ceiling(user.get("workloadCap"), settings.DEFAULT_WORKLOAD_CAP),
            secondary_ceiling=_ceiling(user.get("overBeyondCap"), settings.DEFAULT_OVER_BEYOND_CAP),
        )

    def _to_project_commitment(self, assignment: Dict[str, Any]) -> ProjectCommitment:
        project = self._find(self._projects(), assignment["projectId"]) or {}
        return ProjectCommitment(
            worker_id=assignment["employeeId"],
            project_id=assignment["projectId"],
            project_name=project.get("title") or assignment["projectId"],
            involvement_percentage=_ceiling(assignment.get("involvementPercentage"), 0),
            project_active=_is_active(project.get("status")),
            role=assignment.get("role"),
        )

    def _to_initiative_commitment(self, initiative: Dict[str, Any]) -> InitiativeCommitment:
        return InitiativeCommitment(
            worker_id=initiative["assignedTo"],
            initiative_id=initiative["id"],
            initiative_name=initiative.get("title") or initiative["id"],
            workload_percentage=_ceiling(initiative.get("workloadPercentage"), 0),
            initiative_active=_is_active(initiative.get("status")),
        )

    # -------- seeding --------

    def add_worker(
        self,
        worker_id: Optional[str] = None,
        name: str = "",
        role: str = Role.EMPLOYEE.value,
        is_active: bool = True,
        workload_cap: Any = None,
        over_beyond_cap: Any = None,
        email: Optional[str] = None,
    ) -> Worker:
        with self._writing():
            worker_id = worker_id or str(uuid.uuid4())
            now = datetime.utcnow().isoformat()
            record = {
                "id": worker_id,
                "name": name or worker_id,
                "email": email or f"{worker_id}@example.com",
                "role": getattr(role, "value", role),
                "isActive": is_active,
                "workloadCap": None if workload_cap is None else str(workload_cap),
                "overBeyondCap": None if over_beyond_cap is None else str(over_beyond_cap),
                "createdAt": now,
                "updatedAt": now,
            }
            users = self._users()
            existing = self._find(users, worker_id)
            if existing:
                existing.update(record)
            else:
                users.append(record)
            return self._to_worker(record)

    def add_project(self, project_id: Optional[str] = None, title: str = "", status: Any = ProjectStatus.ACTIVE) -> str:
        with self._writing():
            project_id = project_id or str(uuid.uuid4())
            record = {"id": project_id, "title": title or project_id, "status": getattr(status, "value", status)}
            existing = self._find(self._projects(), project_id)
            if existing:
                existing.update(record)
            else:
                self._projects().append(record)
            return project_id

    def add_initiative(
        self,
        initiative_id: Optional[str] = None,
        title: str = "",
        assigned_to: Optional[str] = None,
        workload_percentage: Any = 0,
        status: Any = InitiativeStatus.ACTIVE,
    ) -> str:
        with self._writing():
            initiative_id = initiative_id or str(uuid.uuid4())
            record = {
                "id": initiative_id,
                "title": title or initiative_id,
                "assignedTo": assigned_to,
                "workloadPercentage": str(to_percentage(workload_percentage, "workload_percentage")),
                "status": getattr(status, "value", status),
            }
            existing = self._find(self._initiatives(), initiative_id)
            if existing:
                existing.update(record)
            else:
                self._initiatives().append(record)
            return initiative_id

    # -------- reads --------

    def get_worker(self, worker_id: str) -> Worker:
        with self._lock:
            user = self._find(self._users(), worker_id)
            if not user:
                raise NotFoundError("Worker", worker_id)
            return self._to_worker(user)

    def list_workers(self, active_only: bool = True) -> List[Worker]:
        with self._lock:
            workers = [self._to_worker(u) for u in self._users()]
        if active_only:
            workers = [w for w in workers if w.is_active]
        return sorted(workers, key=lambda w: w.id)

    def list_project_commitments(self, worker_id: str) -> List[ProjectCommitment]:
        with self._lock:
            return [
                self._to_project_commitment(a)
                for a in self._assignments()
                if a.get("employeeId") == worker_id
            ]

    def list_initiative_commitments(self, worker_id: str) -> List[InitiativeCommitment]:
        with self._lock:
            return [
                self._to_initiative_commitment(i)
                for i in self._initiatives()
                if i.get("assignedTo") == worker_id
            ]

    def get_project_commitment(self, worker_id: str, project_id: str) -> Optional[ProjectCommitment]:
        with self._lock:
            assignment = self._find_assignment(worker_id, project_id)
            return self._to_project_commitment(assignment) if assignment else None

    def list_project_workers(self, project_id: str) -> List[str]:
        with self._lock:
            return sorted(a["employeeId"] for a in self._assignments() if a.get("projectId") == project_id)

    def get_initiative_assignee(self, initiative_id: str) -> Optional[str]:
        with self._lock:
            initiative = self._find(self._initiatives(), initiative_id)
            if not initiative:
                raise NotFoundError("Initiative", initiative_id)
            return initiative.get("assignedTo")

    # -------- writes --------

    def save_project_commitment(
        self, worker_id: str, project_id: str, involvement_percentage: Decimal, role: Optional[str] = None
    ) -> ProjectCommitment:
        with self._writing():
            if not self._find(self._projects(), project_id):
                raise NotFoundError("Project", project_id)
            if not self._find(self._users(), worker_id):
                raise NotFoundError("Worker", worker_id)
            now = datetime.utcnow().isoformat()
            assignment = self._find_assignment(worker_id, project_id)
            if assignment is None:
                assignment = {
                    "id": str(uuid.uuid4()),
                    "projectId": project_id,
                    "employeeId": worker_id,
                    "role": role,
                    "assignedAt": now,
                }
                self._assignments().append(assignment)
            elif role is not None:
                assignment["role"] = role
            assignment["involvementPercentage"] = str(involvement_percentage)
            assignment["updatedAt"] = now
            return self._to_project_commitment(assignment)

    def delete_project_commitment(self, worker_id: str, project_id: str) -> None:
        with self._writing():
            assignment = self._find_assignment(worker_id, project_id)
            if assignment is None:
                raise NotFoundError("Project assignment", f"{project_id}/{worker_id}")
            self._assignments().remove(assignment)

    def save_initiative_commitment(
        self, initiative_id: str, worker_id: str, workload_percentage: Decimal
    ) -> InitiativeCommitment:
        with self._writing():
            initiative = self._find(self._initiatives(), initiative_id)
            if not initiative:
                raise NotFoundError("Initiative", initiative_id)
            if not self._find(self._users(), worker_id):
                raise NotFoundError("Worker", worker_id)
            initiative["assignedTo"] = worker_id
            initiative["workloadPercentage"] = str(workload_percentage)
            return self._to_initiative_commitment(initiative)

    def set_initiative_status(self, initiative_id: str, status: InitiativeStatus) -> None:
        with self._writing():
            initiative = self._find(self._initiatives(), initiative_id)
            if not initiative:
                raise NotFoundError("Initiative", initiative_id)
            initiative["status"] = InitiativeStatus(status).value

    def set_project_status(self, project_id: str, status: ProjectStatus) -> None:
        with self._writing():
            project = self._find(self._projects(), project_id)
            if not project:
                raise NotFoundError("Project", project_id)
            project["status"] = ProjectStatus(status).value

    @contextmanager
    def worker_scope(self, worker_id: str) -> Iterator["FileAllocationSource"]:
        with self._lock:
            if not self._find(self._users(), worker_id):
                raise NotFoundError("Worker", worker_id)
            outermost = not self._scope_depth
            backup = copy.deepcopy(self._data) if outermost else None
            self._scope_depth += 1
            try:
                yield self
            except BaseException:
                self._scope_depth -= 1
                if outermost:
                    self._data = backup
                    self._dirty = False
                raise
            self._scope_depth -= 1
            if outermost and self._dirty:
                try:
                    self._flush()
                except BackendUnavailableError:
                    self._data = backup
                    raise
                finally:
                    self._dirty = False


# ==================== Backend selection ====================

_fallback_source: Optional[FileAllocationSource] = None
_fallback_lock = threading.Lock()


def get_fallback_source() -> FileAllocationSource:
    """Process-wide fallback store, loaded once from ``FALLBACK_DATA_DIR``."""
    global _fallback_source
    with _fallback_lock:
        if _fallback_source is None:
            _fallback_source = FileAllocationSource(settings.FALLBACK_DATA_DIR)
        return _fallback_source


def reset_fallback_source() -> None:
    global _fallback_source
    with _fallback_lock:
        _fallback_source = None


def _database_reachable(source: DatabaseAllocationSource) -> bool:
    @retry_database(max_attempts=settings.DATABASE_CONNECT_RETRIES)
    def _ping():
        source.ping()

    try:
        _ping()
        return True
    except SQLAlchemyError as exc:
        source.db.rollback()
        logger.warning("Database unreachable, using fallback allocation store: %s", exc)
        return False


def get_allocation_source(db: Optional[Session] = None) -> AllocationSource:
    backend = (settings.STORAGE_BACKEND or "auto").lower()
    if backend == "file" or db is None:
        if backend == "database":
            raise BackendUnavailableError("No database session available", details={"backend": backend})
        return get_fallback_source()
    source = DatabaseAllocationSource(db)
    if backend == "database":
        return source
    if _database_reachable(source):
        return source
    return get_fallback_source()

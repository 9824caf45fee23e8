import enum
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Enum, Numeric, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from workforce.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    PROGRAM_MANAGER = "PROGRAM_MANAGER"
    RD_MANAGER = "RD_MANAGER"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


class ProjectStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"


class InitiativeStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(Enum(Role), default=Role.EMPLOYEE, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # Capacity ceilings; NULL means "use the configured default"
    workload_cap = Column(Numeric(5, 2), nullable=True, default=100)
    over_beyond_cap = Column(Numeric(5, 2), nullable=True, default=20)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    assignments = relationship("ProjectAssignment", back_populates="employee", cascade="all, delete-orphan")
    initiatives = relationship("Initiative", back_populates="assignee")


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, default=_new_id)
    title = Column(String(500), nullable=False)
    status = Column(Enum(ProjectStatus), default=ProjectStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    assignments = relationship("ProjectAssignment", back_populates="project", cascade="all, delete-orphan")


class ProjectAssignment(Base):
    __tablename__ = "project_assignments"
    __table_args__ = (
        UniqueConstraint("project_id", "employee_id", name="uq_project_assignment_project_employee"),
        Index("ix_project_assignments_employee_id", "employee_id"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False)
    employee_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    involvement_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    role = Column(String(100), nullable=True)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="assignments")
    employee = relationship("User", back_populates="assignments")


class Initiative(Base):
    __tablename__ = "initiatives"

    id = Column(String(64), primary_key=True, default=_new_id)
    title = Column(String(500), nullable=False)
    assigned_to = Column(String(64), ForeignKey("users.id"), nullable=True, index=True)
    workload_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    status = Column(Enum(InitiativeStatus), default=InitiativeStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    assignee = relationship("User", back_populates="initiatives")

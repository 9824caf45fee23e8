"""
Test configuration and fixtures.
Importing workforce.main is deferred to the client fixture so service-level
tests never build the FastAPI app.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from workforce.db import Base
from workforce.models import Initiative, InitiativeStatus, Project, ProjectAssignment, ProjectStatus, Role, User
from workforce.services.allocation_source import DatabaseAllocationSource, FileAllocationSource, to_percentage
from workforce.utils.cache import TaggedCache

# Test database URL (in-memory SQLite)
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

# Create test engine
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DatabaseSeeder:
    """Writes fixture records straight through the ORM."""

    def __init__(self, session):
        self.session = session

    def worker(self, worker_id, name=None, role=Role.EMPLOYEE, workload_cap=100, over_beyond_cap=20, is_active=True):
        self.session.add(
            User(
                id=worker_id,
                name=name or worker_id,
                email=f"{worker_id}@test.com",
                role=Role(role),
                is_active=is_active,
                workload_cap=workload_cap,
                over_beyond_cap=over_beyond_cap,
            )
        )
        self.session.commit()

    def project(self, project_id, title=None, status=ProjectStatus.ACTIVE):
        self.session.add(Project(id=project_id, title=title or project_id, status=ProjectStatus(status)))
        self.session.commit()

    def assignment(self, worker_id, project_id, percentage):
        self.session.add(
            ProjectAssignment(project_id=project_id, employee_id=worker_id, involvement_percentage=percentage)
        )
        self.session.commit()

    def initiative(self, initiative_id, worker_id, percentage, status=InitiativeStatus.ACTIVE, title=None):
        self.session.add(
            Initiative(
                id=initiative_id,
                title=title or initiative_id,
                assigned_to=worker_id,
                workload_percentage=percentage,
                status=InitiativeStatus(status),
            )
        )
        self.session.commit()


class FileSeeder:
    """Writes the same fixture records into a fallback store."""

    def __init__(self, source: FileAllocationSource):
        self.source = source

    def worker(self, worker_id, name=None, role=Role.EMPLOYEE, workload_cap=100, over_beyond_cap=20, is_active=True):
        self.source.add_worker(
            worker_id,
            name=name or worker_id,
            role=Role(role).value,
            is_active=is_active,
            workload_cap=workload_cap,
            over_beyond_cap=over_beyond_cap,
        )

    def project(self, project_id, title=None, status=ProjectStatus.ACTIVE):
        self.source.add_project(project_id, title=title or project_id, status=status)

    def assignment(self, worker_id, project_id, percentage):
        self.source.save_project_commitment(worker_id, project_id, to_percentage(percentage))

    def initiative(self, initiative_id, worker_id, percentage, status=InitiativeStatus.ACTIVE, title=None):
        self.source.add_initiative(
            initiative_id, title=title or initiative_id, assigned_to=worker_id,
            workload_percentage=percentage, status=status,
        )


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_source(db_session):
    return DatabaseAllocationSource(db_session)


@pytest.fixture
def db_seed(db_session):
    return DatabaseSeeder(db_session)


@pytest.fixture
def memory_source():
    return FileAllocationSource()


@pytest.fixture
def memory_seed(memory_source):
    return FileSeeder(memory_source)


@pytest.fixture
def file_source(tmp_path):
    return FileAllocationSource(str(tmp_path / "data"))


@pytest.fixture
def file_seed(file_source):
    return FileSeeder(file_source)


@pytest.fixture(params=["database", "file"])
def backend(request, tmp_path):
    """(source, seeder) for each backend, so one test body covers both."""
    if request.param == "database":
        session = request.getfixturevalue("db_session")
        return DatabaseAllocationSource(session), DatabaseSeeder(session)
    source = FileAllocationSource(str(tmp_path / "fallback"))
    return source, FileSeeder(source)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tagged_cache(clock):
    cache = TaggedCache(default_ttl=300, sweep_interval=60, clock=clock)
    yield cache
    cache.shutdown()


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database session override."""
    from fastapi.testclient import TestClient
    from workforce.deps import get_db
    from workforce.main import create_app

    app = create_app(start_background=False)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

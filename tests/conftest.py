import os
import tempfile
from datetime import timedelta

# Settings are read at import time, point them at a throwaway database first
_tmpdir = tempfile.mkdtemp(prefix="awaz-tests-")
os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(_tmpdir, 'awaz_test.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LIVE_TALLY_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

from awaz import models, schemas
from awaz.database import Base, SessionLocal, engine
from awaz.dependencies import get_current_admin
from awaz.main import app
from awaz.timeutils import utcnow


@pytest.fixture(autouse=True)
def setup_and_teardown_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def create_election(db):
    def _create(title="Student Council President", status=models.ElectionStatus.draft,
                start_offset=timedelta(hours=-1), end_offset=timedelta(hours=1), candidates=0, **kwargs):
        now = utcnow()
        election = models.Election(
            title=title,
            category=kwargs.pop("category", "president"),
            status=status,
            start_date=now + start_offset,
            end_date=now + end_offset,
            **kwargs,
        )
        db.add(election)
        db.flush()
        for i in range(candidates):
            db.add(models.Candidate(election_id=election.id, name=f"Candidate {i + 1}", position=i + 1))
        db.commit()
        db.refresh(election)
        return election
    return _create


@pytest.fixture
def create_student(db):
    def _create(voting_id="VROLL0021694", name="Ayesha Khan", is_active=True):
        student = models.Student(name=name, voting_id=voting_id, is_active=is_active)
        db.add(student)
        db.commit()
        db.refresh(student)
        return student
    return _create


@pytest.fixture
def audit_entries(db):
    def _entries(action):
        db.expire_all()
        return db.query(models.AuditLog).filter(models.AuditLog.action_type == action).all()
    return _entries


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_client(client):
    """Client authenticated as a superadmin without going through /auth/token."""
    app.dependency_overrides[get_current_admin] = lambda: schemas.AdminResponse(
        id=1, name="Test Admin", email="admin@awaz.com", role="superadmin", created_at=utcnow(),
    )
    yield client
    app.dependency_overrides.pop(get_current_admin, None)


@pytest.fixture
def auditor_client(client):
    app.dependency_overrides[get_current_admin] = lambda: schemas.AdminResponse(
        id=2, name="Test Auditor", email="auditor@awaz.com", role="auditor", created_at=utcnow(),
    )
    yield client
    app.dependency_overrides.pop(get_current_admin, None)

# tests/conftest.py
"""Pytest configuration and fixtures"""
import os
import uuid
from types import SimpleNamespace

import pytest

# Settings are read at import time; pin them before anything from jobsync loads
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("DEADLINE_SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("ENABLE_PUSH", "true")

from fastapi.testclient import TestClient  # noqa: E402

from jobsync.auth.security import create_access_token  # noqa: E402
from jobsync.db import (  # noqa: E402
    Base,
    get_db,
    get_session_factory,
    make_engine,
    make_session_factory,
    utcnow,
)
from jobsync.models.models import (  # noqa: E402
    Company,
    Job,
    JobTask,
    Team,
    TeamTask,
    User,
    UserRole,
    Vendor,
    Worker,
)
from jobsync.services.fanout import bus  # noqa: E402


@pytest.fixture
def engine():
    """One shared in-memory SQLite connection per test"""
    eng = make_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_bus():
    yield
    bus.close_all()
    bus.alert_policy = None


def make_user(db, company, role, email=None):
    user = User(email=email or f"{uuid.uuid4().hex[:10]}@example.com")
    db.add(user)
    db.flush()
    db.add(UserRole(user_id=user.id, company_id=company.id, role=role))
    db.flush()
    return user


@pytest.fixture
def world(db):
    """
    Acme Builders with one of each directory row:
    admin (company role), a vendor with a login, a worker under that vendor,
    a team headed by a second worker, and an unassigned job.
    A second company with its own admin stands outside.
    """
    company = Company(name="Acme Builders")
    other_company = Company(name="Other Co")
    db.add_all([company, other_company])
    db.flush()

    admin = make_user(db, company, "company", "admin@acme.test")
    vendor_user = make_user(db, company, "vendor", "vendor@acme.test")
    worker_user = make_user(db, company, "worker", "dana@acme.test")
    head_user = make_user(db, company, "worker", "sam@acme.test")
    outsider = make_user(db, other_company, "company", "outsider@other.test")

    vendor = Vendor(company_id=company.id, name="Northside Electric", user_id=vendor_user.id)
    db.add(vendor)
    db.flush()
    worker = Worker(company_id=company.id, vendor_id=vendor.id, name="Dana Reyes", user_id=worker_user.id)
    head = Worker(company_id=company.id, vendor_id=vendor.id, name="Sam Okafor", user_id=head_user.id)
    db.add_all([worker, head])
    db.flush()
    team = Team(company_id=company.id, vendor_id=vendor.id, name="Crew A", team_head_id=head.id)
    db.add(team)
    db.flush()
    job = Job(company_id=company.id, title="Kitchen remodel")
    db.add(job)
    db.commit()

    return SimpleNamespace(
        company=company,
        other_company=other_company,
        admin=admin,
        vendor_user=vendor_user,
        worker_user=worker_user,
        head_user=head_user,
        outsider=outsider,
        vendor=vendor,
        worker=worker,
        head=head,
        team=team,
        job=job,
    )


@pytest.fixture
def make_job(db, world):
    def _make(title="Deck repair", deadline_in=None, status="pending", **assigned):
        job = Job(
            company_id=world.company.id,
            title=title,
            status=status,
            deadline=utcnow() + deadline_in if deadline_in is not None else None,
            **assigned,
        )
        db.add(job)
        db.commit()
        return job

    return _make


@pytest.fixture
def make_job_task(db, world):
    def _make(job, title="Rough-in wiring", deadline_in=None, status="pending", **assigned):
        task = JobTask(
            job_id=job.id,
            title=title,
            status=status,
            deadline=utcnow() + deadline_in if deadline_in is not None else None,
            **assigned,
        )
        db.add(task)
        db.commit()
        return task

    return _make


@pytest.fixture
def make_team_task(db, world):
    def _make(title="Install fixtures", job=None, deadline_in=None, status="pending", worker=None):
        task = TeamTask(
            team_id=world.team.id,
            job_id=job.id if job is not None else None,
            title=title,
            status=status,
            deadline=utcnow() + deadline_in if deadline_in is not None else None,
            assigned_to_worker_id=worker.id if worker is not None else None,
        )
        db.add(task)
        db.commit()
        return task

    return _make


@pytest.fixture
def app(session_factory):
    from jobsync.main import app as application

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # No context manager: startup hooks (table creation, scheduler) stay off
    return TestClient(app)


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}

    return _headers

"""
Pytest configuration for the SiteHub field engine.

Provides fixtures for:
- In-memory SQLite engine and session per test
- A seeded project with a manager, a site engineer and an approved labourer
- FastAPI TestClient bound to the test session
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from datetime import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sitehub.db import Base, get_db
from sitehub.auth.security import create_access_token
from sitehub.models.models import (
    User,
    LabourProfile,
    Organization,
    Project,
    ProjectMember,
    WageRate,
    LabourRequest,
    LabourRequestParticipant,
)

# Bengaluru site, 200 m radius
SITE_LAT = 12.9716
SITE_LNG = 77.5946


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(db):
    owner = User(name="Owner One", email="owner@example.com", role="OWNER")
    manager = User(name="Manager One", email="manager@example.com", role="MANAGER")
    engineer = User(name="Engineer One", email="engineer@example.com", role="SITE_ENGINEER")
    outsider = User(name="Engineer Two", email="engineer2@example.com", role="SITE_ENGINEER")
    labour = User(name="Labour One", email="labour@example.com", role="LABOUR")
    db.add_all([owner, manager, engineer, outsider, labour])
    db.flush()

    db.add(LabourProfile(user_id=labour.id, skill_type="SKILLED", categories=["MASON", "HELPER"]))
    org = Organization(name="Acme Builders", owner_id=owner.id)
    db.add(org)
    db.flush()

    project = Project(
        org_id=org.id,
        name="Tower A",
        timezone="Asia/Kolkata",
        geofence={"type": "CIRCLE", "center": {"lat": SITE_LAT, "lng": SITE_LNG}, "radius_meters": 200},
        check_in_time=time(9, 0),
        check_out_time=time(18, 0),
        created_by=manager.id,
    )
    db.add(project)
    db.flush()

    db.add_all([
        ProjectMember(project_id=project.id, user_id=manager.id, role="MANAGER", status="ACTIVE"),
        ProjectMember(project_id=project.id, user_id=engineer.id, role="SITE_ENGINEER", status="ACTIVE"),
        ProjectMember(project_id=project.id, user_id=outsider.id, role="SITE_ENGINEER", status="PENDING"),
        WageRate(project_id=project.id, skill_type="SKILLED", category="MASON", hourly_rate=Decimal("100.00")),
    ])

    labour_request = LabourRequest(project_id=project.id, category="MASON", required_count=2, approved_count=1)
    db.add(labour_request)
    db.flush()
    participant = LabourRequestParticipant(
        labour_request_id=labour_request.id, labour_id=labour.id, status="APPROVED"
    )
    db.add(participant)
    db.commit()

    return SimpleNamespace(
        owner=owner,
        manager=manager,
        engineer=engineer,
        outsider=outsider,
        labour=labour,
        org=org,
        project=project,
        labour_request=labour_request,
        participant=participant,
    )


@pytest.fixture()
def client(db):
    from sitehub.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}


@pytest.fixture()
def headers():
    return auth_headers

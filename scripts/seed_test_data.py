"""
Seed the local database with a sample organization, project, staff, labourers and wage rates.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (email for users, name for organizations and
projects, project/skill/category for wage rates). Bearer tokens for every
seeded user are printed at the end for local testing.
"""

from datetime import time
from decimal import Decimal

from sitehub.db import SessionLocal, Base, engine
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
from sitehub.auth.security import create_access_token


def ensure_user(session, name: str, email: str, role: str) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user:
        user.name = name
        user.role = role
        user.is_active = True
        session.add(user)
        session.flush()
        return user
    user = User(name=name, email=email, role=role, is_active=True)
    session.add(user)
    session.flush()
    return user


def ensure_labour(session, name: str, email: str, skill_type: str, categories: list[str]) -> User:
    user = ensure_user(session, name, email, "LABOUR")
    profile = session.get(LabourProfile, user.id)
    if profile:
        profile.skill_type = skill_type
        profile.categories = categories
    else:
        profile = LabourProfile(user_id=user.id, skill_type=skill_type, categories=categories)
    session.add(profile)
    session.flush()
    return user


def ensure_organization(session, name: str, owner: User) -> Organization:
    org = session.query(Organization).filter(Organization.name == name).first()
    if org:
        org.owner_id = owner.id
        session.add(org)
        session.flush()
        return org
    org = Organization(name=name, owner_id=owner.id)
    session.add(org)
    session.flush()
    return org


def ensure_project(session, org: Organization, name: str, creator: User, **kwargs) -> Project:
    project = (
        session.query(Project)
        .filter(Project.org_id == org.id, Project.name == name)
        .first()
    )
    if project:
        for k, v in kwargs.items():
            if hasattr(project, k):
                setattr(project, k, v)
        session.add(project)
        session.flush()
        return project
    project = Project(
        org_id=org.id,
        name=name,
        created_by=creator.id,
        **{k: v for k, v in kwargs.items() if hasattr(Project, k)}
    )
    session.add(project)
    session.flush()
    return project


def ensure_member(session, project: Project, user: User, role: str, status: str = "ACTIVE") -> ProjectMember:
    row = (
        session.query(ProjectMember)
        .filter(
            ProjectMember.project_id == project.id,
            ProjectMember.user_id == user.id,
            ProjectMember.role == role,
        )
        .first()
    )
    if row:
        row.status = status
        session.add(row)
        session.flush()
        return row
    row = ProjectMember(project_id=project.id, user_id=user.id, role=role, status=status)
    session.add(row)
    session.flush()
    return row


def ensure_wage_rate(session, project: Project, skill_type: str, category: str, hourly_rate: str) -> WageRate:
    rate = (
        session.query(WageRate)
        .filter(
            WageRate.project_id == project.id,
            WageRate.skill_type == skill_type,
            WageRate.category == category,
        )
        .first()
    )
    if rate:
        rate.hourly_rate = Decimal(hourly_rate)
        session.add(rate)
        session.flush()
        return rate
    rate = WageRate(project_id=project.id, skill_type=skill_type, category=category, hourly_rate=Decimal(hourly_rate))
    session.add(rate)
    session.flush()
    return rate


def ensure_labour_request(session, project: Project, category: str, required_count: int, approved: list[User]) -> LabourRequest:
    request = (
        session.query(LabourRequest)
        .filter(LabourRequest.project_id == project.id, LabourRequest.category == category)
        .first()
    )
    if request is None:
        request = LabourRequest(project_id=project.id, category=category, required_count=required_count)
        session.add(request)
        session.flush()
    request.required_count = required_count

    for labour in approved:
        participant = (
            session.query(LabourRequestParticipant)
            .filter(
                LabourRequestParticipant.labour_request_id == request.id,
                LabourRequestParticipant.labour_id == labour.id,
            )
            .first()
        )
        if participant is None:
            participant = LabourRequestParticipant(labour_request_id=request.id, labour_id=labour.id)
        participant.status = "APPROVED"
        session.add(participant)
    session.flush()

    # Keep the counter in line with the approved rows
    request.approved_count = (
        session.query(LabourRequestParticipant)
        .filter(
            LabourRequestParticipant.labour_request_id == request.id,
            LabourRequestParticipant.status == "APPROVED",
        )
        .count()
    )
    session.add(request)
    session.flush()
    return request


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        owner = ensure_user(session, "Olivia Owner", "owner@sitehub.example", "OWNER")
        manager = ensure_user(session, "Manny Manager", "manager@sitehub.example", "MANAGER")
        engineer = ensure_user(session, "Sam Engineer", "engineer@sitehub.example", "SITE_ENGINEER")
        mason = ensure_labour(session, "Ravi Mason", "ravi.mason@sitehub.example", "SKILLED", ["MASON"])
        helper = ensure_labour(session, "Hari Helper", "hari.helper@sitehub.example", "UNSKILLED", ["HELPER"])

        org = ensure_organization(session, "Acme Builders", owner)
        tower = ensure_project(
            session,
            org,
            "Tower A",
            manager,
            timezone="Asia/Kolkata",
            geofence={"type": "CIRCLE", "center": {"lat": 12.9716, "lng": 77.5946}, "radius_meters": 200},
            check_in_time=time(9, 0),
            check_out_time=time(18, 0),
        )

        ensure_member(session, tower, manager, "MANAGER")
        ensure_member(session, tower, engineer, "SITE_ENGINEER")

        ensure_wage_rate(session, tower, "SKILLED", "MASON", "120.00")
        ensure_wage_rate(session, tower, "UNSKILLED", "HELPER", "65.00")

        ensure_labour_request(session, tower, "MASON", 4, [mason])
        ensure_labour_request(session, tower, "HELPER", 6, [helper])

        session.commit()
        print(f"Seed completed: project {tower.name} ({tower.id}) ready.")
        for user in (owner, manager, engineer, mason, helper):
            print(f"  {user.role:<14} {user.email:<32} {create_access_token(str(user.id), user.role)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()

import uuid
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..models.models import Attendance, Project, Wage
from ..schemas.wages import (
    WageComputationResponse,
    WageGenerateRequest,
    WageGenerateResponse,
    WageResponse,
    WageReview,
)
from ..services.audit import log_audit
from ..services.permissions import MANAGER, SITE_ENGINEER, has_active_role, is_active_member, is_project_creator
from ..services.wages import (
    compute_wage,
    generate_wages,
    wage_snapshot,
    AttendanceNotFound,
    WageRateNotConfigured,
)


router = APIRouter(prefix="/wages", tags=["wages"])


@router.get("/attendance/{attendance_id}", response_model=WageComputationResponse)
def get_attendance_wage(
    attendance_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise HTTPException(status_code=404, detail="Attendance not found")
    project = db.get(Project, attendance.project_id)
    allowed = (
        attendance.labour_id == actor.id
        or is_project_creator(project, actor.id)
        or has_active_role(db, attendance.project_id, actor.id, (MANAGER, SITE_ENGINEER))
    )
    if not allowed:
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        computation = compute_wage(db, attendance_id)
    except AttendanceNotFound:
        raise HTTPException(status_code=404, detail="Attendance not found")
    except WageRateNotConfigured as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"attendance_id": attendance_id, **asdict(computation)}


@router.post("/generate", response_model=WageGenerateResponse, status_code=201)
def generate(
    body: WageGenerateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    project = db.get(Project, body.project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if not is_active_member(db, project.id, actor.id, MANAGER):
        raise HTTPException(status_code=403, detail="Access denied")
    try:
        outcome = generate_wages(db, project, actor.id, actor.role, attendance_date=body.attendance_date)
    except WageRateNotConfigured as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    return outcome


@router.patch("/{wage_id}/review", response_model=WageResponse)
def review_wage(
    wage_id: uuid.UUID,
    body: WageReview,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    wage = db.get(Wage, wage_id)
    if wage is None:
        raise HTTPException(status_code=404, detail="Wage not found")
    if not is_active_member(db, wage.project_id, actor.id, MANAGER):
        raise HTTPException(status_code=403, detail="Access denied")
    if wage.status != "PENDING":
        raise HTTPException(status_code=409, detail=f"Wage already {wage.status.lower()}")

    before = wage_snapshot(wage)
    wage.status = body.status.value
    wage.approved_by = actor.id
    wage.approved_at = datetime.now(timezone.utc)
    project = db.get(Project, wage.project_id)
    log_audit(
        db,
        entity_type="WAGE",
        entity_id=wage.id,
        category="WAGES",
        action="APPROVE" if body.status.value == "APPROVED" else "REJECT",
        before=before,
        after=wage_snapshot(wage),
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=wage.project_id,
        organization_id=project.org_id if project else None,
        commit=False,
    )
    db.commit()
    db.refresh(wage)
    return wage

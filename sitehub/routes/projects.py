import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..models.models import Project
from ..schemas.projects import GeofenceCheckRequest, GeofenceUpdate, WorkingHoursUpdate, WorkingHoursResponse
from ..services.audit import log_audit
from ..services.geofence import (
    validate_user_inside_project_geofence,
    validate_geometry,
    GeofenceViolation,
    InvalidCoordinates,
    InvalidGeometry,
)
from ..services.permissions import MANAGER, is_active_member, is_project_creator
from ..services.time_rules import parse_hhmm, daily_ceiling


router = APIRouter(prefix="/projects", tags=["projects"])


def _get_project(db: Session, project_id: uuid.UUID) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _fmt(t) -> str:
    return t.strftime("%H:%M") if t is not None else None


def _working_hours(project: Project) -> dict:
    return {
        "project_id": project.id,
        "timezone": project.timezone or settings.tz_default,
        "check_in_time": _fmt(project.check_in_time),
        "check_out_time": _fmt(project.check_out_time),
        "daily_ceiling": _fmt(daily_ceiling()),
    }


@router.post("/{project_id}/geofence/check")
def check_geofence(
    project_id: uuid.UUID,
    body: GeofenceCheckRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    project = _get_project(db, project_id)
    try:
        result = validate_user_inside_project_geofence(
            db, project, actor.id, actor.role, body.latitude, body.longitude
        )
    except InvalidCoordinates as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GeofenceViolation as e:
        raise HTTPException(status_code=403, detail=e.to_dict())
    return {
        "inside": True,
        "geofence_type": result.kind.value,
        "distance_meters": round(result.distance_meters) if result.distance_meters is not None else None,
        "diagnostic": result.diagnostic,
    }


@router.put("/{project_id}/geofence")
def update_geofence(
    project_id: uuid.UUID,
    body: GeofenceUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    project = _get_project(db, project_id)
    if not (is_project_creator(project, actor.id) or is_active_member(db, project.id, actor.id, MANAGER)):
        raise HTTPException(status_code=403, detail="Access denied")

    geometry = None
    if body.geofence:
        try:
            geometry = validate_geometry(body.geofence)
        except InvalidGeometry as e:
            raise HTTPException(status_code=400, detail=f"Invalid geofence: {e}")

    before = {"geofence": project.geofence}
    project.geofence = geometry
    log_audit(
        db,
        entity_type="PROJECT",
        entity_id=project.id,
        category="PROJECT_SETTINGS",
        action="UPDATE",
        before=before,
        after={"geofence": geometry},
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=project.id,
        organization_id=project.org_id,
        commit=False,
    )
    db.commit()
    return {"project_id": str(project.id), "geofence": geometry}


@router.get("/{project_id}/working-hours", response_model=WorkingHoursResponse)
def get_working_hours(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    project = _get_project(db, project_id)
    if not (is_project_creator(project, actor.id) or is_active_member(db, project.id, actor.id, MANAGER)):
        raise HTTPException(status_code=403, detail="Access denied")
    return _working_hours(project)


@router.put("/{project_id}/working-hours", response_model=WorkingHoursResponse)
def update_working_hours(
    project_id: uuid.UUID,
    body: WorkingHoursUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    project = _get_project(db, project_id)
    if not is_project_creator(project, actor.id):
        raise HTTPException(status_code=403, detail="Only the project creator can update working hours")

    try:
        check_in = parse_hhmm(body.check_in_time)
        check_out = parse_hhmm(body.check_out_time)
    except ValueError:
        raise HTTPException(status_code=400, detail="Times must be HH:MM")

    ceiling = daily_ceiling()
    if check_out > ceiling:
        raise HTTPException(status_code=400, detail=f"Check-out time cannot exceed {_fmt(ceiling)}")
    if check_in >= check_out:
        raise HTTPException(status_code=400, detail="Check-in time must be before check-out time")

    before = {
        "check_in_time": _fmt(project.check_in_time),
        "check_out_time": _fmt(project.check_out_time),
    }
    project.check_in_time = check_in
    project.check_out_time = check_out
    log_audit(
        db,
        entity_type="PROJECT",
        entity_id=project.id,
        category="PROJECT_SETTINGS",
        action="UPDATE",
        before=before,
        after={"check_in_time": _fmt(check_in), "check_out_time": _fmt(check_out)},
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=project.id,
        organization_id=project.org_id,
        commit=False,
    )
    db.commit()
    return _working_hours(project)

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..models.models import Attendance, Project
from ..schemas.projects import AttendanceReject, AttendanceResponse
from ..services.actions import attendance_snapshot
from ..services.audit import log_audit
from ..services.permissions import MANAGER, is_active_member


router = APIRouter(prefix="/attendance", tags=["attendance"])


def _pending_manual(db: Session, attendance_id: uuid.UUID, actor: Actor) -> Attendance:
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise HTTPException(status_code=404, detail="Attendance not found")
    if not is_active_member(db, attendance.project_id, actor.id, MANAGER):
        raise HTTPException(status_code=403, detail="Access denied")
    if not attendance.is_manual:
        raise HTTPException(status_code=400, detail="Only manual attendance needs approval")
    if attendance.status != "PENDING":
        raise HTTPException(status_code=409, detail=f"Attendance already {attendance.status.lower()}")
    return attendance


def _audit_review(db: Session, attendance: Attendance, action: str, before: dict, actor: Actor):
    project = db.get(Project, attendance.project_id)
    log_audit(
        db,
        entity_type="ATTENDANCE",
        entity_id=attendance.id,
        category="ATTENDANCE",
        action=action,
        before=before,
        after=attendance_snapshot(attendance),
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=attendance.project_id,
        organization_id=project.org_id if project else None,
        commit=False,
    )


@router.post("/{attendance_id}/approve", response_model=AttendanceResponse)
def approve_manual_attendance(
    attendance_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    attendance = _pending_manual(db, attendance_id, actor)
    before = attendance_snapshot(attendance)
    attendance.status = "APPROVED"
    attendance.approved_by = actor.id
    attendance.approved_at = datetime.now(timezone.utc)
    _audit_review(db, attendance, "APPROVE", before, actor)
    db.commit()
    db.refresh(attendance)
    return attendance


@router.post("/{attendance_id}/reject", response_model=AttendanceResponse)
def reject_manual_attendance(
    attendance_id: uuid.UUID,
    body: Optional[AttendanceReject] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    attendance = _pending_manual(db, attendance_id, actor)
    before = attendance_snapshot(attendance)
    attendance.status = "REJECTED"
    attendance.rejected_by = actor.id
    attendance.rejected_at = datetime.now(timezone.utc)
    attendance.rejection_reason = body.reason if body else None
    _audit_review(db, attendance, "REJECT", before, actor)
    db.commit()
    db.refresh(attendance)
    return attendance

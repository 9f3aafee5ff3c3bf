import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..models.models import LabourRequest, LabourRequestParticipant, Project
from ..schemas.wages import CapacityResponse
from ..services.audit import log_audit
from ..services.permissions import MANAGER, SITE_ENGINEER, has_active_role
from ..services.wages import (
    check_category_capacity,
    reserve_category_slot,
    release_category_slot,
    CapacityConflict,
)


router = APIRouter(prefix="/labour-requests", tags=["labour-requests"])

REVIEWER_ROLES = (MANAGER, SITE_ENGINEER)


def _participant_snapshot(participant: LabourRequestParticipant, request: LabourRequest) -> dict:
    return {
        "id": str(participant.id),
        "labour_request_id": str(request.id),
        "labour_id": str(participant.labour_id),
        "category": request.category,
        "status": participant.status,
        "approved_count": request.approved_count,
        "required_count": request.required_count,
    }


def _load(db: Session, request_id: uuid.UUID, participant_id: uuid.UUID, actor: Actor):
    request = db.get(LabourRequest, request_id)
    if request is None:
        raise HTTPException(status_code=404, detail="Labour request not found")
    if not has_active_role(db, request.project_id, actor.id, REVIEWER_ROLES):
        raise HTTPException(status_code=403, detail="Access denied")
    participant = db.get(LabourRequestParticipant, participant_id)
    if participant is None or participant.labour_request_id != request.id:
        raise HTTPException(status_code=404, detail="Participant not found")
    return request, participant


def _audit(db: Session, request: LabourRequest, participant, action: str, before: dict, actor: Actor):
    project = db.get(Project, request.project_id)
    log_audit(
        db,
        entity_type="LABOUR_REQUEST_PARTICIPANT",
        entity_id=participant.id,
        category="LABOUR_REQUEST",
        action=action,
        before=before,
        after=_participant_snapshot(participant, request),
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=request.project_id,
        organization_id=project.org_id if project else None,
        commit=False,
    )


@router.get("/capacity", response_model=CapacityResponse)
def get_capacity(
    labour_id: uuid.UUID,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    if actor.id != labour_id and not has_active_role(db, project_id, actor.id, REVIEWER_ROLES):
        raise HTTPException(status_code=403, detail="Access denied")
    return asdict(check_category_capacity(db, labour_id, project_id))


@router.post("/{request_id}/participants/{participant_id}/approve")
def approve_participant(
    request_id: uuid.UUID,
    participant_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    request, participant = _load(db, request_id, participant_id, actor)
    if participant.status != "PENDING":
        raise HTTPException(status_code=409, detail=f"Participant already {participant.status.lower()}")

    before = _participant_snapshot(participant, request)
    try:
        reserve_category_slot(db, request.id)
    except CapacityConflict as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    participant.status = "APPROVED"
    db.flush()
    db.refresh(request)
    _audit(db, request, participant, "APPROVE", before, actor)
    db.commit()
    return _participant_snapshot(participant, request)


@router.post("/{request_id}/participants/{participant_id}/reject")
def reject_participant(
    request_id: uuid.UUID,
    participant_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    request, participant = _load(db, request_id, participant_id, actor)
    if participant.status == "REJECTED":
        raise HTTPException(status_code=409, detail="Participant already rejected")

    before = _participant_snapshot(participant, request)
    if participant.status == "APPROVED":
        release_category_slot(db, request.id)
    participant.status = "REJECTED"
    db.flush()
    db.refresh(request)
    _audit(db, request, participant, "REJECT", before, actor)
    db.commit()
    return _participant_snapshot(participant, request)

import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..models.models import Project, WageRate
from ..schemas.wages import WageRateCreate, WageRateUpdate, WageRateResponse
from ..services.audit import log_audit
from ..services.permissions import MANAGER, is_active_member


router = APIRouter(prefix="/wage-rates", tags=["wage-rates"])

DUPLICATE_RATE = "Wage rate already exists for this skill type and category"


def _snapshot(rate: WageRate) -> dict:
    return {
        "id": str(rate.id),
        "project_id": str(rate.project_id),
        "skill_type": rate.skill_type,
        "category": rate.category,
        "hourly_rate": float(rate.hourly_rate),
    }


def _org_id(db: Session, project_id):
    project = db.get(Project, project_id)
    return project.org_id if project else None


def _require_manager(db: Session, project_id, actor: Actor):
    if not is_active_member(db, project_id, actor.id, MANAGER):
        raise HTTPException(status_code=403, detail="Access denied")


def _find_rate(db: Session, project_id, skill_type: str, category: str):
    return (
        db.query(WageRate.id)
        .filter(
            WageRate.project_id == project_id,
            WageRate.skill_type == skill_type,
            WageRate.category == category,
        )
        .first()
    )


def _get_rate(db: Session, rate_id: uuid.UUID, actor: Actor) -> WageRate:
    rate = db.get(WageRate, rate_id)
    if rate is None:
        raise HTTPException(status_code=404, detail="Wage rate not found")
    _require_manager(db, rate.project_id, actor)
    return rate


@router.get("", response_model=List[WageRateResponse])
def list_wage_rates(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _require_manager(db, project_id, actor)
    return (
        db.query(WageRate)
        .filter(WageRate.project_id == project_id)
        .order_by(WageRate.skill_type, WageRate.category)
        .all()
    )


@router.post("", response_model=WageRateResponse, status_code=201)
def create_wage_rate(
    body: WageRateCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    if db.get(Project, body.project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")
    _require_manager(db, body.project_id, actor)

    if _find_rate(db, body.project_id, body.skill_type.value, body.category):
        raise HTTPException(status_code=400, detail=DUPLICATE_RATE)

    rate = WageRate(
        project_id=body.project_id,
        skill_type=body.skill_type.value,
        category=body.category,
        hourly_rate=body.hourly_rate,
        created_by=actor.id,
    )
    db.add(rate)
    try:
        # A concurrent create can pass the check above; the unique constraint decides
        db.flush()
        log_audit(
            db,
            entity_type="WAGE_RATE",
            entity_id=rate.id,
            category="WAGES",
            action="CREATE",
            after=_snapshot(rate),
            actor_id=actor.id,
            actor_role=actor.role,
            project_id=rate.project_id,
            organization_id=_org_id(db, rate.project_id),
            commit=False,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail=DUPLICATE_RATE)
    db.refresh(rate)
    return rate


@router.patch("/{rate_id}", response_model=WageRateResponse)
def update_wage_rate(
    rate_id: uuid.UUID,
    body: WageRateUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    rate = _get_rate(db, rate_id, actor)
    before = _snapshot(rate)
    rate.hourly_rate = body.hourly_rate
    db.flush()
    log_audit(
        db,
        entity_type="WAGE_RATE",
        entity_id=rate.id,
        category="WAGES",
        action="UPDATE",
        before=before,
        after=_snapshot(rate),
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=rate.project_id,
        organization_id=_org_id(db, rate.project_id),
        commit=False,
    )
    db.commit()
    db.refresh(rate)
    return rate


@router.delete("/{rate_id}")
def delete_wage_rate(
    rate_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    rate = _get_rate(db, rate_id, actor)
    before = _snapshot(rate)
    project_id = rate.project_id
    db.delete(rate)
    log_audit(
        db,
        entity_type="WAGE_RATE",
        entity_id=rate_id,
        category="WAGES",
        action="DELETE",
        before=before,
        actor_id=actor.id,
        actor_role=actor.role,
        project_id=project_id,
        organization_id=_org_id(db, project_id),
        commit=False,
    )
    db.commit()
    return {"message": "Wage rate deleted successfully"}

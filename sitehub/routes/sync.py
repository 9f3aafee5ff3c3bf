from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, get_current_actor
from ..schemas.sync import SubmitAction, SubmitBatch, ActionResultResponse, BatchResultResponse
from ..services.actions import apply_action, apply_batch, BatchTooLarge


router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/actions", response_model=ActionResultResponse)
def submit_action(
    body: SubmitAction,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    result = apply_action(db, body, actor.id, actor.role)
    return asdict(result)


@router.post("/batch", response_model=BatchResultResponse)
def submit_batch(
    body: SubmitBatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        outcome = apply_batch(db, body.actions, actor.id, actor.role)
    except BatchTooLarge as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "applied": [asdict(r) for r in outcome["applied"]],
        "rejected": [asdict(r) for r in outcome["rejected"]],
        "skipped": [asdict(r) for r in outcome["skipped"]],
        "summary": outcome["summary"],
    }

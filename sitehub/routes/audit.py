import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, require_roles
from ..schemas.audit import AuditCategory
from ..services.audit import get_audit_logs
from ..services.permissions import LABOUR, ROLES, visible_project_ids


router = APIRouter(prefix="/audit", tags=["audit"])

STAFF_ROLES = tuple(r for r in ROLES if r != LABOUR)


@router.get("")
def list_audit_logs(
    project_id: Optional[uuid.UUID] = None,
    category: Optional[AuditCategory] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*STAFF_ROLES)),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    scope = visible_project_ids(db, actor.id)
    if project_id is not None and project_id not in scope:
        raise HTTPException(status_code=403, detail="Access denied")

    return get_audit_logs(
        db,
        project_ids=scope,
        project_id=project_id,
        category=category.value if category else None,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )

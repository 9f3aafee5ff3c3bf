"""
Audit logging service.
Append-only audit log with field-level diffs and integrity hashing.
"""
import hashlib
import json
import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings

logger = structlog.get_logger(__name__)


def _stringify(value: Any) -> str:
    # Key order is preserved, so reordered nested structures count as changed
    return json.dumps(value, default=str)


def compute_changed_fields(before: Dict, after: Dict) -> List[str]:
    """
    Keys whose JSON-serialized values differ between two states.

    Keys of `after` come first in their own order, followed by keys only present in `before`.
    """
    changed = []
    for key in after:
        if _stringify(before.get(key)) != _stringify(after.get(key)):
            changed.append(key)
    for key in before:
        if key not in after:
            changed.append(key)
    return changed


def build_change_summary(action: str, before: Optional[Dict], after: Optional[Dict]) -> Dict:
    summary = {
        "action": action,
        "before": before,
        "after": after,
    }
    if action == "UPDATE" and before is not None and after is not None:
        summary["changed_fields"] = compute_changed_fields(before, after)
    return summary


def _integrity_hash(data: Dict, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    canonical = {k: v for k, v in data.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: Any,
    category: str,
    action: str,
    before: Optional[Dict] = None,
    after: Optional[Dict] = None,
    actor_id: Optional[Any] = None,
    actor_role: Optional[str] = None,
    project_id: Optional[Any] = None,
    organization_id: Optional[Any] = None,
    commit: bool = True,
) -> Optional[AuditLog]:
    """
    Write an append-only audit entry.

    Args:
        db: Database session
        entity_type: Type of entity (MATERIAL_REQUEST|ATTENDANCE|PROJECT|WAGE_RATE|WAGE|GEOFENCE_VALIDATION)
        entity_id: Entity ID
        category: Dashboard category (MATERIAL_REQUEST|ATTENDANCE|WAGES|PROJECT_SETTINGS|LABOUR_REQUEST|SECURITY)
        action: CREATE|UPDATE|DELETE|APPROVE|REJECT|ACCESS_DENIED
        before: State before the operation (None for CREATE)
        after: State after the operation (None for DELETE)
        actor_id: User who performed the action
        actor_role: Role of the actor
        project_id: Project scope (optional)
        organization_id: Organization scope (optional)
        commit: True for out-of-band entries, committed on their own and never raised.
            False when the entry belongs to the caller's transaction: it is only
            flushed and any failure propagates so the caller rolls back with it.

    Returns:
        Created AuditLog, or None if an out-of-band write failed
    """
    created_at = datetime.now(timezone.utc)
    change_summary = build_change_summary(action, before, after)

    integrity_hash = _integrity_hash(
        {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "category": category,
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "actor_role": actor_role,
            "created_at": created_at.isoformat(),
            "changes": change_summary,
        },
        settings.jwt_secret,
    )

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        category=category,
        action=action,
        acted_by_id=actor_id,
        acted_by_role=actor_role,
        project_id=project_id,
        organization_id=organization_id,
        change_summary=json.loads(json.dumps(change_summary, default=str)),
        created_at=created_at,
        integrity_hash=integrity_hash,
    )

    if not commit:
        db.add(entry)
        db.flush()
        return entry

    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "audit_log_failed",
            error=str(e),
            entity_type=entity_type,
            entity_id=str(entity_id),
            category=category,
            action=action,
            actor_id=str(actor_id) if actor_id else None,
            actor_role=actor_role,
        )
        return None
    return entry


def serialize_audit_log(log: AuditLog) -> Dict:
    summary = log.change_summary or {}
    return {
        "id": str(log.id),
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "category": log.category,
        "action": log.action,
        "acted_by_id": str(log.acted_by_id) if log.acted_by_id else None,
        "acted_by_role": log.acted_by_role,
        "project_id": str(log.project_id) if log.project_id else None,
        "organization_id": str(log.organization_id) if log.organization_id else None,
        "changed_fields": summary.get("changed_fields"),
        "before": summary.get("before"),
        "after": summary.get("after"),
        "change_summary": summary,
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "integrity_hash": log.integrity_hash,
    }


def get_audit_logs(
    db: Session,
    project_ids: Optional[List[Any]] = None,
    project_id: Optional[Any] = None,
    category: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: Optional[int] = None,
) -> Dict:
    """
    Paginated audit entries, newest first.

    Args:
        db: Database session
        project_ids: Restrict to these projects (caller's visible scope)
        project_id: Filter by a single project
        category: Filter by category
        start_date: Inclusive start day (default: 30 days ago)
        end_date: Inclusive end day (default: today)
        page: 1-based page number
        limit: Page size (default 50, capped at 200)

    Returns:
        Dict with audits, pagination and applied filters
    """
    if limit is None:
        limit = settings.audit_page_size_default
    limit = max(1, min(int(limit), settings.audit_page_size_max))
    page = max(1, int(page))

    today = datetime.now(timezone.utc).date()
    if end_date is None:
        end_date = today
    if start_date is None:
        start_date = end_date - timedelta(days=settings.audit_default_range_days)

    range_start = datetime.combine(start_date, datetime.min.time())
    range_end = datetime.combine(end_date + timedelta(days=1), datetime.min.time())

    query = db.query(AuditLog).filter(
        AuditLog.created_at >= range_start,
        AuditLog.created_at < range_end,
    )
    if project_ids is not None:
        query = query.filter(AuditLog.project_id.in_(project_ids))
    if project_id:
        query = query.filter(AuditLog.project_id == project_id)
    if category:
        query = query.filter(AuditLog.category == category)

    total = query.with_entities(func.count(AuditLog.id)).scalar() or 0
    rows = (
        query.order_by(AuditLog.created_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
        .all()
    )

    return {
        "audits": [serialize_audit_log(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
        "filters": {
            "project_id": str(project_id) if project_id else None,
            "category": category,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        },
    }

"""
Field action applier.

Every client-submitted action runs through the same pipeline:
ledger check, authorization, geofence gate (location-sensitive types only),
mutation by the registered handler, audit entry, ledger record. The mutation,
its audit entry and the APPLIED ledger row commit together.

TRACK pings need a location but are never rejected for being outside the
geofence; the handler records the breach on the attendance instead.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    Project,
    User,
    MaterialRequest,
    Attendance,
    AttendanceSession,
)
from ..schemas.sync import ActionType, SyncStatus, SubmitAction
from .audit import log_audit
from .geofence import (
    validate,
    validate_user_inside_project_geofence,
    check_coordinates,
    GeofenceViolation,
    InvalidCoordinates,
)
from .idempotency import (
    check_idempotency,
    record_outcome,
    commit_outcome,
    record_rejection,
)
from .permissions import SITE_ENGINEER, LABOUR, is_active_member, is_approved_labour
from .time_rules import ensure_utc, local_date, effective_checkout, hours_between

logger = structlog.get_logger(__name__)


class RejectionKind(str, Enum):
    VALIDATION = "VALIDATION"
    AUTHORIZATION = "AUTHORIZATION"
    GEOFENCE = "GEOFENCE"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"


class ActionRejected(Exception):
    """Domain rejection of a field action. Recorded in the ledger as REJECTED."""

    def __init__(self, kind: RejectionKind, message: str):
        self.kind = kind
        super().__init__(message)


class BatchTooLarge(ValueError):
    pass


@dataclass
class ActionResult:
    success: bool
    sync_status: SyncStatus
    entity_id: Optional[str] = None
    error: Optional[str] = None
    client_action_id: Optional[str] = None


@dataclass
class ActionContext:
    db: Session
    action_id: str
    project: Project
    actor_id: uuid.UUID
    actor_role: str
    payload: Dict[str, Any]

    @property
    def timezone(self) -> str:
        return self.project.timezone or settings.tz_default


@dataclass
class HandlerOutcome:
    entity_id: Any
    audit_action: Optional[str]  # None when nothing worth auditing changed
    before: Optional[Dict] = None
    after: Optional[Dict] = None


@dataclass(frozen=True)
class ActionHandler:
    apply: Callable[[ActionContext], HandlerOutcome]
    entity_type: str
    audit_category: str
    required_role: str
    location_sensitive: bool = True
    reject_outside: bool = True


# =====================
# Payload helpers
# =====================

def _require(payload: Dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ActionRejected(RejectionKind.VALIDATION, f"Missing required fields: {', '.join(missing)}")


def _text(payload: Dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be a non-empty string")
    return value.strip()


def _decimal(payload: Dict, key: str) -> Decimal:
    value = payload.get(key)
    if isinstance(value, bool):
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be a number")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be a number")
    if not number.is_finite():
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be a number")
    return number


def _uuid(payload: Dict, key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload.get(key)))
    except ValueError:
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be a UUID")


def _date(payload: Dict, key: str) -> date:
    try:
        return date.fromisoformat(str(payload.get(key)))
    except ValueError:
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be an ISO date (YYYY-MM-DD)")


def _timestamp(payload: Dict, key: str) -> datetime:
    raw = str(payload.get(key))
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError:
        raise ActionRejected(RejectionKind.VALIDATION, f"{key} must be an ISO 8601 timestamp")


def _hours(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =====================
# Snapshots for audit
# =====================

def material_request_snapshot(req: MaterialRequest) -> Dict:
    return {
        "id": str(req.id),
        "project_id": str(req.project_id),
        "site_engineer_id": str(req.site_engineer_id),
        "title": req.title,
        "category": req.category,
        "quantity": float(req.quantity) if req.quantity is not None else None,
        "description": req.description,
        "status": req.status,
    }


def attendance_snapshot(att: Attendance) -> Dict:
    return {
        "id": str(att.id),
        "project_id": str(att.project_id),
        "labour_id": str(att.labour_id),
        "attendance_date": _iso(att.attendance_date),
        "check_in_time": _iso(ensure_utc(att.check_in_time)),
        "check_out_time": _iso(ensure_utc(att.check_out_time)),
        "work_hours": float(att.work_hours) if att.work_hours is not None else None,
        "is_manual": bool(att.is_manual),
        "status": att.status,
        "source": att.source,
        "skill_type": att.skill_type,
        "category": att.category,
    }


def labour_snapshot_fields(db: Session, labour_id: Any) -> Dict:
    user = db.get(User, labour_id)
    profile = user.labour_profile if user is not None else None
    if profile is None:
        return {"skill_type": None, "category": None}
    return {"skill_type": profile.skill_type, "category": profile.primary_category}


# =====================
# Handlers
# =====================

def _owned_pending_request(ctx: ActionContext) -> MaterialRequest:
    _require(ctx.payload, "request_id")
    request_id = _uuid(ctx.payload, "request_id")
    req = ctx.db.get(MaterialRequest, request_id)
    if req is None or req.project_id != ctx.project.id:
        raise ActionRejected(RejectionKind.NOT_FOUND, "Material request not found")
    if req.site_engineer_id != ctx.actor_id:
        raise ActionRejected(RejectionKind.AUTHORIZATION, "Material request not owned by you")
    if req.status != "PENDING":
        raise ActionRejected(RejectionKind.CONFLICT, "Only PENDING material requests can be changed")
    return req


def create_material_request(ctx: ActionContext) -> HandlerOutcome:
    _require(ctx.payload, "title", "category", "quantity")
    quantity = _decimal(ctx.payload, "quantity")
    if quantity <= 0:
        raise ActionRejected(RejectionKind.VALIDATION, "quantity must be greater than 0")
    description = ctx.payload.get("description")
    req = MaterialRequest(
        project_id=ctx.project.id,
        site_engineer_id=ctx.actor_id,
        title=_text(ctx.payload, "title"),
        category=_text(ctx.payload, "category"),
        quantity=quantity,
        description=str(description) if description is not None else None,
        status="PENDING",
    )
    ctx.db.add(req)
    ctx.db.flush()
    return HandlerOutcome(entity_id=req.id, audit_action="CREATE", after=material_request_snapshot(req))


def update_material_request(ctx: ActionContext) -> HandlerOutcome:
    req = _owned_pending_request(ctx)
    before = material_request_snapshot(req)

    updates = {}
    if "title" in ctx.payload:
        updates["title"] = _text(ctx.payload, "title")
    if "category" in ctx.payload:
        updates["category"] = _text(ctx.payload, "category")
    if "quantity" in ctx.payload:
        quantity = _decimal(ctx.payload, "quantity")
        if quantity <= 0:
            raise ActionRejected(RejectionKind.VALIDATION, "quantity must be greater than 0")
        updates["quantity"] = quantity
    if "description" in ctx.payload:
        description = ctx.payload.get("description")
        updates["description"] = str(description) if description is not None else None
    if not updates:
        raise ActionRejected(RejectionKind.VALIDATION, "No fields to update")

    for field, value in updates.items():
        setattr(req, field, value)
    req.updated_at = datetime.now(timezone.utc)
    ctx.db.flush()
    return HandlerOutcome(
        entity_id=req.id,
        audit_action="UPDATE",
        before=before,
        after=material_request_snapshot(req),
    )


def delete_material_request(ctx: ActionContext) -> HandlerOutcome:
    req = _owned_pending_request(ctx)
    before = material_request_snapshot(req)
    entity_id = req.id
    ctx.db.delete(req)
    ctx.db.flush()
    return HandlerOutcome(entity_id=entity_id, audit_action="DELETE", before=before)


def manual_attendance(ctx: ActionContext) -> HandlerOutcome:
    _require(ctx.payload, "labour_id", "attendance_date", "work_hours")
    labour_id = _uuid(ctx.payload, "labour_id")
    attendance_date = _date(ctx.payload, "attendance_date")
    work_hours = _decimal(ctx.payload, "work_hours")
    if work_hours <= 0 or work_hours > 24:
        raise ActionRejected(RejectionKind.VALIDATION, "work_hours must be greater than 0 and at most 24")

    labour = ctx.db.get(User, labour_id)
    if labour is None or labour.role != LABOUR:
        raise ActionRejected(RejectionKind.NOT_FOUND, "Labour not found")

    existing = (
        ctx.db.query(Attendance.id)
        .filter(
            Attendance.labour_id == labour_id,
            Attendance.project_id == ctx.project.id,
            Attendance.attendance_date == attendance_date,
        )
        .first()
    )
    if existing:
        raise ActionRejected(RejectionKind.CONFLICT, "Attendance already exists for this date")

    att = Attendance(
        project_id=ctx.project.id,
        labour_id=labour_id,
        site_engineer_id=ctx.actor_id,
        attendance_date=attendance_date,
        work_hours=_hours(work_hours),
        is_manual=True,
        status="PENDING",
        source="OFFLINE_SYNC",
        **labour_snapshot_fields(ctx.db, labour_id),
    )
    ctx.db.add(att)
    ctx.db.flush()
    return HandlerOutcome(entity_id=att.id, audit_action="CREATE", after=attendance_snapshot(att))


def check_in(ctx: ActionContext) -> HandlerOutcome:
    _require(ctx.payload, "timestamp")
    ts = _timestamp(ctx.payload, "timestamp")
    attendance_date = local_date(ts, ctx.timezone)

    existing = (
        ctx.db.query(Attendance.id)
        .filter(
            Attendance.labour_id == ctx.actor_id,
            Attendance.project_id == ctx.project.id,
            Attendance.attendance_date == attendance_date,
        )
        .first()
    )
    if existing:
        raise ActionRejected(RejectionKind.CONFLICT, "Already checked in for today")

    att = Attendance(
        project_id=ctx.project.id,
        labour_id=ctx.actor_id,
        attendance_date=attendance_date,
        check_in_time=ts,
        is_manual=False,
        status="APPROVED",
        source="OFFLINE_SYNC",
        check_in_lat=ctx.payload.get("latitude"),
        check_in_lng=ctx.payload.get("longitude"),
        **labour_snapshot_fields(ctx.db, ctx.actor_id),
    )
    att.sessions.append(AttendanceSession(check_in_time=ts))
    ctx.db.add(att)
    ctx.db.flush()
    return HandlerOutcome(entity_id=att.id, audit_action="CREATE", after=attendance_snapshot(att))


def check_out(ctx: ActionContext) -> HandlerOutcome:
    _require(ctx.payload, "timestamp")
    ts = _timestamp(ctx.payload, "timestamp")
    attendance_date = local_date(ts, ctx.timezone)

    att = (
        ctx.db.query(Attendance)
        .filter(
            Attendance.labour_id == ctx.actor_id,
            Attendance.project_id == ctx.project.id,
            Attendance.attendance_date == attendance_date,
            Attendance.is_manual.is_(False),
        )
        .first()
    )
    if att is None or att.check_in_time is None:
        raise ActionRejected(RejectionKind.NOT_FOUND, "No check-in found for today")
    if att.check_out_time is not None:
        raise ActionRejected(RejectionKind.CONFLICT, "Already checked out for today")
    if ts < ensure_utc(att.check_in_time):
        raise ActionRejected(RejectionKind.VALIDATION, "Check-out time cannot be before check-in time")

    before = attendance_snapshot(att)
    cutoff = effective_checkout(att.attendance_date, ctx.timezone, ts, ctx.project.check_out_time)

    total_hours = 0.0
    for session in att.sessions:
        if session.check_out_time is None:
            session.check_out_time = ts
        end = min(ensure_utc(session.check_out_time), cutoff)
        hours = hours_between(session.check_in_time, end)
        session.worked_minutes = _hours(hours * 60)
        total_hours += hours
    if not att.sessions:
        total_hours = hours_between(att.check_in_time, cutoff)

    att.check_out_time = ts
    att.work_hours = _hours(total_hours)
    ctx.db.flush()
    return HandlerOutcome(
        entity_id=att.id,
        audit_action="UPDATE",
        before=before,
        after=attendance_snapshot(att),
    )


def tracking_snapshot(att: Attendance) -> Dict:
    snapshot = attendance_snapshot(att)
    snapshot["is_currently_breached"] = bool(att.is_currently_breached)
    snapshot["entry_exit_count"] = att.entry_exit_count or 0
    return snapshot


def track(ctx: ActionContext) -> HandlerOutcome:
    """
    Location ping while on site.

    Leaving the geofence closes the open session and counts an exit; coming
    back opens a new session unless the exit limit has been passed.
    """
    _require(ctx.payload, "latitude", "longitude", "timestamp")
    ts = _timestamp(ctx.payload, "timestamp")
    lat, lng = check_coordinates(ctx.payload.get("latitude"), ctx.payload.get("longitude"))
    attendance_date = local_date(ts, ctx.timezone)

    att = (
        ctx.db.query(Attendance)
        .filter(
            Attendance.labour_id == ctx.actor_id,
            Attendance.project_id == ctx.project.id,
            Attendance.attendance_date == attendance_date,
            Attendance.is_manual.is_(False),
        )
        .first()
    )
    if att is None or att.check_in_time is None:
        raise ActionRejected(RejectionKind.NOT_FOUND, "No active attendance session found for the given date")
    if att.check_out_time is not None:
        raise ActionRejected(RejectionKind.CONFLICT, "Already checked out for today")
    if ts < ensure_utc(att.check_in_time):
        raise ActionRejected(RejectionKind.VALIDATION, "Location timestamp cannot be before check-in time")
    if att.last_event_at is not None and ts < ensure_utc(att.last_event_at):
        raise ActionRejected(RejectionKind.CONFLICT, "Location update is older than the last recorded one")

    before = tracking_snapshot(att)
    was_breached = bool(att.is_currently_breached)
    breached = not validate(ctx.project.geofence, lat, lng).inside
    open_session = next((s for s in att.sessions if s.check_out_time is None), None)
    log = logger.bind(attendance_id=str(att.id), labour_id=str(ctx.actor_id))

    if breached and not was_breached:
        att.entry_exit_count = (att.entry_exit_count or 0) + 1
        if open_session is not None:
            cutoff = effective_checkout(att.attendance_date, ctx.timezone, None, ctx.project.check_out_time)
            open_session.check_out_time = ts
            open_session.worked_minutes = _hours(hours_between(open_session.check_in_time, min(ts, cutoff)) * 60)
        closed_minutes = sum(float(s.worked_minutes or 0) for s in att.sessions if s.check_out_time is not None)
        att.work_hours = _hours(closed_minutes / 60)
        log.info("track_exit", exits=att.entry_exit_count)
    elif was_breached and not breached:
        if (att.entry_exit_count or 0) <= settings.track_max_allowed_exits and open_session is None:
            att.sessions.append(AttendanceSession(check_in_time=ts))
            log.info("track_reentry", exits=att.entry_exit_count)
        else:
            log.warning("track_reentry_not_resumed", exits=att.entry_exit_count)

    att.is_currently_breached = breached
    att.last_known_lat = lat
    att.last_known_lng = lng
    att.last_event_at = ts
    ctx.db.flush()
    return HandlerOutcome(
        entity_id=att.id,
        audit_action="UPDATE" if breached != was_breached else None,
        before=before,
        after=tracking_snapshot(att),
    )


HANDLERS: Dict[ActionType, ActionHandler] = {
    ActionType.CREATE_MATERIAL_REQUEST: ActionHandler(
        apply=create_material_request,
        entity_type="MATERIAL_REQUEST",
        audit_category="MATERIAL_REQUEST",
        required_role=SITE_ENGINEER,
    ),
    ActionType.UPDATE_MATERIAL_REQUEST: ActionHandler(
        apply=update_material_request,
        entity_type="MATERIAL_REQUEST",
        audit_category="MATERIAL_REQUEST",
        required_role=SITE_ENGINEER,
    ),
    ActionType.DELETE_MATERIAL_REQUEST: ActionHandler(
        apply=delete_material_request,
        entity_type="MATERIAL_REQUEST",
        audit_category="MATERIAL_REQUEST",
        required_role=SITE_ENGINEER,
        location_sensitive=False,
    ),
    ActionType.MANUAL_ATTENDANCE: ActionHandler(
        apply=manual_attendance,
        entity_type="ATTENDANCE",
        audit_category="ATTENDANCE",
        required_role=SITE_ENGINEER,
    ),
    ActionType.CHECK_IN: ActionHandler(
        apply=check_in,
        entity_type="ATTENDANCE",
        audit_category="ATTENDANCE",
        required_role=LABOUR,
    ),
    ActionType.CHECK_OUT: ActionHandler(
        apply=check_out,
        entity_type="ATTENDANCE",
        audit_category="ATTENDANCE",
        required_role=LABOUR,
    ),
    ActionType.TRACK: ActionHandler(
        apply=track,
        entity_type="ATTENDANCE",
        audit_category="ATTENDANCE",
        required_role=LABOUR,
        reject_outside=False,
    ),
}


# =====================
# Pipeline
# =====================

def _authorize(db: Session, handler: ActionHandler, project: Project, actor_id: Any, actor_role: str) -> None:
    if actor_role != handler.required_role:
        role_label = "site engineers" if handler.required_role == SITE_ENGINEER else "labours"
        raise ActionRejected(RejectionKind.AUTHORIZATION, f"Only {role_label} can perform this action")
    if handler.required_role == LABOUR:
        if not is_approved_labour(db, project.id, actor_id):
            raise ActionRejected(RejectionKind.AUTHORIZATION, "Not an approved labour in this project")
    elif not is_active_member(db, project.id, actor_id, handler.required_role):
        raise ActionRejected(RejectionKind.AUTHORIZATION, "Not an active engineer in this project")


def _geofence_gate(
    db: Session, handler: ActionHandler, project: Project, actor_id: Any, actor_role: str, payload: Dict
) -> None:
    if payload.get("latitude") is None or payload.get("longitude") is None:
        raise ActionRejected(RejectionKind.VALIDATION, "Missing required fields: latitude, longitude")
    if not handler.reject_outside:
        try:
            check_coordinates(payload.get("latitude"), payload.get("longitude"))
        except InvalidCoordinates as e:
            raise ActionRejected(RejectionKind.VALIDATION, str(e))
        return
    try:
        validate_user_inside_project_geofence(
            db, project, actor_id, actor_role, payload.get("latitude"), payload.get("longitude")
        )
    except InvalidCoordinates as e:
        raise ActionRejected(RejectionKind.VALIDATION, str(e))
    except GeofenceViolation as e:
        distance = f", {round(e.distance_meters)}m away" if e.distance_meters is not None else ""
        raise ActionRejected(
            RejectionKind.GEOFENCE,
            f"Outside project geofence ({e.geofence_type.value}{distance})",
        )


def _replay(row, action_id: str) -> ActionResult:
    return ActionResult(
        success=row.status == SyncStatus.APPLIED.value,
        sync_status=SyncStatus.DUPLICATE,
        entity_id=row.entity_id,
        error=row.error_message,
        client_action_id=action_id,
    )


def apply_action(db: Session, action: SubmitAction, actor_id: Any, actor_role: str) -> ActionResult:
    """
    Apply one field action at most once.

    Args:
        db: Database session (committed or rolled back here)
        action: Submitted action
        actor_id: Authenticated user id
        actor_role: Authenticated user role

    Returns:
        ActionResult with APPLIED, REJECTED, or DUPLICATE (replay of the stored outcome)

    Raises:
        SQLAlchemyError: storage failure before commit; nothing was recorded
        LedgerWriteError: the final commit failed; nothing was recorded
    """
    action_id = action.client_action_id
    log = logger.bind(action_id=action_id, action_type=action.action_type.value, actor_id=str(actor_id))

    check = check_idempotency(db, action_id)
    if check.is_duplicate:
        log.info("sync_action_duplicate", status=check.existing_outcome.status)
        return _replay(check.existing_outcome, action_id)

    handler = HANDLERS[action.action_type]
    project = db.get(Project, action.project_id)
    org_id = project.org_id if project is not None else None
    payload = action.payload or {}

    try:
        if project is None:
            raise ActionRejected(RejectionKind.NOT_FOUND, "Project not found")
        _authorize(db, handler, project, actor_id, actor_role)
        if handler.location_sensitive:
            _geofence_gate(db, handler, project, actor_id, actor_role, payload)

        ctx = ActionContext(
            db=db,
            action_id=action_id,
            project=project,
            actor_id=actor_id,
            actor_role=actor_role,
            payload=payload,
        )
        outcome = handler.apply(ctx)
        entity_id = str(outcome.entity_id)

        if outcome.audit_action is not None:
            log_audit(
                db,
                entity_type=handler.entity_type,
                entity_id=entity_id,
                category=handler.audit_category,
                action=outcome.audit_action,
                before=outcome.before,
                after=outcome.after,
                actor_id=actor_id,
                actor_role=actor_role,
                project_id=project.id,
                organization_id=org_id,
                commit=False,
            )
        record_outcome(
            db,
            action_id,
            SyncStatus.APPLIED,
            action_type=action.action_type.value,
            actor_id=actor_id,
            actor_role=actor_role,
            project_id=project.id,
            organization_id=org_id,
            payload=payload,
            entity_type=handler.entity_type,
            entity_id=entity_id,
        )
    except ActionRejected as e:
        db.rollback()
        log.info("sync_action_rejected", kind=e.kind.value, reason=str(e))
        competing = record_rejection(
            db,
            action_id,
            action_type=action.action_type.value,
            actor_id=actor_id,
            actor_role=actor_role,
            project_id=action.project_id,
            organization_id=org_id,
            payload=payload,
            entity_type=handler.entity_type,
            reason=str(e),
        )
        if competing is not None:
            return _replay(competing, action_id)
        return ActionResult(
            success=False,
            sync_status=SyncStatus.REJECTED,
            error=str(e),
            client_action_id=action_id,
        )
    except SQLAlchemyError as e:
        db.rollback()
        log.error("sync_action_storage_failed", error=str(e))
        raise

    competing = commit_outcome(db, action_id)
    if competing is not None:
        return _replay(competing, action_id)

    log.info("sync_action_applied", entity_id=entity_id)
    return ActionResult(
        success=True,
        sync_status=SyncStatus.APPLIED,
        entity_id=entity_id,
        client_action_id=action_id,
    )


def apply_batch(db: Session, actions: List[SubmitAction], actor_id: Any, actor_role: str) -> Dict:
    """
    Apply actions sequentially in submission order.

    Returns:
        {applied: [...], rejected: [...], skipped: [...], summary: {...}}
    """
    if len(actions) > settings.sync_batch_max_actions:
        raise BatchTooLarge(f"At most {settings.sync_batch_max_actions} actions per batch")

    applied, rejected, skipped = [], [], []
    for action in actions:
        result = apply_action(db, action, actor_id, actor_role)
        if result.sync_status == SyncStatus.APPLIED:
            applied.append(result)
        elif result.sync_status == SyncStatus.DUPLICATE:
            skipped.append(result)
        else:
            rejected.append(result)

    logger.info(
        "sync_batch_processed",
        actor_id=str(actor_id),
        total=len(actions),
        applied=len(applied),
        rejected=len(rejected),
        skipped=len(skipped),
    )
    return {
        "applied": applied,
        "rejected": rejected,
        "skipped": skipped,
        "summary": {
            "total": len(actions),
            "applied": len(applied),
            "rejected": len(rejected),
            "skipped": len(skipped),
        },
    }

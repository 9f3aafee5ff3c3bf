"""
Wage computation service.
Turns attendance telemetry into payable hours and amounts, and guards
labour-request category capacity.
"""
from dataclasses import dataclass
from datetime import datetime, date, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    Attendance,
    Project,
    User,
    WageRate,
    Wage,
    LabourRequest,
    LabourRequestParticipant,
)
from .audit import log_audit
from .time_rules import (
    ensure_utc,
    effective_checkout,
    hours_between,
    window_hours,
    daily_ceiling,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


class AttendanceNotFound(Exception):
    pass


class WageRateNotConfigured(Exception):
    def __init__(self, project_id: Any, skill_type: Optional[str], category: Optional[str]):
        self.project_id = project_id
        self.skill_type = skill_type
        self.category = category
        super().__init__(
            f"Wage rate not configured for project={project_id}, skill={skill_type}, category={category}"
        )


class CapacityConflict(Exception):
    """Category is already full; re-read and retry."""


@dataclass
class WageComputation:
    worked_hours: float
    hourly_rate: Decimal
    total_amount: Decimal
    ready_for_payment: bool
    category: Optional[str] = None
    skill_type: Optional[str] = None
    message: Optional[str] = None


@dataclass
class CapacityCheck:
    has_capacity: bool
    category: Optional[str] = None
    current_count: int = 0
    required_count: int = 0
    request_id: Optional[Any] = None
    error: Optional[str] = None


def _labour_skill_and_category(db: Session, attendance: Attendance):
    skill_type = attendance.skill_type
    category = attendance.category
    if skill_type and category:
        return skill_type, category
    labour = db.get(User, attendance.labour_id)
    profile = labour.labour_profile if labour is not None else None
    if profile is not None:
        skill_type = skill_type or profile.skill_type
        category = category or profile.primary_category
    return skill_type, category


def _worked_hours(attendance: Attendance, project: Project, tz: str, now: datetime) -> float:
    cutoff = effective_checkout(
        attendance.attendance_date,
        tz,
        actual_checkout=attendance.check_out_time,
        project_checkout=project.check_out_time,
    )

    if attendance.is_manual:
        # Without a configured start the day is taken to begin at local midnight
        window_start = project.check_in_time or time(0, 0)
        window_end = min(project.check_out_time or daily_ceiling(), daily_ceiling())
        return min(float(attendance.work_hours or 0), window_hours(window_start, window_end))

    if attendance.check_out_time is not None:
        if attendance.work_hours is not None:
            hours = float(attendance.work_hours)
        elif attendance.check_in_time is not None:
            hours = hours_between(attendance.check_in_time, cutoff)
        else:
            hours = 0.0
        if attendance.check_in_time is not None:
            hours = min(hours, hours_between(attendance.check_in_time, cutoff))
        return max(hours, 0.0)

    # Still on site: sum sessions, open ones run until now
    open_end = min(now, cutoff)
    total = 0.0
    for session in attendance.sessions:
        end = ensure_utc(session.check_out_time) if session.check_out_time is not None else open_end
        total += hours_between(session.check_in_time, min(end, cutoff))
    if not attendance.sessions and attendance.check_in_time is not None:
        total = hours_between(attendance.check_in_time, open_end)
    return total


def find_wage_rate(db: Session, project_id: Any, skill_type: Optional[str], category: Optional[str]) -> WageRate:
    rate = None
    if skill_type and category:
        rate = (
            db.query(WageRate)
            .filter(
                WageRate.project_id == project_id,
                WageRate.skill_type == skill_type,
                WageRate.category == category,
            )
            .first()
        )
    if rate is None:
        raise WageRateNotConfigured(project_id, skill_type, category)
    return rate


def compute_wage(db: Session, attendance_id: Any, now: Optional[datetime] = None) -> WageComputation:
    """
    Calculate the wage for one attendance record.

    Worked time is clipped to the effective checkout: the earliest of the
    actual checkout, the project's configured checkout and the daily ceiling.

    Args:
        db: Database session
        attendance_id: Attendance ID
        now: Reference instant for open sessions (default: current time)

    Returns:
        WageComputation

    Raises:
        AttendanceNotFound: no such attendance record
        WageRateNotConfigured: no rate for the project/skill/category
    """
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise AttendanceNotFound(f"Attendance {attendance_id} not found")

    skill_type, category = _labour_skill_and_category(db, attendance)

    if attendance.is_manual and attendance.status != "APPROVED":
        if attendance.status == "REJECTED":
            message = "Manual attendance rejected"
        else:
            message = "Manual attendance pending approval"
        return WageComputation(
            worked_hours=0.0,
            hourly_rate=Decimal("0.00"),
            total_amount=Decimal("0.00"),
            ready_for_payment=False,
            category=category,
            skill_type=skill_type,
            message=message,
        )

    project = db.get(Project, attendance.project_id)
    tz = project.timezone or settings.tz_default
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)

    hours = _worked_hours(attendance, project, tz, now)
    rate = find_wage_rate(db, attendance.project_id, skill_type, category)
    hourly_rate = Decimal(str(rate.hourly_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    total_amount = (Decimal(str(hours)) * hourly_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    ready = attendance.has_final_checkout and (not attendance.is_manual or attendance.status == "APPROVED")

    return WageComputation(
        worked_hours=round(hours, 2),
        hourly_rate=hourly_rate,
        total_amount=total_amount,
        ready_for_payment=ready,
        category=category,
        skill_type=skill_type,
    )


def check_category_capacity(db: Session, labour_id: Any, project_id: Any) -> CapacityCheck:
    """
    Advisory capacity read for the labour's latest participation on a project.

    An approved participant is already counted, so capacity holds while the
    approved count does not exceed the requirement; a pending one needs a free slot.
    """
    row = (
        db.query(LabourRequestParticipant, LabourRequest)
        .join(LabourRequest, LabourRequest.id == LabourRequestParticipant.labour_request_id)
        .filter(
            LabourRequestParticipant.labour_id == labour_id,
            LabourRequest.project_id == project_id,
            LabourRequestParticipant.status.in_(["APPROVED", "PENDING"]),
        )
        .order_by(LabourRequestParticipant.joined_at.desc())
        .first()
    )
    if row is None:
        return CapacityCheck(
            has_capacity=False,
            error="Labour has no approved or pending labour request in this project",
        )

    participant, request = row
    current_count = (
        db.query(LabourRequestParticipant)
        .filter(
            LabourRequestParticipant.labour_request_id == request.id,
            LabourRequestParticipant.status == "APPROVED",
        )
        .count()
    )
    if participant.status == "APPROVED":
        has_capacity = current_count <= request.required_count
    else:
        has_capacity = current_count < request.required_count

    return CapacityCheck(
        has_capacity=has_capacity,
        category=request.category,
        current_count=current_count,
        required_count=request.required_count,
        request_id=request.id,
    )


def reserve_category_slot(db: Session, request_id: Any) -> None:
    """
    Take one slot of a labour request in a single conditional UPDATE.

    Raises:
        CapacityConflict: the request is already full
    """
    result = db.execute(
        update(LabourRequest)
        .where(
            LabourRequest.id == request_id,
            LabourRequest.approved_count < LabourRequest.required_count,
        )
        .values(
            approved_count=LabourRequest.approved_count + 1,
            version=LabourRequest.version + 1,
        )
    )
    if result.rowcount == 0:
        logger.info("capacity_conflict", request_id=str(request_id))
        raise CapacityConflict("Category capacity is full for this labour request")


def release_category_slot(db: Session, request_id: Any) -> None:
    db.execute(
        update(LabourRequest)
        .where(LabourRequest.id == request_id, LabourRequest.approved_count > 0)
        .values(
            approved_count=LabourRequest.approved_count - 1,
            version=LabourRequest.version + 1,
        )
    )


def wage_snapshot(wage: Wage) -> Dict:
    return {
        "id": str(wage.id),
        "attendance_id": str(wage.attendance_id),
        "labour_id": str(wage.labour_id),
        "project_id": str(wage.project_id),
        "worked_hours": float(wage.worked_hours),
        "hourly_rate": float(wage.hourly_rate),
        "total_amount": float(wage.total_amount),
        "status": wage.status,
    }


def generate_wages(
    db: Session,
    project: Project,
    actor_id: Any,
    actor_role: str,
    attendance_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Persist a PENDING wage for every payable, unsettled attendance of a project.

    The run is all-or-nothing: a missing wage rate for a payable attendance
    aborts it before anything is committed. Open days are skipped.

    Returns:
        {"created": [Wage, ...], "skipped": [{attendance_id, reason}, ...]}
    """
    settled = db.query(Wage.attendance_id)
    query = db.query(Attendance).filter(
        Attendance.project_id == project.id,
        ~Attendance.id.in_(settled),
    )
    if attendance_date is not None:
        query = query.filter(Attendance.attendance_date == attendance_date)

    created: List[Wage] = []
    skipped: List[Dict] = []
    for attendance in query.order_by(Attendance.attendance_date, Attendance.created_at).all():
        # Open days are not payable yet, so their rate is not required
        if not attendance.has_final_checkout:
            skipped.append({"attendance_id": str(attendance.id), "reason": "Attendance not finalised"})
            continue
        computation = compute_wage(db, attendance.id, now=now)
        if not computation.ready_for_payment:
            skipped.append({
                "attendance_id": str(attendance.id),
                "reason": computation.message or "Attendance not finalised",
            })
            continue
        wage = Wage(
            attendance_id=attendance.id,
            labour_id=attendance.labour_id,
            project_id=project.id,
            worked_hours=Decimal(str(computation.worked_hours)),
            hourly_rate=computation.hourly_rate,
            total_amount=computation.total_amount,
            status="PENDING",
        )
        db.add(wage)
        db.flush()
        log_audit(
            db,
            entity_type="WAGE",
            entity_id=wage.id,
            category="WAGES",
            action="CREATE",
            after=wage_snapshot(wage),
            actor_id=actor_id,
            actor_role=actor_role,
            project_id=project.id,
            organization_id=project.org_id,
            commit=False,
        )
        created.append(wage)

    db.commit()
    logger.info(
        "wages_generated",
        project_id=str(project.id),
        created=len(created),
        skipped=len(skipped),
    )
    return {"created": created, "skipped": skipped}

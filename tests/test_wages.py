import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from sitehub.models.models import (
    Attendance,
    AttendanceSession,
    AuditLog,
    LabourRequest,
    LabourRequestParticipant,
    Wage,
    WageRate,
)
from sitehub.services.wages import (
    AttendanceNotFound,
    CapacityConflict,
    WageRateNotConfigured,
    check_category_capacity,
    compute_wage,
    generate_wages,
    release_category_slot,
    reserve_category_slot,
)

DAY = date(2024, 3, 15)


def utc(hour, minute=0, day=15):
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


def add_attendance(db, seed, **fields):
    values = dict(
        project_id=seed.project.id,
        labour_id=seed.labour.id,
        attendance_date=DAY,
        is_manual=False,
        status="APPROVED",
        skill_type="SKILLED",
        category="MASON",
    )
    values.update(fields)
    att = Attendance(**values)
    db.add(att)
    db.commit()
    return att


def test_long_day_is_capped_at_project_checkout(db, seed):
    # 06:00 to 23:00 IST with 17 h stored; the project closes at 18:00 IST
    att = add_attendance(
        db, seed,
        check_in_time=utc(0, 30),
        check_out_time=utc(17, 30),
        work_hours=Decimal("17.00"),
    )
    result = compute_wage(db, att.id)
    assert result.worked_hours == 12.0
    assert result.hourly_rate == Decimal("100.00")
    assert result.total_amount == Decimal("1200.00")
    assert result.ready_for_payment is True


def test_early_checkout_is_paid_as_worked(db, seed):
    att = add_attendance(
        db, seed,
        check_in_time=utc(3, 30),  # 09:00 IST
        check_out_time=utc(7, 30),  # 13:00 IST
        work_hours=Decimal("4.00"),
    )
    result = compute_wage(db, att.id)
    assert result.worked_hours == 4.0
    assert result.total_amount == Decimal("400.00")


def test_missing_rate_raises(db, seed):
    att = add_attendance(
        db, seed, category="HELPER",
        check_in_time=utc(3, 30), check_out_time=utc(7, 30), work_hours=Decimal("4.00"),
    )
    with pytest.raises(WageRateNotConfigured) as exc:
        compute_wage(db, att.id)
    assert exc.value.category == "HELPER"


def test_unknown_attendance(db, seed):
    with pytest.raises(AttendanceNotFound):
        compute_wage(db, uuid.uuid4())


def test_pending_manual_attendance_is_not_payable(db, seed):
    att = add_attendance(db, seed, is_manual=True, status="PENDING", work_hours=Decimal("8.00"))
    # Recorded time on site does not make an unapproved entry payable
    db.add(AttendanceSession(attendance_id=att.id, check_in_time=utc(3, 30), check_out_time=utc(11, 30)))
    db.commit()
    result = compute_wage(db, att.id)
    assert result.worked_hours == 0.0
    assert result.ready_for_payment is False
    assert result.total_amount == Decimal("0.00")
    assert result.message == "Manual attendance pending approval"


def test_rejected_manual_attendance_is_not_payable(db, seed):
    att = add_attendance(db, seed, is_manual=True, status="REJECTED", work_hours=Decimal("8.00"))
    result = compute_wage(db, att.id)
    assert result.ready_for_payment is False
    assert result.message == "Manual attendance rejected"


def test_approved_manual_attendance_is_bounded_by_window(db, seed):
    att = add_attendance(db, seed, is_manual=True, status="APPROVED", work_hours=Decimal("12.00"))
    result = compute_wage(db, att.id)
    assert result.worked_hours == 9.0
    assert result.total_amount == Decimal("900.00")
    assert result.ready_for_payment is True


def test_manual_hours_without_window_stop_at_daily_ceiling(db, seed):
    seed.project.check_in_time = None
    seed.project.check_out_time = None
    db.commit()
    att = add_attendance(db, seed, is_manual=True, status="APPROVED", work_hours=Decimal("24.00"))
    result = compute_wage(db, att.id)
    # Midnight to the 18:00 ceiling
    assert result.worked_hours == 18.0
    assert result.total_amount == Decimal("1800.00")


def test_open_session_runs_until_now_then_cutoff(db, seed):
    att = add_attendance(db, seed, check_in_time=utc(3, 30))
    db.add(AttendanceSession(attendance_id=att.id, check_in_time=utc(3, 30)))
    db.commit()

    midday = compute_wage(db, att.id, now=utc(6, 30))  # 12:00 IST
    assert midday.worked_hours == 3.0
    assert midday.ready_for_payment is False

    evening = compute_wage(db, att.id, now=utc(14, 30))  # 20:00 IST
    assert evening.worked_hours == 9.0


def test_amount_rounds_half_up(db, seed):
    db.add(WageRate(project_id=seed.project.id, skill_type="SKILLED", category="HELPER", hourly_rate=Decimal("33.33")))
    att = add_attendance(
        db, seed, category="HELPER",
        check_in_time=utc(3, 30), check_out_time=utc(5, 0), work_hours=Decimal("1.50"),
    )
    result = compute_wage(db, att.id)
    assert result.total_amount == Decimal("50.00")


def test_capacity_for_approved_participant_at_limit(db, seed):
    seed.labour_request.required_count = 1
    db.commit()
    check = check_category_capacity(db, seed.labour.id, seed.project.id)
    assert check.has_capacity is True
    assert check.current_count == 1
    assert check.category == "MASON"


def test_capacity_for_pending_participant_when_full(db, seed):
    seed.labour_request.required_count = 1
    seed.participant.status = "PENDING"
    db.commit()

    # Another labourer already holds the only slot
    db.add(LabourRequestParticipant(
        labour_request_id=seed.labour_request.id, labour_id=seed.engineer.id, status="APPROVED"
    ))
    db.commit()
    check = check_category_capacity(db, seed.labour.id, seed.project.id)
    assert check.has_capacity is False
    assert check.current_count == 1


def test_capacity_without_request(db, seed):
    check = check_category_capacity(db, seed.engineer.id, seed.project.id)
    assert check.has_capacity is False
    assert check.error


def test_reserve_never_overshoots(db, seed):
    request_id = seed.labour_request.id
    reserve_category_slot(db, request_id)
    db.commit()
    with pytest.raises(CapacityConflict):
        reserve_category_slot(db, request_id)
    db.rollback()

    request = db.get(LabourRequest, request_id)
    db.refresh(request)
    assert request.approved_count == 2
    assert request.version == 1

    release_category_slot(db, request_id)
    db.commit()
    db.refresh(request)
    assert request.approved_count == 1


def test_generate_wages_creates_and_skips(db, seed):
    payable = add_attendance(
        db, seed,
        check_in_time=utc(3, 30), check_out_time=utc(11, 30), work_hours=Decimal("8.00"),
    )
    pending = add_attendance(
        db, seed, attendance_date=date(2024, 3, 16), is_manual=True, status="PENDING", work_hours=Decimal("8.00"),
    )

    result = generate_wages(db, seed.project, seed.manager.id, "MANAGER")
    assert len(result["created"]) == 1
    wage = result["created"][0]
    assert wage.attendance_id == payable.id
    assert wage.total_amount == Decimal("800.00")
    assert wage.status == "PENDING"
    assert result["skipped"] == [
        {"attendance_id": str(pending.id), "reason": "Manual attendance pending approval"}
    ]
    assert db.query(AuditLog).filter(AuditLog.category == "WAGES", AuditLog.action == "CREATE").count() == 1

    # Settled attendance is not paid twice
    again = generate_wages(db, seed.project, seed.manager.id, "MANAGER")
    assert again["created"] == []
    assert db.query(Wage).count() == 1


def test_generate_wages_filters_by_date(db, seed):
    add_attendance(db, seed, check_in_time=utc(3, 30), check_out_time=utc(11, 30), work_hours=Decimal("8.00"))
    result = generate_wages(db, seed.project, seed.manager.id, "MANAGER", attendance_date=date(2024, 3, 16))
    assert result == {"created": [], "skipped": []}


def test_generate_wages_skips_open_day_without_rate(db, seed):
    payable = add_attendance(
        db, seed,
        check_in_time=utc(3, 30), check_out_time=utc(11, 30), work_hours=Decimal("8.00"),
    )
    # Still on site, and no HELPER rate exists
    open_day = add_attendance(
        db, seed, attendance_date=date(2024, 3, 16), category="HELPER", check_in_time=utc(3, 30, day=16),
    )

    result = generate_wages(db, seed.project, seed.manager.id, "MANAGER")
    assert [w.attendance_id for w in result["created"]] == [payable.id]
    assert result["skipped"] == [{"attendance_id": str(open_day.id), "reason": "Attendance not finalised"}]


def test_generate_wages_aborts_on_missing_rate(db, seed):
    add_attendance(
        db, seed, category="HELPER",
        check_in_time=utc(3, 30), check_out_time=utc(11, 30), work_hours=Decimal("8.00"),
    )
    with pytest.raises(WageRateNotConfigured):
        generate_wages(db, seed.project, seed.manager.id, "MANAGER")
    db.rollback()
    assert db.query(Wage).count() == 0

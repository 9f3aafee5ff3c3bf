import uuid
from datetime import datetime, date, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# =====================
# People & organizations
# =====================

class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # OWNER|MANAGER|SITE_ENGINEER|PURCHASE_MANAGER|QA_ENGINEER|LABOUR
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    labour_profile = relationship("LabourProfile", back_populates="user", uselist=False)


class LabourProfile(Base):
    __tablename__ = "labour_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    skill_type: Mapped[str] = mapped_column(String(50), nullable=False)  # SKILLED|SEMI_SKILLED|UNSKILLED
    categories: Mapped[Optional[list]] = mapped_column(JSON)  # e.g. ["MASON", "HELPER"]; first entry is primary
    phone: Mapped[Optional[str]] = mapped_column(String(50))

    user = relationship("User", back_populates="labour_profile")

    @property
    def primary_category(self) -> Optional[str]:
        if self.categories:
            return self.categories[0]
        return None


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="SET NULL"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(100))  # Falls back to settings.tz_default
    # {type: CIRCLE, center: {lat, lng}, radius_meters} | {type: POLYGON, coordinates: [[lng, lat], ...]}
    geofence: Mapped[Optional[dict]] = mapped_column(JSON)
    check_in_time: Mapped[Optional[time]] = mapped_column(Time(timezone=False))  # Local working window start
    check_out_time: Mapped[Optional[time]] = mapped_column(Time(timezone=False))  # Local working window end
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class ProjectMember(Base):
    """Role assignment of a staff user on a project (manager, site engineer, ...)"""
    __tablename__ = "project_members"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|ACTIVE|REMOVED
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", "role", name="uq_project_member_role"),
    )


# =====================
# Field sync ledger
# =====================

class SyncActionLog(Base):
    """Idempotency ledger: first outcome of every client-submitted action"""
    __tablename__ = "sync_action_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # client_action_id
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    user_role: Mapped[Optional[str]] = mapped_column(String(50))
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[str]] = mapped_column(String(64))
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    payload: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # APPLIED|REJECTED
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class SyncError(Base):
    __tablename__ = "sync_errors"

    id: Mapped[uuid.UUID] = uuid_pk()
    sync_action_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


# =====================
# Materials
# =====================

class MaterialRequest(Base):
    __tablename__ = "material_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    site_engineer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|APPROVED|REJECTED
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =====================
# Attendance & wages
# =====================

class Attendance(Base):
    """Labour attendance for one project day"""
    __tablename__ = "attendance"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    labour_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    site_engineer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))  # Author of manual entries
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False)
    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # Final checkout
    work_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))  # Stored total once finalized
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|APPROVED|REJECTED
    skill_type: Mapped[Optional[str]] = mapped_column(String(50))  # Snapshot at creation
    category: Mapped[Optional[str]] = mapped_column(String(100))  # Snapshot at creation
    source: Mapped[str] = mapped_column(String(20), default="ONLINE")  # ONLINE|OFFLINE_SYNC
    check_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    check_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    is_currently_breached: Mapped[bool] = mapped_column(Boolean, default=False)  # Last TRACK ping was outside
    entry_exit_count: Mapped[int] = mapped_column(Integer, default=0)
    last_known_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    last_known_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    sessions = relationship(
        "AttendanceSession",
        back_populates="attendance",
        order_by="AttendanceSession.check_in_time",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("labour_id", "project_id", "attendance_date", name="uq_attendance_labour_project_date"),
        Index("idx_attendance_project_date", "project_id", "attendance_date"),
        Index("idx_attendance_status", "status"),
    )

    @property
    def has_final_checkout(self) -> bool:
        # Manual entries carry their hours directly and have nothing left to close
        return self.check_out_time is not None or bool(self.is_manual)


class AttendanceSession(Base):
    """On-site interval inside one attendance day"""
    __tablename__ = "attendance_sessions"

    id: Mapped[uuid.UUID] = uuid_pk()
    attendance_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("attendance.id", ondelete="CASCADE"), nullable=False, index=True)
    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # NULL while open
    worked_minutes: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))

    attendance = relationship("Attendance", back_populates="sessions")


class WageRate(Base):
    __tablename__ = "wage_rates"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    skill_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "skill_type", "category", name="uq_wage_rate_project_skill_category"),
    )


class Wage(Base):
    """Persisted settlement for one attendance record"""
    __tablename__ = "wages"

    id: Mapped[uuid.UUID] = uuid_pk()
    attendance_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("attendance.id", ondelete="CASCADE"), unique=True, nullable=False)
    labour_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    worked_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|APPROVED|REJECTED
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


# =====================
# Labour requests (category capacity)
# =====================

class LabourRequest(Base):
    """Project request for N workers in one category"""
    __tablename__ = "labour_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    required_count: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), default="OPEN")  # OPEN|CLOSED
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    participants = relationship("LabourRequestParticipant", back_populates="labour_request", cascade="all, delete-orphan")


class LabourRequestParticipant(Base):
    __tablename__ = "labour_request_participants"

    id: Mapped[uuid.UUID] = uuid_pk()
    labour_request_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("labour_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    labour_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|APPROVED|REJECTED
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    labour_request = relationship("LabourRequest", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("labour_request_id", "labour_id", name="uq_labour_request_participant"),
    )


# =====================
# Audit
# =====================

class AuditLog(Base):
    """Append-only audit log for field actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # MATERIAL_REQUEST|ATTENDANCE|PROJECT|WAGE_RATE|...
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # MATERIAL_REQUEST|ATTENDANCE|WAGES|PROJECT_SETTINGS|SECURITY|...
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|APPROVE|REJECT|ACCESS_DENIED
    acted_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    acted_by_role: Mapped[Optional[str]] = mapped_column(String(50))
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    change_summary: Mapped[Optional[dict]] = mapped_column(JSON)  # {action, before, after, changed_fields?}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 for integrity verification

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_project_created", "project_id", "created_at"),
    )

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


class GeofenceCheckRequest(BaseModel):
    latitude: float
    longitude: float


class GeofenceUpdate(BaseModel):
    # {type: CIRCLE, center: {lat, lng}, radius_meters} | {type: POLYGON, coordinates: [[lng, lat], ...]} | GeoJSON Feature
    geofence: Optional[Dict[str, Any]] = None


class WorkingHoursUpdate(BaseModel):
    check_in_time: str = Field(description="Local HH:MM")
    check_out_time: str = Field(description="Local HH:MM")


class WorkingHoursResponse(BaseModel):
    project_id: uuid.UUID
    timezone: str
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    daily_ceiling: str


class AttendanceReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class AttendanceResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    labour_id: uuid.UUID
    attendance_date: date
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    work_hours: Optional[Decimal] = None
    is_manual: bool
    status: str
    source: Optional[str] = None
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[uuid.UUID] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    class Config:
        from_attributes = True

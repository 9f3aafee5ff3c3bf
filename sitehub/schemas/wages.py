import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field


class WageReviewStatus(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SkillType(str, Enum):
    SKILLED = "SKILLED"
    SEMI_SKILLED = "SEMI_SKILLED"
    UNSKILLED = "UNSKILLED"


class WageComputationResponse(BaseModel):
    attendance_id: uuid.UUID
    worked_hours: float
    hourly_rate: Decimal
    total_amount: Decimal
    ready_for_payment: bool
    category: Optional[str] = None
    skill_type: Optional[str] = None
    message: Optional[str] = None


class WageRateCreate(BaseModel):
    project_id: uuid.UUID
    skill_type: SkillType
    category: str = Field(min_length=1, max_length=100)
    hourly_rate: Decimal = Field(gt=0)


class WageRateUpdate(BaseModel):
    hourly_rate: Decimal = Field(gt=0)


class WageRateResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    skill_type: str
    category: str
    hourly_rate: Decimal
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WageGenerateRequest(BaseModel):
    project_id: uuid.UUID
    attendance_date: Optional[date] = None


class WageResponse(BaseModel):
    id: uuid.UUID
    attendance_id: uuid.UUID
    labour_id: uuid.UUID
    project_id: uuid.UUID
    worked_hours: Decimal
    hourly_rate: Decimal
    total_amount: Decimal
    status: str
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WageGenerateResponse(BaseModel):
    created: List[WageResponse]
    skipped: List[Dict[str, Any]]


class WageReview(BaseModel):
    status: WageReviewStatus


class CapacityResponse(BaseModel):
    has_capacity: bool
    category: Optional[str] = None
    current_count: int
    required_count: int
    request_id: Optional[uuid.UUID] = None
    error: Optional[str] = None

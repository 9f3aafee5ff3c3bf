import uuid
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field


class ActionType(str, Enum):
    CREATE_MATERIAL_REQUEST = "CREATE_MATERIAL_REQUEST"
    UPDATE_MATERIAL_REQUEST = "UPDATE_MATERIAL_REQUEST"
    DELETE_MATERIAL_REQUEST = "DELETE_MATERIAL_REQUEST"
    MANUAL_ATTENDANCE = "MANUAL_ATTENDANCE"
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    TRACK = "TRACK"


class SyncStatus(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


class SubmitAction(BaseModel):
    client_action_id: str = Field(min_length=1, max_length=64)
    action_type: ActionType
    project_id: uuid.UUID
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActionResultResponse(BaseModel):
    client_action_id: Optional[str] = None
    success: bool
    entity_id: Optional[str] = None
    sync_status: SyncStatus
    error: Optional[str] = None


class SubmitBatch(BaseModel):
    actions: List[SubmitAction] = Field(min_length=1)


class BatchSummary(BaseModel):
    total: int
    applied: int
    rejected: int
    skipped: int


class BatchResultResponse(BaseModel):
    applied: List[ActionResultResponse]
    rejected: List[ActionResultResponse]
    skipped: List[ActionResultResponse]
    summary: BatchSummary

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from parkwatch.core.constants import ViolationStatus
from parkwatch.schemas.contest import ContestOut


class ViolationOut(BaseModel):
    id: int
    vehicle_id: int
    violation_type_id: int
    reported_by: int
    status: ViolationStatus
    description: Optional[str] = None
    location: Optional[str] = None
    image_filename: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    closed_reason: Optional[str] = None

    class Config:
        from_attributes = True


class OwnerViolationOut(ViolationOut):
    plate_number: str
    violation_type: Optional[str] = None
    contest: Optional[ContestOut] = None
    contest_history: List[ContestOut] = []
    can_contest: bool


class ViolationCreate(BaseModel):
    vehicle_id: int
    violation_type_id: int
    description: Optional[str] = Field(None, max_length=2000)
    location: Optional[str] = Field(None, max_length=255)


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class AutoCloseResponse(BaseModel):
    dry_run: bool
    days: int
    count: int
    violation_ids: List[int]

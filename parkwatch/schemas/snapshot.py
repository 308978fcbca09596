from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from parkwatch.core.constants import StickerStatus, VehicleApprovalStatus
from parkwatch.schemas.contest import ContestListItem, ContestStats
from parkwatch.schemas.violation import OwnerViolationOut


class PendingVehicle(BaseModel):
    id: int
    owner_id: int
    plate_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    approval_status: VehicleApprovalStatus
    sticker_status: StickerStatus

    class Config:
        from_attributes = True


class AdminSnapshot(BaseModel):
    generated_at: datetime
    violation_counts: Dict[str, int]
    contest_stats: ContestStats
    pending_vehicle_approvals: List[PendingVehicle]
    pending_approvals_count: int


class AppealsSnapshot(BaseModel):
    generated_at: datetime
    contests: List[ContestListItem]
    stats: ContestStats


class OwnerSnapshot(BaseModel):
    generated_at: datetime
    violations: List[OwnerViolationOut]
    unread_notifications: int

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from parkwatch.core.constants import ContestStatus, ViolationStatus


class ContestOut(BaseModel):
    id: int
    violation_id: int
    user_id: int
    contest_status: ContestStatus
    explanation: str
    evidence_filename: Optional[str] = None
    evidence_mime_type: Optional[str] = None
    evidence_size: Optional[int] = None
    reviewed_by: Optional[int] = None
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    submitted_at: datetime
    version: int
    # approved/denied decisions are read-only everywhere
    is_final: bool
    has_evidence: bool

    class Config:
        from_attributes = True


class ContestListItem(ContestOut):
    violation_status: ViolationStatus
    violation_type: Optional[str] = None
    plate_number: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None


class ContestStats(BaseModel):
    pending: int = 0
    under_review: int = 0
    approved: int = 0
    denied: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[ContestStatus, int]) -> "ContestStats":
        values = {status.value: counts.get(status, 0) for status in ContestStatus}
        return cls(total=sum(values.values()), **values)


class ContestListResponse(BaseModel):
    contests: List[ContestListItem]
    stats: ContestStats


class ReviewRequest(BaseModel):
    # checked by the lifecycle engine so bad values get the invalid_action error body
    action: str
    notes: Optional[str] = None


class ReviewResponse(BaseModel):
    message: str
    contest: ContestOut

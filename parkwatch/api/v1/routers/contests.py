from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.constants import ContestStatus
from parkwatch.core.database import aget_db
from parkwatch.core.security import check_admin_access
from parkwatch.schemas.contest import ContestListResponse, ContestOut, ReviewRequest, ReviewResponse
from parkwatch.services.lifecycle import LifecycleEngine
from parkwatch.services.snapshot_service import list_contests

router = APIRouter(prefix="/contests", tags=["contests"])

REVIEW_MESSAGES = {
    ContestStatus.APPROVED: "Contest approved and violation resolved",
    ContestStatus.DENIED: "Contest denied; the violation is closed",
    ContestStatus.UNDER_REVIEW: "Contest marked as under review",
}


@router.get("", response_model=ContestListResponse)
async def get_contests(
    request: Request,
    db: AsyncSession = Depends(aget_db),
    status: Optional[str] = Query(None, description="pending, under_review, approved, denied, active or all"),
):
    """List contests for the admin review queue"""
    await check_admin_access(request, db)
    contests, stats = await list_contests(db, status)
    return ContestListResponse(contests=contests, stats=stats)


@router.post("/{contest_id}/review", response_model=ReviewResponse)
async def review_contest(
    contest_id: int,
    data: ReviewRequest,
    request: Request,
    db: AsyncSession = Depends(aget_db),
):
    """Approve, deny or mark a contest as under review"""
    admin = await check_admin_access(request, db)
    contest = await LifecycleEngine.review(db, contest_id, data.action, admin, data.notes)
    return ReviewResponse(
        message=REVIEW_MESSAGES[contest.contest_status],
        contest=ContestOut.model_validate(contest),
    )

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.config import settings
from parkwatch.core.database import aget_db
from parkwatch.core.security import (
    check_admin_access,
    check_owner_access,
    check_staff_access,
    get_current_user,
    verify_cron_secret,
)
from parkwatch.schemas.contest import ContestOut
from parkwatch.schemas.violation import (
    AutoCloseResponse,
    OwnerViolationOut,
    RejectRequest,
    ViolationCreate,
    ViolationOut,
)
from parkwatch.services.lifecycle import EvidenceFile, LifecycleEngine
from parkwatch.services.snapshot_service import owner_violations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/violations", tags=["violations"])


async def _authorize_auto_close(request: Request, db: AsyncSession) -> None:
    if verify_cron_secret(request):
        logger.info("Auto-close called by the scheduler")
        return
    await check_admin_access(request, db)


@router.get("/auto-close", response_model=AutoCloseResponse)
async def preview_auto_close(
    request: Request,
    db: AsyncSession = Depends(aget_db),
    days: Optional[int] = Query(None, ge=0),
):
    """Dry run: list the violations an auto-close run would close"""
    await _authorize_auto_close(request, db)
    days = settings.AUTO_CLOSE_DAYS if days is None else days
    stale = await LifecycleEngine.find_stale(db, days)
    ids = [v.id for v in stale]
    return AutoCloseResponse(dry_run=True, days=days, count=len(ids), violation_ids=ids)


@router.post("/auto-close", response_model=AutoCloseResponse)
async def run_auto_close(
    request: Request,
    db: AsyncSession = Depends(aget_db),
    days: Optional[int] = Query(None, ge=0),
):
    """Close violations left pending without an appeal"""
    await _authorize_auto_close(request, db)
    days = settings.AUTO_CLOSE_DAYS if days is None else days
    ids = await LifecycleEngine.auto_close_stale(db, days)
    return AutoCloseResponse(dry_run=False, days=days, count=len(ids), violation_ids=ids)


@router.get("/mine", response_model=List[OwnerViolationOut])
async def get_my_violations(request: Request, db: AsyncSession = Depends(aget_db)):
    """Violations against the caller's vehicles, with their contests"""
    user = await get_current_user(request, db)
    return await owner_violations(db, user.id)


@router.post("", response_model=ViolationOut, status_code=201)
async def record_violation(
    data: ViolationCreate,
    request: Request,
    db: AsyncSession = Depends(aget_db),
):
    reporter = await check_staff_access(request, db)
    violation = await LifecycleEngine.record_violation(
        db,
        reporter,
        vehicle_id=data.vehicle_id,
        violation_type_id=data.violation_type_id,
        description=data.description,
        location=data.location,
    )
    return ViolationOut.model_validate(violation)


@router.post("/{violation_id}/contest", response_model=ContestOut, status_code=201)
async def submit_contest(
    violation_id: int,
    request: Request,
    db: AsyncSession = Depends(aget_db),
    explanation: str = Form(""),
    evidence: Optional[List[UploadFile]] = File(None),
):
    """Submit an appeal against a violation (multipart, one optional evidence file)"""
    owner = await check_owner_access(request, db)
    files = []
    for upload in evidence or []:
        if not upload.filename:
            continue
        files.append(EvidenceFile(
            filename=upload.filename,
            content_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
        ))
    contest = await LifecycleEngine.submit_appeal(db, violation_id, owner, explanation, files)
    return ContestOut.model_validate(contest)


@router.post("/{violation_id}/reject", response_model=ViolationOut)
async def reject_violation(
    violation_id: int,
    request: Request,
    db: AsyncSession = Depends(aget_db),
    data: Optional[RejectRequest] = Body(None),
):
    """Reject a pending violation outright"""
    admin = await check_admin_access(request, db)
    violation = await LifecycleEngine.reject_violation(db, violation_id, admin, data.reason if data else None)
    return ViolationOut.model_validate(violation)

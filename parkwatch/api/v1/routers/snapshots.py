from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.database import aget_db
from parkwatch.core.security import check_admin_access, check_staff_access, get_current_user
from parkwatch.schemas.snapshot import AdminSnapshot, AppealsSnapshot, OwnerSnapshot
from parkwatch.services import snapshot_service

router = APIRouter(prefix="/snapshots", tags=["snapshots"])


@router.get("/admin", response_model=AdminSnapshot)
async def get_admin_snapshot(request: Request, db: AsyncSession = Depends(aget_db)):
    """Dashboard counters and the pending vehicle approvals list"""
    await check_staff_access(request, db)
    return await snapshot_service.admin_snapshot(db)


@router.get("/appeals", response_model=AppealsSnapshot)
async def get_appeals_snapshot(
    request: Request,
    db: AsyncSession = Depends(aget_db),
    status: Optional[str] = Query("active"),
):
    await check_admin_access(request, db)
    return await snapshot_service.appeals_snapshot(db, status)


@router.get("/owner", response_model=OwnerSnapshot)
async def get_owner_snapshot(request: Request, db: AsyncSession = Depends(aget_db)):
    user = await get_current_user(request, db)
    return await snapshot_service.owner_snapshot(db, user.id)

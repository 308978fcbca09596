# services/snapshot_service.py
"""Authoritative read models served to list views and to polling clients."""
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from parkwatch.core.constants import (
    ACTIVE_CONTEST_STATUSES,
    ContestStatus,
    StickerStatus,
    VehicleApprovalStatus,
    ViolationStatus,
)
from parkwatch.core.errors import ValidationError
from parkwatch.models.base import utcnow
from parkwatch.models.contests import Contest
from parkwatch.models.notification import Notification
from parkwatch.models.user import User, Vehicle
from parkwatch.models.violations import Violation, ViolationType
from parkwatch.schemas.contest import ContestListItem, ContestOut, ContestStats
from parkwatch.schemas.snapshot import AdminSnapshot, AppealsSnapshot, OwnerSnapshot, PendingVehicle
from parkwatch.schemas.violation import OwnerViolationOut, ViolationOut
from parkwatch.services.notification_service import NotificationService

CONTEST_FILTERS = ("active", "all") + tuple(s.value for s in ContestStatus)


def _status_condition(status: Optional[str]):
    if status is None or status == "all":
        return None
    if status == "active":
        return Contest.contest_status.in_(ACTIVE_CONTEST_STATUSES)
    try:
        return Contest.contest_status == ContestStatus(status)
    except ValueError:
        raise ValidationError(
            f"Invalid status filter '{status}'. Use one of: {', '.join(CONTEST_FILTERS)}", status=status
        )


async def contest_stats(db: AsyncSession) -> ContestStats:
    result = await db.execute(
        select(Contest.contest_status, func.count(Contest.id)).group_by(Contest.contest_status)
    )
    return ContestStats.from_counts({row[0]: row[1] for row in result.all()})


async def list_contests(db: AsyncSession, status: Optional[str] = None) -> Tuple[List[ContestListItem], ContestStats]:
    """Admin queue of contests, newest first, with per-status counts."""
    query = (
        select(Contest, Violation, Vehicle, User, ViolationType.name)
        .join(Violation, Contest.violation_id == Violation.id)
        .join(Vehicle, Violation.vehicle_id == Vehicle.id)
        .join(User, Contest.user_id == User.id)
        .outerjoin(ViolationType, Violation.violation_type_id == ViolationType.id)
        .order_by(Contest.submitted_at.desc(), Contest.id.desc())
    )
    condition = _status_condition(status)
    if condition is not None:
        query = query.where(condition)

    items = []
    for contest, violation, vehicle, owner, type_name in (await db.execute(query)).all():
        items.append(ContestListItem(
            **ContestOut.model_validate(contest).model_dump(),
            violation_status=violation.status,
            violation_type=type_name,
            plate_number=vehicle.plate_number,
            owner_name=owner.full_name,
            owner_email=owner.email,
        ))
    return items, await contest_stats(db)


async def owner_violations(db: AsyncSession, owner_id: int) -> List[OwnerViolationOut]:
    result = await db.execute(
        select(Violation)
        .join(Vehicle, Violation.vehicle_id == Vehicle.id)
        .where(Vehicle.owner_id == owner_id)
        .options(
            selectinload(Violation.contests),
            selectinload(Violation.vehicle),
            selectinload(Violation.violation_type),
        )
        .execution_options(populate_existing=True)
        .order_by(Violation.created_at.desc(), Violation.id.desc())
    )
    violations = []
    for violation in result.scalars().all():
        history = [ContestOut.model_validate(c) for c in violation.contests]
        latest = history[-1] if history else None
        has_active = any(c.contest_status in ACTIVE_CONTEST_STATUSES for c in history)
        violations.append(OwnerViolationOut(
            **ViolationOut.model_validate(violation).model_dump(),
            plate_number=violation.vehicle.plate_number,
            violation_type=violation.violation_type.name if violation.violation_type else None,
            contest=latest,
            contest_history=history,
            can_contest=violation.status == ViolationStatus.PENDING and not has_active,
        ))
    return violations


async def admin_snapshot(db: AsyncSession) -> AdminSnapshot:
    counts = await db.execute(
        select(Violation.status, func.count(Violation.id)).group_by(Violation.status)
    )
    violation_counts: Dict[str, int] = {s.value: 0 for s in ViolationStatus}
    for status, count in counts.all():
        violation_counts[status.value] = count

    vehicles = await db.execute(
        select(Vehicle)
        .where(or_(
            Vehicle.approval_status == VehicleApprovalStatus.PENDING,
            (Vehicle.approval_status == VehicleApprovalStatus.APPROVED)
            & (Vehicle.sticker_status == StickerStatus.UNASSIGNED),
        ))
        .order_by(Vehicle.created_at.desc())
    )
    return AdminSnapshot(
        generated_at=utcnow(),
        violation_counts=violation_counts,
        contest_stats=await contest_stats(db),
        pending_vehicle_approvals=[PendingVehicle.model_validate(v) for v in vehicles.scalars().all()],
        pending_approvals_count=await NotificationService.pending_approvals_count(db),
    )


async def appeals_snapshot(db: AsyncSession, status: Optional[str] = "active") -> AppealsSnapshot:
    contests, stats = await list_contests(db, status)
    return AppealsSnapshot(generated_at=utcnow(), contests=contests, stats=stats)


async def owner_snapshot(db: AsyncSession, owner_id: int) -> OwnerSnapshot:
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == owner_id, Notification.is_read.is_(False)
        )
    )).scalar() or 0
    return OwnerSnapshot(
        generated_at=utcnow(),
        violations=await owner_violations(db, owner_id),
        unread_notifications=unread,
    )

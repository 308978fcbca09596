# services/lifecycle.py
"""
Violation and contest lifecycle engine.

Every status write goes through a conditional UPDATE whose WHERE clause
repeats the status (and, for contests, the version) the caller observed. A
zero rowcount means another writer got there first; the loser sees
StateConflictError and must refetch, it never overwrites the winner.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.config import settings
from parkwatch.core.constants import (
    ACTIVE_CONTEST_STATUSES,
    AppealEvent,
    Channel,
    ContestStatus,
    DashboardEvent,
    UserRole,
    ViolationEvent,
    ViolationStatus,
    ViolationTrigger,
)
from parkwatch.core.database import unit_of_work
from parkwatch.core.errors import NotFoundError, PermissionDeniedError, StateConflictError, ValidationError
from parkwatch.models.base import utcnow
from parkwatch.models.contests import Contest
from parkwatch.models.user import User, Vehicle
from parkwatch.models.violations import Violation, ViolationType
from parkwatch.services.notification_service import EventOutbox, NotificationService
from parkwatch.services.transitions import advance_contest, advance_violation, parse_action

logger = logging.getLogger(__name__)

ACTIVE_CONTEST_EXISTS = "An active contest already exists for this violation"


@dataclass
class EvidenceFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def validate_evidence(files: Sequence[EvidenceFile]) -> Optional[EvidenceFile]:
    """At most one attachment, within the size limit and of an allowed type."""
    files = [f for f in files if f is not None]
    if not files:
        return None
    if len(files) > 1:
        raise ValidationError("Only one evidence file may be attached to an appeal", files=len(files))
    evidence = files[0]
    if evidence.size > settings.MAX_EVIDENCE_BYTES:
        limit_mb = settings.MAX_EVIDENCE_BYTES // (1024 * 1024)
        raise ValidationError(f"File too large. Maximum size is {limit_mb}MB", size=evidence.size)
    if evidence.content_type not in settings.ALLOWED_EVIDENCE_TYPES:
        raise ValidationError(
            "Invalid file type. Allowed: images, PDF, and Word documents",
            content_type=evidence.content_type,
        )
    return evidence


def _require_role(user: User, *roles: UserRole) -> None:
    if user.role not in roles:
        raise PermissionDeniedError(
            f"This action requires one of: {', '.join(r.value for r in roles)}", role=user.role.value
        )


def violation_payload(violation: Violation, owner_id: int, **extra) -> dict:
    payload = {
        "entity_id": violation.id,
        "owner_id": owner_id,
        "status": violation.status.value,
        "vehicle_id": violation.vehicle_id,
    }
    payload.update(extra)
    return payload


def contest_payload(contest: Contest, owner_id: int) -> dict:
    return {
        "entity_id": contest.id,
        "owner_id": owner_id,
        "violation_id": contest.violation_id,
        "status": contest.contest_status.value,
        "version": contest.version,
        "is_final": contest.is_final,
    }


class LifecycleEngine:

    # Appeals

    @classmethod
    async def submit_appeal(
        cls,
        db: AsyncSession,
        violation_id: int,
        owner: User,
        explanation: str,
        evidence_files: Sequence[EvidenceFile] = (),
    ) -> Contest:
        if not explanation or not explanation.strip():
            raise ValidationError("Explanation is required")
        evidence = validate_evidence(evidence_files)

        outbox = EventOutbox()
        async with unit_of_work(db):
            violation = await cls._load_violation(db, violation_id)
            vehicle = await db.get(Vehicle, violation.vehicle_id)
            if vehicle is None or vehicle.owner_id != owner.id:
                # other owners' violations are indistinguishable from missing ones
                raise NotFoundError("Violation not found", violation_id=violation_id)

            active = (await db.execute(
                select(Contest.id).where(
                    Contest.violation_id == violation_id,
                    Contest.contest_status.in_(ACTIVE_CONTEST_STATUSES),
                )
            )).scalar_one_or_none()
            if active is not None:
                raise ValidationError(ACTIVE_CONTEST_EXISTS, contest_id=active)
            if violation.status != ViolationStatus.PENDING:
                raise ValidationError(
                    f"Only pending violations can be contested (current status: {violation.status.value})",
                    status=violation.status.value,
                )

            target = advance_violation(violation.status, ViolationTrigger.APPEAL_SUBMITTED)
            try:
                await cls._swap_violation(db, violation, target, updated_by=owner.id)
            except StateConflictError as e:
                # a concurrent submit moved the violation first
                raise ValidationError(ACTIVE_CONTEST_EXISTS, violation_id=violation_id) from e

            now = utcnow()
            contest = Contest(
                violation_id=violation_id,
                user_id=owner.id,
                contest_status=ContestStatus.PENDING,
                explanation=explanation.strip(),
                submitted_at=now,
                version=1,
            )
            if evidence is not None:
                contest.evidence_filename = evidence.filename
                contest.evidence_mime_type = evidence.content_type
                contest.evidence_size = evidence.size
                contest.evidence_data = evidence.data
            db.add(contest)
            try:
                await db.flush()
            except IntegrityError as e:
                raise ValidationError(ACTIVE_CONTEST_EXISTS, violation_id=violation_id) from e

            await NotificationService.appeal_submitted(db, outbox, owner, violation_id, contest.id)

            outbox.stage(Channel.APPEALS, AppealEvent.SUBMITTED, contest_payload(contest, owner.id))
            outbox.stage(Channel.VIOLATIONS, ViolationEvent.UPDATE,
                         violation_payload(violation, owner.id, contest_id=contest.id))
            outbox.stage(Channel.DASHBOARD, DashboardEvent.STATS_REFRESH, {"reason": "appeal_submitted"})

        logger.info("Contest %s submitted for violation %s by user %s", contest.id, violation_id, owner.id)
        await outbox.publish()
        return contest

    @classmethod
    async def review(
        cls,
        db: AsyncSession,
        contest_id: int,
        action,
        reviewer: User,
        notes: Optional[str] = None,
    ) -> Contest:
        """Apply an admin decision to a contest and derive the violation status from it."""
        action = parse_action(action)
        _require_role(reviewer, UserRole.ADMIN)
        notes = notes.strip() if notes and notes.strip() else None

        outbox = EventOutbox()
        async with unit_of_work(db):
            contest = (await db.execute(
                select(Contest).where(Contest.id == contest_id).execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if contest is None:
                raise NotFoundError("Contest not found", contest_id=contest_id)

            observed_status = contest.contest_status
            observed_version = contest.version
            target, trigger = advance_contest(observed_status, action)

            violation = await cls._load_violation(db, contest.violation_id)
            violation_target = advance_violation(violation.status, trigger)

            # repeated under_review markings only re-notify when the notes change
            notify = not (
                observed_status == ContestStatus.UNDER_REVIEW
                and target == ContestStatus.UNDER_REVIEW
                and notes == contest.review_notes
            )

            now = utcnow()
            result = await db.execute(
                update(Contest)
                .where(
                    Contest.id == contest_id,
                    Contest.contest_status == observed_status,
                    Contest.version == observed_version,
                )
                .values(
                    contest_status=target,
                    reviewed_by=reviewer.id,
                    review_notes=notes,
                    reviewed_at=now,
                    version=observed_version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Lost review race on contest %s (observed %s v%s)",
                               contest_id, observed_status.value, observed_version)
                raise StateConflictError(
                    "Contest was changed by another reviewer; refetch and try again",
                    contest_id=contest_id,
                )

            await cls._swap_violation(db, violation, violation_target, updated_by=reviewer.id)
            await db.refresh(contest)

            vehicle = await db.get(Vehicle, violation.vehicle_id)
            owner = await db.get(User, vehicle.owner_id)
            if notify:
                await NotificationService.appeal_reviewed(db, outbox, owner, violation.id, target.value, notes)

            outbox.stage(Channel.APPEALS, AppealEvent.REVIEWED, contest_payload(contest, owner.id))
            outbox.stage(Channel.VIOLATIONS, ViolationEvent.UPDATE,
                         violation_payload(violation, owner.id, contest_id=contest.id))
            outbox.stage(Channel.DASHBOARD, DashboardEvent.STATS_REFRESH, {"reason": "appeal_reviewed"})

        logger.info("Contest %s reviewed by %s: %s -> %s (violation %s now %s)",
                    contest_id, reviewer.id, observed_status.value, target.value,
                    violation.id, violation.status.value)
        await outbox.publish()
        return contest

    # Violations

    @classmethod
    async def record_violation(
        cls,
        db: AsyncSession,
        reporter: User,
        vehicle_id: int,
        violation_type_id: int,
        description: Optional[str] = None,
        location: Optional[str] = None,
        image: Optional[EvidenceFile] = None,
    ) -> Violation:
        _require_role(reporter, UserRole.SECURITY, UserRole.ADMIN)
        if image is not None:
            validate_evidence([image])

        outbox = EventOutbox()
        async with unit_of_work(db):
            vehicle = await db.get(Vehicle, vehicle_id)
            if vehicle is None:
                raise NotFoundError("Vehicle not found", vehicle_id=vehicle_id)
            if await db.get(ViolationType, violation_type_id) is None:
                raise NotFoundError("Violation type not found", violation_type_id=violation_type_id)

            violation = Violation(
                vehicle_id=vehicle.id,
                violation_type_id=violation_type_id,
                reported_by=reporter.id,
                status=ViolationStatus.PENDING,
                description=description,
                location=location,
            )
            if image is not None:
                violation.image_filename = image.filename
                violation.image_mime_type = image.content_type
                violation.image_data = image.data
            db.add(violation)
            await db.flush()

            owner = await db.get(User, vehicle.owner_id)
            await NotificationService.violation_issued(db, outbox, owner, violation.id, vehicle.plate_number)
            outbox.stage(Channel.VIOLATIONS, ViolationEvent.CREATE, violation_payload(violation, owner.id))
            outbox.stage(Channel.DASHBOARD, DashboardEvent.STATS_REFRESH, {"reason": "violation_recorded"})

        logger.info("Violation %s recorded against vehicle %s by user %s", violation.id, vehicle_id, reporter.id)
        await outbox.publish()
        return violation

    @classmethod
    async def reject_violation(
        cls, db: AsyncSession, violation_id: int, admin: User, reason: Optional[str] = None
    ) -> Violation:
        _require_role(admin, UserRole.ADMIN)
        outbox = EventOutbox()
        async with unit_of_work(db):
            violation = await cls._load_violation(db, violation_id)
            target = advance_violation(violation.status, ViolationTrigger.ADMIN_REJECTED)
            await cls._swap_violation(db, violation, target, updated_by=admin.id, closed_reason=reason)

            vehicle = await db.get(Vehicle, violation.vehicle_id)
            owner = await db.get(User, vehicle.owner_id)
            await NotificationService.violation_rejected(db, outbox, owner, violation.id, reason)
            outbox.stage(Channel.VIOLATIONS, ViolationEvent.UPDATE, violation_payload(violation, owner.id))
            outbox.stage(Channel.DASHBOARD, DashboardEvent.STATS_REFRESH, {"reason": "violation_rejected"})

        logger.info("Violation %s rejected by admin %s", violation_id, admin.id)
        await outbox.publish()
        return violation

    @classmethod
    async def find_stale(cls, db: AsyncSession, older_than_days: Optional[int] = None) -> Sequence[Violation]:
        days = settings.AUTO_CLOSE_DAYS if older_than_days is None else older_than_days
        cutoff = utcnow() - timedelta(days=days)
        result = await db.execute(
            select(Violation)
            .where(Violation.status == ViolationStatus.PENDING, Violation.created_at < cutoff)
            .order_by(Violation.created_at)
        )
        return result.scalars().all()

    @classmethod
    async def auto_close_stale(cls, db: AsyncSession, older_than_days: Optional[int] = None) -> List[int]:
        """Close violations left pending without an appeal past the threshold. Returns the closed ids."""
        days = settings.AUTO_CLOSE_DAYS if older_than_days is None else older_than_days
        outbox = EventOutbox()
        closed: List[int] = []
        async with unit_of_work(db):
            for violation in await cls.find_stale(db, days):
                target = advance_violation(violation.status, ViolationTrigger.AUTO_CLOSED)
                try:
                    await cls._swap_violation(
                        db, violation, target, closed_reason=f"Auto-closed after {days} days without appeal"
                    )
                except StateConflictError:
                    # contested or rejected since the scan; leave it alone
                    continue
                vehicle = await db.get(Vehicle, violation.vehicle_id)
                owner = await db.get(User, vehicle.owner_id)
                await NotificationService.violation_auto_closed(db, outbox, owner, violation.id, days)
                outbox.stage(Channel.VIOLATIONS, ViolationEvent.UPDATE, violation_payload(violation, owner.id))
                closed.append(violation.id)
            if closed:
                outbox.stage(Channel.DASHBOARD, DashboardEvent.STATS_REFRESH, {"reason": "auto_close"})

        logger.info("Auto-closed %d violation(s) pending for more than %d days", len(closed), days)
        await outbox.publish()
        return closed

    # Helpers

    @staticmethod
    async def _load_violation(db: AsyncSession, violation_id: int) -> Violation:
        violation = (await db.execute(
            select(Violation).where(Violation.id == violation_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if violation is None:
            raise NotFoundError("Violation not found", violation_id=violation_id)
        return violation

    @staticmethod
    async def _swap_violation(
        db: AsyncSession,
        violation: Violation,
        target: ViolationStatus,
        updated_by: Optional[int] = None,
        closed_reason: Optional[str] = None,
    ) -> None:
        """Move ``violation`` to ``target`` only if it still has the status we read."""
        observed = violation.status
        now = utcnow()
        values = {"status": target, "updated_at": now}
        if updated_by is not None:
            values["updated_by"] = updated_by
        if target == ViolationStatus.RESOLVED:
            values["resolved_at"] = now
        if target in (ViolationStatus.CLOSED, ViolationStatus.REJECTED):
            values["closed_at"] = now
            if closed_reason:
                values["closed_reason"] = closed_reason

        result = await db.execute(
            update(Violation)
            .where(Violation.id == violation.id, Violation.status == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                "Violation was changed concurrently; refetch and try again",
                violation_id=violation.id,
                observed=observed.value,
            )
        await db.refresh(violation)
        logger.info("Violation %s: %s -> %s", violation.id, observed.value, target.value)

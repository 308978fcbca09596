import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from parkwatch.core.constants import Channel, ContestStatus, NotificationType, ViolationStatus
from parkwatch.core.errors import (
    InvalidActionError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from parkwatch.models.base import utcnow
from parkwatch.models.contests import Contest
from parkwatch.models.notification import Notification
from parkwatch.models.violations import Violation
from parkwatch.realtime.clock import settle
from parkwatch.realtime.hub import hub
from parkwatch.services.lifecycle import EvidenceFile, LifecycleEngine

from fakes import FakeSocket

EXPLANATION = "vehicle was not on campus at the stated time"


async def notifications_for(db, user_id, notification_type=None):
    query = select(Notification).where(Notification.user_id == user_id)
    if notification_type is not None:
        query = query.where(Notification.type == notification_type)
    return (await db.execute(query.order_by(Notification.id))).scalars().all()


async def contest_count(db, violation_id):
    return (await db.execute(
        select(func.count(Contest.id)).where(Contest.violation_id == violation_id)
    )).scalar()


async def fetch_violation(db, violation_id):
    return (await db.execute(
        select(Violation).where(Violation.id == violation_id).execution_options(populate_existing=True)
    )).scalar_one()


async def fetch_contest(db, contest_id):
    return (await db.execute(
        select(Contest).where(Contest.id == contest_id).execution_options(populate_existing=True)
    )).scalar_one()


def image(size):
    return EvidenceFile(filename="dashcam.jpg", content_type="image/jpeg", data=b"\xff" * size)


# Submitting appeals

async def test_appeal_with_two_megabyte_image(db, world):
    contest = await LifecycleEngine.submit_appeal(
        db, world.violation.id, world.owner, EXPLANATION, [image(2 * 1024 * 1024)]
    )

    stored = await fetch_contest(db, contest.id)
    assert stored.contest_status == ContestStatus.PENDING
    assert stored.explanation == EXPLANATION
    assert stored.evidence_size == 2 * 1024 * 1024
    assert stored.evidence_mime_type == "image/jpeg"
    assert stored.version == 1
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.CONTESTED


async def test_appeal_notifies_owner_and_every_admin(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    owner_notes = await notifications_for(db, world.owner.id, NotificationType.APPEAL_PENDING)
    assert len(owner_notes) == 1
    assert owner_notes[0].related_id == world.violation.id
    for admin in (world.admin, world.admin2):
        admin_notes = await notifications_for(db, admin.id, NotificationType.APPEAL_PENDING)
        assert len(admin_notes) == 1
        assert admin_notes[0].related_id == contest.id
        assert "Olu Owner" in admin_notes[0].message


async def test_second_appeal_while_one_is_active_creates_nothing(db, world):
    await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    with pytest.raises(ValidationError, match="active contest"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, "second try")
    assert await contest_count(db, world.violation.id) == 1


async def test_appeal_losing_the_violation_swap_reports_active_contest(db, world, monkeypatch):
    swap = LifecycleEngine._swap_violation

    async def overtaken(session, violation, target, **kwargs):
        # another submit moved the violation between our read and our write
        await session.execute(
            update(Violation).where(Violation.id == violation.id).values(status=ViolationStatus.CONTESTED)
            .execution_options(synchronize_session=False)
        )
        await swap(session, violation, target, **kwargs)

    monkeypatch.setattr(LifecycleEngine, "_swap_violation", staticmethod(overtaken))

    with pytest.raises(ValidationError, match="active contest"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    assert await contest_count(db, world.violation.id) == 0
    assert (await fetch_violation(db, world.violation.id)).status == ViolationStatus.PENDING


async def test_appeal_losing_the_contest_insert_reports_active_contest(db, world, monkeypatch):
    swap = LifecycleEngine._swap_violation

    async def overtaken(session, violation, target, **kwargs):
        await swap(session, violation, target, **kwargs)
        # another submit inserted its contest after our active-contest check
        session.add(Contest(violation_id=violation.id, user_id=world.owner.id, explanation="racing submit",
                            contest_status=ContestStatus.PENDING, submitted_at=utcnow(), version=1))
        await session.flush()

    monkeypatch.setattr(LifecycleEngine, "_swap_violation", staticmethod(overtaken))

    with pytest.raises(ValidationError, match="active contest"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    assert await contest_count(db, world.violation.id) == 0
    assert await notifications_for(db, world.owner.id) == []


@pytest.mark.parametrize("explanation", ["", "   \n\t"])
async def test_appeal_requires_explanation(db, world, explanation):
    with pytest.raises(ValidationError, match="Explanation"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, explanation)
    assert await contest_count(db, world.violation.id) == 0


async def test_appeal_rejects_more_than_one_file(db, world):
    with pytest.raises(ValidationError, match="Only one evidence file"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION, [image(10), image(10)])


async def test_appeal_rejects_oversized_file(db, world):
    with pytest.raises(ValidationError, match="too large"):
        await LifecycleEngine.submit_appeal(
            db, world.violation.id, world.owner, EXPLANATION, [image(5 * 1024 * 1024 + 1)]
        )


async def test_appeal_rejects_disallowed_type(db, world):
    script = EvidenceFile(filename="evil.sh", content_type="text/x-shellscript", data=b"#!/bin/sh")
    with pytest.raises(ValidationError, match="Invalid file type"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION, [script])


async def test_appeal_accepts_pdf_evidence(db, world):
    pdf = EvidenceFile(filename="receipt.pdf", content_type="application/pdf", data=b"%PDF-1.7")
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION, [pdf])
    assert contest.has_evidence


async def test_appeal_on_someone_elses_violation_is_not_found(db, world):
    with pytest.raises(NotFoundError):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.other, EXPLANATION)
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.PENDING


async def test_appeal_on_missing_violation_is_not_found(db, world):
    with pytest.raises(NotFoundError):
        await LifecycleEngine.submit_appeal(db, 9999, world.owner, EXPLANATION)


async def test_appeal_publishes_to_staff_after_commit(db, world):
    socket = FakeSocket()
    conn = hub.register(socket, world.admin.id, world.admin.role)
    hub.join(conn, Channel.APPEALS)
    try:
        contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
        await settle()
    finally:
        await hub.unregister(conn)

    names = [f"{m['channel']}:{m['event']}" for m in socket.sent]
    assert names == ["appeals:submitted"]
    payload = socket.sent[0]["payload"]
    assert payload["entity_id"] == contest.id
    assert payload["owner_id"] == world.owner.id
    assert payload["status"] == "pending"


# Reviews

async def test_deny_closes_violation_with_one_resolution_notice(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    reviewed = await LifecycleEngine.review(db, contest.id, "deny", world.admin, "no supporting evidence provided")

    assert reviewed.contest_status == ContestStatus.DENIED
    assert reviewed.is_final
    assert reviewed.reviewed_by == world.admin.id
    assert reviewed.review_notes == "no supporting evidence provided"
    assert reviewed.reviewed_at is not None
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.CLOSED
    assert violation.closed_at is not None

    resolved = await notifications_for(db, world.owner.id, NotificationType.APPEAL_RESOLVED)
    assert len(resolved) == 1
    assert resolved[0].related_id == world.violation.id
    assert "denied" in resolved[0].message
    assert "no supporting evidence provided" in resolved[0].message


async def test_approve_resolves_violation(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    await LifecycleEngine.review(db, contest.id, "approve", world.admin)

    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.RESOLVED
    assert violation.resolved_at is not None
    resolved = await notifications_for(db, world.owner.id, NotificationType.APPEAL_RESOLVED)
    assert len(resolved) == 1
    assert "approved" in resolved[0].message


async def test_second_approve_conflicts_without_second_notification(db, world):
    contest_id = (await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)).id
    await LifecycleEngine.review(db, contest_id, "approve", world.admin)

    with pytest.raises(StateConflictError, match="final"):
        await LifecycleEngine.review(db, contest_id, "approve", world.admin)

    resolved = await notifications_for(db, world.owner.id, NotificationType.APPEAL_RESOLVED)
    assert len(resolved) == 1
    stored = await fetch_contest(db, contest_id)
    assert stored.contest_status == ContestStatus.APPROVED
    assert stored.version == 2


async def test_final_decision_cannot_be_overturned(db, world):
    contest_id = (await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)).id
    await LifecycleEngine.review(db, contest_id, "deny", world.admin, "no evidence")

    for action in ("approve", "under_review", "deny"):
        with pytest.raises(StateConflictError):
            await LifecycleEngine.review(db, contest_id, action, world.admin2, "overturn")

    stored = await fetch_contest(db, contest_id)
    assert stored.contest_status == ContestStatus.DENIED
    assert stored.reviewed_by == world.admin.id
    assert stored.review_notes == "no evidence"


async def test_concurrent_reviews_have_exactly_one_winner(session_factory, world):
    async with session_factory() as db:
        contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    async def review(action, admin):
        async with session_factory() as db:
            return await LifecycleEngine.review(db, contest.id, action, admin, f"{action} by {admin.id}")

    results = await asyncio.gather(
        review("approve", world.admin),
        review("deny", world.admin2),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Contest)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], StateConflictError)

    async with session_factory() as db:
        stored = await fetch_contest(db, contest.id)
        violation = await fetch_violation(db, world.violation.id)
        resolved = await notifications_for(db, world.owner.id, NotificationType.APPEAL_RESOLVED)
    assert stored.contest_status == winners[0].contest_status
    assert stored.reviewed_by == winners[0].reviewed_by
    expected = ViolationStatus.RESOLVED if stored.contest_status == ContestStatus.APPROVED else ViolationStatus.CLOSED
    assert violation.status == expected
    assert len(resolved) == 1


async def test_review_swaps_against_the_current_version(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    # another reviewer bumps the version between our read and our write
    await db.execute(update(Contest).where(Contest.id == contest.id).values(version=Contest.version + 1))
    await db.commit()

    reviewed = await LifecycleEngine.review(db, contest.id, "under_review", world.admin)
    assert reviewed.version == 3


async def test_invalid_action_is_rejected_before_any_write(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    with pytest.raises(InvalidActionError):
        await LifecycleEngine.review(db, contest.id, "escalate", world.admin)

    stored = await fetch_contest(db, contest.id)
    assert stored.contest_status == ContestStatus.PENDING
    assert stored.version == 1


async def test_review_of_missing_contest(db, world):
    with pytest.raises(NotFoundError):
        await LifecycleEngine.review(db, 4242, "approve", world.admin)


async def test_only_admins_review(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    with pytest.raises(PermissionDeniedError):
        await LifecycleEngine.review(db, contest.id, "approve", world.officer)


async def test_repeated_under_review_only_renotifies_on_new_notes(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    await LifecycleEngine.review(db, contest.id, "under_review", world.admin, "checking camera footage")
    await LifecycleEngine.review(db, contest.id, "under_review", world.admin, "checking camera footage")
    notes = await notifications_for(db, world.owner.id, NotificationType.APPEAL_UNDER_REVIEW)
    assert len(notes) == 1

    await LifecycleEngine.review(db, contest.id, "under_review", world.admin2, "waiting for gate logs")
    notes = await notifications_for(db, world.owner.id, NotificationType.APPEAL_UNDER_REVIEW)
    assert len(notes) == 2

    stored = await fetch_contest(db, contest.id)
    assert stored.contest_status == ContestStatus.UNDER_REVIEW
    assert stored.reviewed_by == world.admin2.id
    assert stored.version == 4
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.CONTESTED


async def test_new_appeal_not_allowed_after_denial(db, world):
    contest = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    await LifecycleEngine.review(db, contest.id, "deny", world.admin)

    with pytest.raises(ValidationError, match="Only pending"):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, "please reconsider")
    assert await contest_count(db, world.violation.id) == 1


# Violations

async def test_record_violation_notifies_owner(db, world):
    violation = await LifecycleEngine.record_violation(
        db, world.officer, world.vehicle.id, world.parking.id, description="Blocking the gate"
    )

    assert violation.status == ViolationStatus.PENDING
    issued = await notifications_for(db, world.owner.id, NotificationType.VIOLATION_ISSUED)
    assert len(issued) == 1
    assert world.vehicle.plate_number in issued[0].message


async def test_owners_cannot_record_violations(db, world):
    with pytest.raises(PermissionDeniedError):
        await LifecycleEngine.record_violation(db, world.owner, world.other_vehicle.id, world.parking.id)


async def test_record_violation_for_unknown_vehicle(db, world):
    with pytest.raises(NotFoundError):
        await LifecycleEngine.record_violation(db, world.officer, 777, world.parking.id)


async def test_reject_pending_violation(db, world):
    violation = await LifecycleEngine.reject_violation(db, world.violation.id, world.admin, "wrong plate")

    assert violation.status == ViolationStatus.REJECTED
    assert violation.closed_reason == "wrong plate"
    updates = await notifications_for(db, world.owner.id, NotificationType.VIOLATION_STATUS_UPDATE)
    assert len(updates) == 1
    assert "Reason: wrong plate" in updates[0].message


async def test_contested_violation_cannot_be_rejected(db, world):
    await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    with pytest.raises(StateConflictError):
        await LifecycleEngine.reject_violation(db, world.violation.id, world.admin)


async def test_terminal_violation_never_returns_to_pending(db, world):
    await LifecycleEngine.reject_violation(db, world.violation.id, world.admin)

    with pytest.raises(ValidationError):
        await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)
    with pytest.raises(StateConflictError):
        await LifecycleEngine.reject_violation(db, world.violation.id, world.admin)
    assert await LifecycleEngine.auto_close_stale(db, 0) == []
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.REJECTED


# Auto-close

async def backdate(db, violation_id, days):
    await db.execute(
        update(Violation).where(Violation.id == violation_id).values(created_at=utcnow() - timedelta(days=days))
    )
    await db.commit()


async def test_auto_close_only_touches_stale_pending_violations(db, world):
    fresh = await LifecycleEngine.record_violation(db, world.officer, world.vehicle.id, world.parking.id)
    contested = await LifecycleEngine.record_violation(db, world.officer, world.vehicle.id, world.parking.id)
    await LifecycleEngine.submit_appeal(db, contested.id, world.owner, EXPLANATION)
    await backdate(db, world.violation.id, 10)
    await backdate(db, contested.id, 10)

    stale = await LifecycleEngine.find_stale(db, 7)
    assert [v.id for v in stale] == [world.violation.id]

    closed = await LifecycleEngine.auto_close_stale(db, 7)

    assert closed == [world.violation.id]
    violation = await fetch_violation(db, world.violation.id)
    assert violation.status == ViolationStatus.CLOSED
    assert "7 days" in violation.closed_reason
    assert (await fetch_violation(db, fresh.id)).status == ViolationStatus.PENDING
    assert (await fetch_violation(db, contested.id)).status == ViolationStatus.CONTESTED
    updates = await notifications_for(db, world.owner.id, NotificationType.VIOLATION_STATUS_UPDATE)
    assert len(updates) == 1

    assert await LifecycleEngine.auto_close_stale(db, 7) == []


async def test_database_refuses_a_second_active_contest(db, world, session_factory):
    first = await LifecycleEngine.submit_appeal(db, world.violation.id, world.owner, EXPLANATION)

    async with session_factory() as other:
        other.add(Contest(violation_id=world.violation.id, user_id=world.owner.id, explanation="sneaky",
                          contest_status=ContestStatus.UNDER_REVIEW, submitted_at=utcnow(), version=1))
        with pytest.raises(IntegrityError):
            await other.commit()

    # a finished contest no longer counts as active
    await LifecycleEngine.review(db, first.id, "deny", world.admin)
    db.add(Contest(violation_id=world.violation.id, user_id=world.owner.id, explanation="archived copy",
                   contest_status=ContestStatus.DENIED, submitted_at=utcnow(), version=1))
    await db.commit()
    assert await contest_count(db, world.violation.id) == 2

import pytest
from pydantic import ValidationError as SchemaValidationError

from parkwatch.core.constants import Channel, NotificationType, UserRole
from parkwatch.core.database import unit_of_work
from parkwatch.core.errors import NotFoundError
from parkwatch.realtime.clock import settle
from parkwatch.realtime.hub import hub
from parkwatch.schemas.notification import MarkAsReadRequest, NotificationOut
from parkwatch.services.notification_service import EventOutbox, NotificationService

from fakes import FakeSocket


async def seed(db, user, count):
    outbox = EventOutbox()
    created = []
    async with unit_of_work(db):
        for i in range(count):
            created.append(await NotificationService.notify(
                db, outbox, user, NotificationType.VIOLATION_ISSUED, f"Notice {i}", f"Message {i}", related_id=i
            ))
    await outbox.publish()
    return created


async def test_notify_stages_push_only_for_the_recipient(db, world):
    owner_socket, other_socket = FakeSocket(), FakeSocket()
    owner_conn = hub.register(owner_socket, world.owner.id, UserRole.OWNER)
    other_conn = hub.register(other_socket, world.other.id, UserRole.OWNER)
    for conn in (owner_conn, other_conn):
        hub.join(conn, Channel.NOTIFICATIONS)
    try:
        [notification] = await seed(db, world.owner, 1)
        await settle()
    finally:
        await hub.unregister(owner_conn)
        await hub.unregister(other_conn)

    assert other_socket.sent == []
    assert len(owner_socket.sent) == 1
    message = owner_socket.sent[0]
    assert message["event"] == "created"
    assert message["payload"]["entity_id"] == notification.id
    assert message["payload"]["is_read"] is False


async def test_nothing_is_pushed_when_the_transaction_rolls_back(db, world):
    socket = FakeSocket()
    conn = hub.register(socket, world.owner.id, UserRole.OWNER)
    hub.join(conn, Channel.NOTIFICATIONS)
    outbox = EventOutbox()
    try:
        with pytest.raises(RuntimeError):
            async with unit_of_work(db):
                await NotificationService.notify(
                    db, outbox, world.owner, NotificationType.VIOLATION_ISSUED, "Notice", "Message"
                )
                raise RuntimeError("boom")
        await settle()
    finally:
        await hub.unregister(conn)

    assert socket.sent == []
    _, total, _ = await NotificationService.list_for_user(db, world.owner.id)
    assert total == 0


async def test_mark_read_is_idempotent(db, world):
    [notification] = await seed(db, world.owner, 1)

    first = await NotificationService.mark_read(db, world.owner.id, notification.id)
    assert first.is_read
    read_at = first.read_at
    assert read_at is not None

    second = await NotificationService.mark_read(db, world.owner.id, notification.id)
    assert second.is_read
    assert second.read_at == read_at


async def test_mark_read_of_someone_elses_notification(db, world):
    [notification] = await seed(db, world.owner, 1)

    with pytest.raises(NotFoundError):
        await NotificationService.mark_read(db, world.other.id, notification.id)

    [stored], _, unread = await NotificationService.list_for_user(db, world.owner.id)
    assert not stored.is_read
    assert unread == 1


async def test_mark_all_read_counts_only_unread_rows(db, world):
    notes = await seed(db, world.owner, 3)
    await seed(db, world.other, 2)
    await NotificationService.mark_read(db, world.owner.id, notes[0].id)

    assert await NotificationService.mark_all_read(db, world.owner.id) == 2
    assert await NotificationService.mark_all_read(db, world.owner.id) == 0

    _, _, unread = await NotificationService.list_for_user(db, world.other.id)
    assert unread == 2


async def test_mark_many_read_ignores_foreign_ids(db, world):
    mine = await seed(db, world.owner, 2)
    theirs = await seed(db, world.other, 1)

    updated = await NotificationService.mark_many_read(db, world.owner.id, [mine[0].id, theirs[0].id])

    assert updated == 1
    _, _, unread = await NotificationService.list_for_user(db, world.other.id)
    assert unread == 1


async def test_list_for_user_pages_newest_first(db, world):
    notes = await seed(db, world.owner, 5)
    await NotificationService.mark_read(db, world.owner.id, notes[4].id)

    page, total, unread = await NotificationService.list_for_user(db, world.owner.id, page=1, limit=2)
    assert total == 5
    assert unread == 4
    assert [n.id for n in page] == [notes[4].id, notes[3].id]

    unread_page, unread_total, _ = await NotificationService.list_for_user(
        db, world.owner.id, limit=10, unread_only=True
    )
    assert unread_total == 4
    assert notes[4].id not in [n.id for n in unread_page]


async def test_vehicle_decision_reaches_owner_with_reason(db, world):
    notification = await NotificationService.notify_vehicle_decision(
        db, world.other_vehicle.id, approved=False, reason="Plate photo unreadable"
    )

    assert notification.type == NotificationType.VEHICLE_REJECTED
    assert notification.user_id == world.other.id
    assert "AS-777-23" in notification.message
    assert notification.message.endswith("Reason: Plate photo unreadable")


async def test_sticker_assignment_notifies_owner(db, world):
    notification = await NotificationService.notify_sticker_assigned(db, world.other_vehicle.id)
    assert notification.type == NotificationType.STICKER_ASSIGNED
    # still awaiting approval
    assert await NotificationService.pending_approvals_count(db) == 1


async def test_account_status_change_for_missing_user(db, world):
    with pytest.raises(NotFoundError):
        await NotificationService.notify_account_status(db, 31337, is_active=False)


def test_notification_out_strips_markup():
    out = NotificationOut(
        id=1, type=NotificationType.VIOLATION_ISSUED, title="t",
        message="<p>Violation <b>#4</b>\n issued</p>", is_read=False, created_at="2025-01-01T00:00:00",
    )
    assert out.message == "Violation #4 issued"


def test_mark_as_read_request_needs_a_target():
    with pytest.raises(SchemaValidationError):
        MarkAsReadRequest()
    assert MarkAsReadRequest(all=True).all

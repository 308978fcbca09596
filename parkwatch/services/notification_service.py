# services/notification_service.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.config import settings
from parkwatch.core.constants import (
    Channel,
    DashboardEvent,
    NotificationEvent,
    NotificationType,
    StickerStatus,
    UserRole,
    VehicleApprovalStatus,
    VehicleEvent,
)
from parkwatch.core.database import unit_of_work
from parkwatch.core.errors import NotFoundError
from parkwatch.models.base import utcnow
from parkwatch.models.notification import Notification
from parkwatch.models.user import User, Vehicle
from parkwatch.realtime.events import ChannelEvent
from parkwatch.realtime.hub import hub
from parkwatch.services.email_service import send_email_notification
from parkwatch.services.sms_service import send_sms_notification

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """Out-of-band copy of a notification (email or SMS)."""
    user: User
    subject: str
    text: str


@dataclass
class EventOutbox:
    """
    Side effects staged during a unit of work.

    Nothing here leaves the process until ``publish`` is called after the
    transaction committed; a rolled-back unit of work simply drops its outbox.
    """
    events: List[ChannelEvent] = field(default_factory=list)
    deliveries: List[Delivery] = field(default_factory=list)

    def stage(self, channel: Channel, event, payload: Dict[str, Any], recipient_id: Optional[int] = None) -> ChannelEvent:
        staged = ChannelEvent(channel=channel, event=event, payload=payload, recipient_id=recipient_id)
        self.events.append(staged)
        return staged

    async def publish(self, publisher=None) -> int:
        publisher = publisher or hub
        delivered = 0
        for event in self.events:
            try:
                delivered += publisher.publish(event)
            except Exception as e:
                # push is best effort; subscribers reconcile from snapshots
                logger.warning("Push of %s failed, clients will reconcile by polling: %s", event.name, e)
        for delivery in self.deliveries:
            await NotificationService.deliver_out_of_band(delivery)
        self.events.clear()
        self.deliveries.clear()
        return delivered


def notification_payload(notification: Notification) -> Dict[str, Any]:
    return {
        "entity_id": notification.id,
        "owner_id": notification.user_id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "related_id": notification.related_id,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


class NotificationService:

    MESSAGES = {
        NotificationType.APPEAL_PENDING: {
            "subject": "Appeal Received",
            "text": "Your appeal for violation #{ref} has been submitted and is awaiting review.",
            "admin_subject": "New Violation Appeal",
            "admin_text": "A new appeal (contest #{contest}) was submitted by {owner} for violation #{ref}.",
        },
        NotificationType.APPEAL_UNDER_REVIEW: {
            "subject": "Appeal Under Review",
            "text": "Your appeal for violation #{ref} is now under review.",
        },
        NotificationType.APPEAL_RESOLVED: {
            "subject": "Violation Appeal Update",
            "approved": "Your appeal for violation #{ref} has been approved. The violation has been resolved.",
            "denied": "Your appeal for violation #{ref} has been denied. The violation stands as recorded and the decision is final.",
        },
        NotificationType.VIOLATION_ISSUED: {
            "subject": "New Violation Issued",
            "text": "A new violation #{ref} has been issued for your vehicle {plate}.",
        },
        NotificationType.VIOLATION_STATUS_UPDATE: {
            "subject": "Violation Status Updated",
            "rejected": "Violation #{ref} has been rejected by an administrator and no longer applies.",
            "closed": "Violation #{ref} has been closed after {days} days without an appeal.",
        },
        NotificationType.VEHICLE_APPROVED: {
            "subject": "Vehicle Approved",
            "text": "Your vehicle {plate} has been approved for campus access.",
        },
        NotificationType.VEHICLE_REJECTED: {
            "subject": "Vehicle Registration Rejected",
            "text": "Your vehicle {plate} registration was rejected.",
        },
        NotificationType.STICKER_ASSIGNED: {
            "subject": "RFID Sticker Assigned",
            "text": "An RFID sticker has been assigned to your vehicle {plate}.",
        },
        NotificationType.ACCOUNT_STATUS_CHANGED: {
            "subject": "Account Status Changed",
            "active": "Your account has been activated.",
            "inactive": "Your account has been deactivated.",
        },
    }

    @classmethod
    def _prepare_message(
        cls,
        notification_type: NotificationType,
        variant: str = "text",
        additional_info: Optional[str] = None,
        **fmt: Any,
    ) -> Tuple[str, str]:
        base_msg = cls.MESSAGES.get(notification_type, {
            "subject": "Status Update",
            "text": "There is an update on #{ref}.",
        })
        subject = base_msg["subject"].format(**fmt)
        text = base_msg[variant].format(**fmt)
        if additional_info:
            text += f" Reason: {additional_info}"
        return subject, text

    @classmethod
    async def notify(
        cls,
        db: AsyncSession,
        outbox: EventOutbox,
        user: User,
        notification_type: NotificationType,
        title: str,
        message: str,
        related_id: Optional[int] = None,
    ) -> Notification:
        """Add one notification row for ``user`` to the open transaction and stage its push."""
        notification = Notification(
            user_id=user.id,
            type=notification_type,
            title=title,
            message=message,
            related_id=related_id,
            is_read=False,
            created_at=utcnow(),
        )
        db.add(notification)
        await db.flush()

        outbox.stage(
            Channel.NOTIFICATIONS,
            NotificationEvent.CREATED,
            notification_payload(notification),
            recipient_id=user.id,
        )
        if cls._wants_out_of_band(user):
            outbox.deliveries.append(Delivery(user=user, subject=title, text=message))
        logger.info("Notification %s (%s) queued for user %s", notification.id, notification_type.value, user.id)
        return notification

    @classmethod
    async def notify_templated(
        cls,
        db: AsyncSession,
        outbox: EventOutbox,
        user: User,
        notification_type: NotificationType,
        related_id: Optional[int] = None,
        variant: str = "text",
        additional_info: Optional[str] = None,
        **fmt: Any,
    ) -> Notification:
        subject, text = cls._prepare_message(notification_type, variant, additional_info, **fmt)
        return await cls.notify(db, outbox, user, notification_type, subject, text, related_id)

    # Lifecycle transitions

    @classmethod
    async def appeal_submitted(cls, db, outbox, owner: User, violation_id: int, contest_id: int) -> Notification:
        """Confirm to the owner and alert every active admin."""
        owner_note = await cls.notify_templated(
            db, outbox, owner, NotificationType.APPEAL_PENDING, related_id=violation_id, ref=violation_id
        )
        admin_msg = cls.MESSAGES[NotificationType.APPEAL_PENDING]
        subject = admin_msg["admin_subject"]
        text = admin_msg["admin_text"].format(
            ref=violation_id, contest=contest_id, owner=owner.full_name or owner.email
        )
        for admin in await cls._active_admins(db):
            await cls.notify(db, outbox, admin, NotificationType.APPEAL_PENDING, subject, text, related_id=contest_id)
        return owner_note

    @classmethod
    async def appeal_reviewed(
        cls, db, outbox, owner: User, violation_id: int, outcome: str, notes: Optional[str] = None
    ) -> Notification:
        if outcome == "under_review":
            return await cls.notify_templated(
                db, outbox, owner, NotificationType.APPEAL_UNDER_REVIEW,
                related_id=violation_id, additional_info=notes, ref=violation_id,
            )
        return await cls.notify_templated(
            db, outbox, owner, NotificationType.APPEAL_RESOLVED,
            related_id=violation_id, variant=outcome, additional_info=notes, ref=violation_id,
        )

    @classmethod
    async def violation_issued(cls, db, outbox, owner: User, violation_id: int, plate: str) -> Notification:
        return await cls.notify_templated(
            db, outbox, owner, NotificationType.VIOLATION_ISSUED, related_id=violation_id, ref=violation_id, plate=plate
        )

    @classmethod
    async def violation_rejected(cls, db, outbox, owner: User, violation_id: int, reason: Optional[str] = None) -> Notification:
        return await cls.notify_templated(
            db, outbox, owner, NotificationType.VIOLATION_STATUS_UPDATE,
            related_id=violation_id, variant="rejected", additional_info=reason, ref=violation_id,
        )

    @classmethod
    async def violation_auto_closed(cls, db, outbox, owner: User, violation_id: int, days: int) -> Notification:
        return await cls.notify_templated(
            db, outbox, owner, NotificationType.VIOLATION_STATUS_UPDATE,
            related_id=violation_id, variant="closed", ref=violation_id, days=days,
        )

    # Events raised by external collaborators (vehicle registry, RFID desk, accounts)

    @classmethod
    async def notify_vehicle_decision(
        cls, db: AsyncSession, vehicle_id: int, approved: bool, reason: Optional[str] = None
    ) -> Notification:
        outbox = EventOutbox()
        async with unit_of_work(db):
            vehicle, owner = await cls._get_vehicle(db, vehicle_id)
            vehicle.approval_status = VehicleApprovalStatus.APPROVED if approved else VehicleApprovalStatus.REJECTED
            notification = await cls.notify_templated(
                db, outbox, owner,
                NotificationType.VEHICLE_APPROVED if approved else NotificationType.VEHICLE_REJECTED,
                related_id=vehicle.id, additional_info=None if approved else reason, plate=vehicle.plate_number,
            )
            outbox.stage(Channel.VEHICLES, VehicleEvent.APPROVAL_UPDATE, {
                "entity_id": vehicle.id,
                "owner_id": vehicle.owner_id,
                "status": vehicle.approval_status.value,
            })
            await cls._stage_pending_count(db, outbox)
        await outbox.publish()
        return notification

    @classmethod
    async def notify_sticker_assigned(cls, db: AsyncSession, vehicle_id: int) -> Notification:
        outbox = EventOutbox()
        async with unit_of_work(db):
            vehicle, owner = await cls._get_vehicle(db, vehicle_id)
            vehicle.sticker_status = StickerStatus.ASSIGNED
            notification = await cls.notify_templated(
                db, outbox, owner, NotificationType.STICKER_ASSIGNED,
                related_id=vehicle.id, plate=vehicle.plate_number,
            )
            outbox.stage(Channel.VEHICLES, VehicleEvent.RFID_ASSIGNED, {
                "entity_id": vehicle.id,
                "owner_id": vehicle.owner_id,
                "status": vehicle.sticker_status.value,
            })
            await cls._stage_pending_count(db, outbox)
        await outbox.publish()
        return notification

    @classmethod
    async def notify_account_status(cls, db: AsyncSession, user_id: int, is_active: bool) -> Notification:
        outbox = EventOutbox()
        async with unit_of_work(db):
            user = await db.get(User, user_id)
            if not user:
                raise NotFoundError("User not found", user_id=user_id)
            user.is_active = is_active
            notification = await cls.notify_templated(
                db, outbox, user, NotificationType.ACCOUNT_STATUS_CHANGED,
                related_id=user.id, variant="active" if is_active else "inactive",
            )
        await outbox.publish()
        return notification

    # Read side

    @classmethod
    async def list_for_user(
        cls, db: AsyncSession, user_id: int, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> Tuple[Sequence[Notification], int, int]:
        query = select(Notification).where(Notification.user_id == user_id)
        count_query = select(func.count(Notification.id)).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
            count_query = count_query.where(Notification.is_read.is_(False))

        total_count = (await db.execute(count_query)).scalar() or 0
        unread_count = (await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        )).scalar() or 0

        offset = (page - 1) * limit
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
        notifications = (await db.execute(query)).scalars().all()
        return notifications, total_count, unread_count

    @classmethod
    async def mark_read(cls, db: AsyncSession, user_id: int, notification_id: int) -> Notification:
        """Mark one notification read. Already-read notifications are left untouched."""
        outbox = EventOutbox()
        async with unit_of_work(db):
            notification = (await db.execute(
                select(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,  # only the recipient may touch it
                )
            )).scalar_one_or_none()
            if not notification:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            changed = await cls._flip_read(db, user_id, [Notification.id == notification_id])
            if changed:
                outbox.stage(Channel.NOTIFICATIONS, NotificationEvent.READ, {
                    "entity_ids": [notification_id], "owner_id": user_id, "is_read": True,
                }, recipient_id=user_id)
            await db.refresh(notification)
        await outbox.publish()
        return notification

    @classmethod
    async def mark_many_read(cls, db: AsyncSession, user_id: int, notification_ids: Iterable[int]) -> int:
        ids = list(notification_ids)
        if not ids:
            return 0
        return await cls._mark_read_where(db, user_id, [Notification.id.in_(ids)])

    @classmethod
    async def mark_all_read(cls, db: AsyncSession, user_id: int) -> int:
        return await cls._mark_read_where(db, user_id, [])

    @classmethod
    async def _mark_read_where(cls, db: AsyncSession, user_id: int, conditions) -> int:
        outbox = EventOutbox()
        async with unit_of_work(db):
            ids = (await db.execute(
                select(Notification.id).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                    *conditions,
                )
            )).scalars().all()
            changed = await cls._flip_read(db, user_id, [Notification.id.in_(ids)]) if ids else 0
            if changed:
                outbox.stage(Channel.NOTIFICATIONS, NotificationEvent.READ, {
                    "entity_ids": list(ids), "owner_id": user_id, "is_read": True,
                }, recipient_id=user_id)
        await outbox.publish()
        return changed

    @staticmethod
    async def _flip_read(db: AsyncSession, user_id: int, conditions) -> int:
        stmt = (
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),  # never touches read rows
                *conditions,
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount or 0

    # Helpers

    @staticmethod
    async def _active_admins(db: AsyncSession) -> Sequence[User]:
        result = await db.execute(
            select(User).where(User.role == UserRole.ADMIN, User.is_active.is_(True)).order_by(User.id)
        )
        return result.scalars().all()

    @staticmethod
    async def _get_vehicle(db: AsyncSession, vehicle_id: int) -> Tuple[Vehicle, User]:
        vehicle = await db.get(Vehicle, vehicle_id)
        if not vehicle:
            raise NotFoundError("Vehicle not found", vehicle_id=vehicle_id)
        owner = await db.get(User, vehicle.owner_id)
        return vehicle, owner

    @staticmethod
    async def pending_approvals_count(db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(Vehicle.id)).where(
                or_(
                    Vehicle.approval_status == VehicleApprovalStatus.PENDING,
                    (Vehicle.approval_status == VehicleApprovalStatus.APPROVED)
                    & (Vehicle.sticker_status == StickerStatus.UNASSIGNED),
                )
            )
        )
        return result.scalar() or 0

    @classmethod
    async def _stage_pending_count(cls, db: AsyncSession, outbox: EventOutbox) -> None:
        count = await cls.pending_approvals_count(db)
        outbox.stage(Channel.VEHICLES, VehicleEvent.PENDING_COUNT, {"count": count})
        outbox.stage(Channel.DASHBOARD, DashboardEvent.PENDING_APPROVALS, {"count": count})

    @staticmethod
    def _wants_out_of_band(user: User) -> bool:
        if user.preferred_channel == "sms":
            return settings.SEND_SMS_NOTIFICATIONS and bool(user.phone)
        return settings.SEND_EMAIL_NOTIFICATIONS and bool(user.email)

    @classmethod
    async def deliver_out_of_band(cls, delivery: Delivery) -> bool:
        """Email or SMS copy; failures are logged and never undo the stored notification."""
        user = delivery.user
        try:
            if user.preferred_channel == "sms":
                return await send_sms_notification(
                    contact=user.phone, message=f"ParkWatch: {delivery.subject}\n\n{delivery.text}"
                )
            return await send_email_notification(
                email=user.email, subject=f"ParkWatch: {delivery.subject}", html_content=f"<p>{delivery.text}</p>"
            )
        except Exception as e:
            logger.error("Out-of-band delivery to user %s failed: %s", user.id, e)
            return False

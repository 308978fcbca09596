import enum
from typing import Dict, FrozenSet, Type


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SECURITY = "security"
    OWNER = "owner"


class ViolationStatus(str, enum.Enum):
    PENDING = "pending"
    CONTESTED = "contested"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REJECTED = "rejected"


class ContestStatus(str, enum.Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DENIED = "denied"


ACTIVE_CONTEST_STATUSES: FrozenSet[ContestStatus] = frozenset(
    {ContestStatus.PENDING, ContestStatus.UNDER_REVIEW}
)
TERMINAL_CONTEST_STATUSES: FrozenSet[ContestStatus] = frozenset(
    {ContestStatus.APPROVED, ContestStatus.DENIED}
)
TERMINAL_VIOLATION_STATUSES: FrozenSet[ViolationStatus] = frozenset(
    {ViolationStatus.RESOLVED, ViolationStatus.CLOSED, ViolationStatus.REJECTED}
)


class ReviewAction(str, enum.Enum):
    APPROVE = "approve"
    DENY = "deny"
    UNDER_REVIEW = "under_review"


class ViolationTrigger(str, enum.Enum):
    """Everything that can move a violation along its lifecycle."""
    APPEAL_SUBMITTED = "appeal_submitted"
    APPEAL_UNDER_REVIEW = "appeal_under_review"
    APPEAL_APPROVED = "appeal_approved"
    APPEAL_DENIED = "appeal_denied"
    ADMIN_REJECTED = "admin_rejected"
    AUTO_CLOSED = "auto_closed"


class NotificationType(str, enum.Enum):
    VEHICLE_PENDING = "vehicle_pending"
    VEHICLE_APPROVED = "vehicle_approved"
    VEHICLE_REJECTED = "vehicle_rejected"
    APPEAL_PENDING = "appeal_pending"
    APPEAL_UNDER_REVIEW = "appeal_under_review"
    APPEAL_RESOLVED = "appeal_resolved"
    VIOLATION_ISSUED = "violation_issued"
    VIOLATION_STATUS_UPDATE = "violation_status_update"
    STICKER_ASSIGNED = "sticker_assigned"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"


class VehicleApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StickerStatus(str, enum.Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"


class Channel(str, enum.Enum):
    ACCESS_LOGS = "access_logs"
    VIOLATIONS = "violations"
    VEHICLES = "vehicles"
    APPEALS = "appeals"
    DASHBOARD = "dashboard"
    NOTIFICATIONS = "notifications"


class AccessLogEvent(str, enum.Enum):
    UPDATE = "update"
    REFRESH = "refresh"


class ViolationEvent(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"


class VehicleEvent(str, enum.Enum):
    APPROVAL_UPDATE = "approval_update"
    RFID_ASSIGNED = "rfid_assigned"
    PENDING_COUNT = "pending_count"


class AppealEvent(str, enum.Enum):
    SUBMITTED = "submitted"
    REVIEWED = "reviewed"


class DashboardEvent(str, enum.Enum):
    STATS_REFRESH = "stats_refresh"
    ENTRY_EXIT = "entry_exit"
    PENDING_APPROVALS = "pending_approvals"


class NotificationEvent(str, enum.Enum):
    CREATED = "created"
    READ = "read"


# Each channel carries exactly one closed set of event kinds.
CHANNEL_EVENTS: Dict[Channel, Type[enum.Enum]] = {
    Channel.ACCESS_LOGS: AccessLogEvent,
    Channel.VIOLATIONS: ViolationEvent,
    Channel.VEHICLES: VehicleEvent,
    Channel.APPEALS: AppealEvent,
    Channel.DASHBOARD: DashboardEvent,
    Channel.NOTIFICATIONS: NotificationEvent,
}


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"

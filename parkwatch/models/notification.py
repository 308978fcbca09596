from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from parkwatch.core.constants import NotificationType
from parkwatch.models.base import Base, enum_column, utcnow


class Notification(Base):
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    type = Column(enum_column(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    related_id = Column(Integer)  # violation, contest or vehicle id depending on type

    # Monotonic: only ever flipped false -> true
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    def __repr__(self):
        return f"<Notification {self.type.value} for User {self.user_id}>"

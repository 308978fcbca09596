from sqlalchemy import Column, DateTime, ForeignKey, Integer, LargeBinary, String, Text
from sqlalchemy.orm import relationship

from parkwatch.core.constants import ViolationStatus
from parkwatch.models.base import Base, TimestampMixin, enum_column


class ViolationType(Base):
    __tablename__ = 'violation_types'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)

    def __repr__(self):
        return f"<ViolationType {self.name}>"


class Violation(Base, TimestampMixin):
    __tablename__ = 'violations'

    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey('vehicles.id', ondelete='CASCADE'), nullable=False, index=True)
    violation_type_id = Column(Integer, ForeignKey('violation_types.id'), nullable=False)
    reported_by = Column(Integer, ForeignKey('users.id'), nullable=False)

    # Only ever written by the lifecycle engine
    status = Column(enum_column(ViolationStatus), nullable=False, default=ViolationStatus.PENDING, index=True)

    description = Column(Text)
    location = Column(String(255))

    # Evidence image captured by the reporter
    image_filename = Column(String(255))
    image_mime_type = Column(String(100))
    image_data = Column(LargeBinary)

    resolved_at = Column(DateTime)
    closed_at = Column(DateTime)
    closed_reason = Column(String(255))
    updated_by = Column(Integer, ForeignKey('users.id'))

    vehicle = relationship("Vehicle")
    violation_type = relationship("ViolationType")
    reporter = relationship("User", foreign_keys=[reported_by])
    contests = relationship(
        "Contest", back_populates="violation", order_by="Contest.submitted_at", passive_deletes=True
    )

    def __repr__(self):
        return f"<Violation {self.id} ({self.status.value})>"

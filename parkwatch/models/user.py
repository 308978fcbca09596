from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from parkwatch.core.constants import StickerStatus, UserRole, VehicleApprovalStatus
from parkwatch.models.base import Base, TimestampMixin, enum_column


class User(Base, TimestampMixin):
    """Boundary record; registration and profiles live with the user CRUD service."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    phone = Column(String(20))
    role = Column(enum_column(UserRole), nullable=False, default=UserRole.OWNER)
    is_active = Column(Boolean, default=True, nullable=False)
    preferred_channel = Column(String(10), default='email')  # 'email' or 'sms'

    vehicles = relationship("Vehicle", back_populates="owner")

    def __repr__(self):
        return f"<User {self.email} ({self.role.value})>"


class Vehicle(Base, TimestampMixin):
    __tablename__ = 'vehicles'

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    plate_number = Column(String(20), unique=True, nullable=False)
    make = Column(String(100))
    model = Column(String(100))
    approval_status = Column(
        enum_column(VehicleApprovalStatus), nullable=False, default=VehicleApprovalStatus.PENDING
    )
    sticker_status = Column(enum_column(StickerStatus), nullable=False, default=StickerStatus.UNASSIGNED)

    owner = relationship("User", back_populates="vehicles")

    def __repr__(self):
        return f"<Vehicle {self.plate_number}>"

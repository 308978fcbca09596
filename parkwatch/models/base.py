import enum
from datetime import datetime, timezone
from typing import Type

from sqlalchemy import Column, DateTime, Enum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column(enum_cls: Type[enum.Enum], **kwargs) -> Enum:
    """Enum column type persisted by value ("pending"), not by member name."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
        **kwargs,
    )


class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

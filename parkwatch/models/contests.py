from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, LargeBinary, String, Text, text
from sqlalchemy.orm import relationship

from parkwatch.core.constants import TERMINAL_CONTEST_STATUSES, ContestStatus
from parkwatch.models.base import Base, TimestampMixin, enum_column

_ACTIVE_PREDICATE = text("contest_status IN ('pending', 'under_review')")


class Contest(Base, TimestampMixin):
    __tablename__ = 'violation_contests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    violation_id = Column(Integer, ForeignKey('violations.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    contest_status = Column(enum_column(ContestStatus), nullable=False, default=ContestStatus.PENDING)
    explanation = Column(Text, nullable=False)

    # Single optional evidence attachment
    evidence_filename = Column(String(255))
    evidence_mime_type = Column(String(100))
    evidence_size = Column(Integer)
    evidence_data = Column(LargeBinary)

    # Review details
    reviewed_by = Column(Integer, ForeignKey('users.id'))
    review_notes = Column(Text)
    reviewed_at = Column(DateTime)

    submitted_at = Column(DateTime, nullable=False)
    # bumped on every review write; compare-and-swap key together with contest_status
    version = Column(Integer, nullable=False, default=1)

    violation = relationship("Violation", back_populates="contests")
    user = relationship("User", foreign_keys=[user_id])
    reviewer = relationship("User", foreign_keys=[reviewed_by])

    __table_args__ = (
        # at most one active contest per violation
        Index(
            "uq_violation_contests_active",
            "violation_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    @property
    def is_final(self) -> bool:
        return self.contest_status in TERMINAL_CONTEST_STATUSES

    @property
    def has_evidence(self) -> bool:
        return self.evidence_filename is not None

    def __repr__(self):
        return f"<Contest {self.id} for Violation {self.violation_id} ({self.contest_status.value})>"

"""MedStock — Quarantine case and its action log."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base, utcnow


class QuarantineStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED_FOR_DISPOSAL = "APPROVED_FOR_DISPOSAL"
    APPROVED_FOR_RETURN = "APPROVED_FOR_RETURN"
    DISPOSED = "DISPOSED"
    RETURNED = "RETURNED"


class QuarantineAction(str, Enum):
    QUARANTINE = "QUARANTINE"
    REVIEW = "REVIEW"
    APPROVE_DISPOSAL = "APPROVE_DISPOSAL"
    APPROVE_RETURN = "APPROVE_RETURN"
    DISPOSE = "DISPOSE"
    RETURN = "RETURN"


# (current status, action) -> next status. Anything else is illegal.
QUARANTINE_TRANSITIONS: dict[tuple[QuarantineStatus, QuarantineAction], QuarantineStatus] = {
    (QuarantineStatus.PENDING_REVIEW, QuarantineAction.REVIEW): QuarantineStatus.UNDER_REVIEW,
    (QuarantineStatus.UNDER_REVIEW, QuarantineAction.APPROVE_DISPOSAL): QuarantineStatus.APPROVED_FOR_DISPOSAL,
    (QuarantineStatus.UNDER_REVIEW, QuarantineAction.APPROVE_RETURN): QuarantineStatus.APPROVED_FOR_RETURN,
    (QuarantineStatus.APPROVED_FOR_DISPOSAL, QuarantineAction.DISPOSE): QuarantineStatus.DISPOSED,
    (QuarantineStatus.APPROVED_FOR_RETURN, QuarantineAction.RETURN): QuarantineStatus.RETURNED,
}

TERMINAL_QUARANTINE_STATUSES = frozenset({QuarantineStatus.DISPOSED, QuarantineStatus.RETURNED})


class QuarantineCase(Base):
    """Batch pulled from available stock pending disposal or return."""

    __tablename__ = "quarantine_cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("product_batches.id", ondelete="RESTRICT"), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity_quarantined: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    quarantine_date: Mapped[date] = mapped_column(Date, nullable=False)
    quarantined_by: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=QuarantineStatus.PENDING_REVIEW.value, index=True)
    review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disposal_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disposal_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disposal_certificate: Mapped[str | None] = mapped_column(String(255), nullable=True)
    return_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    return_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    estimated_loss: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    # UPDATE ... WHERE version = :old; a concurrent writer raises StaleDataError
    __mapper_args__ = {"version_id_col": version}


class QuarantineActionLog(Base):
    """Append-only. One row per quarantine transition."""

    __tablename__ = "quarantine_action_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("quarantine_cases.id", ondelete="RESTRICT"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    previous_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str] = mapped_column(String(30), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

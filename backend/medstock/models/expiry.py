"""MedStock — Expiry alert tiers, alerts and check-run log."""
import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base, JSONType, utcnow


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


# Legal alert moves: current status -> reachable statuses
ALERT_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({AlertStatus.SENT, AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.SENT: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}

OPEN_ALERT_STATUSES = (AlertStatus.PENDING.value, AlertStatus.SENT.value, AlertStatus.ACKNOWLEDGED.value)


class CheckRunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


CHECK_RUN_TRANSITIONS: dict[CheckRunStatus, frozenset[CheckRunStatus]] = {
    CheckRunStatus.RUNNING: frozenset({CheckRunStatus.COMPLETED, CheckRunStatus.FAILED}),
    CheckRunStatus.COMPLETED: frozenset(),
    CheckRunStatus.FAILED: frozenset(),
}


class CheckTrigger(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    FORCE = "FORCE"


class AlertTierConfig(Base):
    """Expiry-proximity tier: alert when a batch is within ``days_before_expiry``."""

    __tablename__ = "expiry_alert_configs"
    __table_args__ = (
        # One active tier per threshold
        Index(
            "uq_expiry_alert_configs_active_days",
            "days_before_expiry",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tier_name: Mapped[str] = mapped_column(String(100), nullable=False)
    days_before_expiry: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notify_roles: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    color_code: Mapped[str | None] = mapped_column(String(7), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)


class ExpiryAlert(Base):
    """One alert per (batch, tier) while open. Never deleted."""

    __tablename__ = "expiry_alerts"
    __table_args__ = (
        Index(
            "uq_expiry_alerts_open_batch_config",
            "batch_id",
            "config_id",
            unique=True,
            postgresql_where=text("status <> 'RESOLVED'"),
            sqlite_where=text("status <> 'RESOLVED'"),
        ),
        Index("ix_expiry_alerts_status_alert_date", "status", "alert_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("product_batches.id", ondelete="RESTRICT"), nullable=False)
    config_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("expiry_alert_configs.id", ondelete="RESTRICT"), nullable=False, index=True)
    check_run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("expiry_check_runs.id", ondelete="SET NULL"), nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    alert_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)
    quantity_affected: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.PENDING.value)
    acknowledged_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)


class ExpiryCheckRun(Base):
    """Audit row for one execution of the expiry sweep."""

    __tablename__ = "expiry_check_runs"
    __table_args__ = (
        # At most one RUNNING row across all processes
        Index(
            "uq_expiry_check_runs_single_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
        Index("ix_expiry_check_runs_check_date", "check_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    check_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CheckRunStatus.RUNNING.value)
    items_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_encountered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False, default=CheckTrigger.SCHEDULED.value)

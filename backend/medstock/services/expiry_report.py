"""MedStock — Expiry dashboard: batch expiry report and exposure summary.

Read-only views over stock, alerts, quarantine cases and check runs. Only
ACTIVE batches count: quarantined or expired stock is already out of the
usable pool.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.models.expiry import OPEN_ALERT_STATUSES, AlertSeverity, AlertTierConfig, ExpiryAlert
from medstock.models.inventory import BatchStatus, Product, ProductBatch
from medstock.models.quarantine import QuarantineStatus
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.check_runner import ExpiryCheckOrchestrator
from medstock.services.quarantine_service import QuarantineService

logger = logging.getLogger(__name__)

REPORT_WINDOWS = (7, 30, 60, 90)
CRITICAL_WINDOW_DAYS = 7
VALUE_AT_RISK_DAYS = 30
CENT = Decimal("0.01")

_batch_value = ProductBatch.quantity * func.coalesce(ProductBatch.cost_per_unit, 0)


@dataclass(frozen=True)
class CriticalBatch:
    batch_id: UUID
    product_id: UUID
    product_code: str
    product_name: str
    batch_number: str
    expiry_date: date
    days_until_expiry: int
    quantity: int
    value: Decimal


@dataclass
class BatchExpiryReport:
    check_date: date
    expiring_within: dict[int, int]
    expired_batches: int
    critical_batches: list[CriticalBatch] = field(default_factory=list)


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


class ExpiryReportService:

    @staticmethod
    async def _count_active(db: AsyncSession, *conditions) -> int:
        result = await db.execute(
            select(func.count(ProductBatch.id)).where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                *conditions,
            )
        )
        return result.scalar() or 0

    @staticmethod
    async def _active_value(db: AsyncSession, *conditions) -> Decimal:
        result = await db.execute(
            select(func.coalesce(func.sum(_batch_value), 0)).where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                *conditions,
            )
        )
        return _money(result.scalar())

    @staticmethod
    async def critical_batches(
        db: AsyncSession,
        today: date | None = None,
        limit: int | None = None,
    ) -> list[CriticalBatch]:
        """Stocked ACTIVE batches expiring within a week, soonest first."""
        today = today or date.today()
        stmt = (
            select(ProductBatch, Product.code, Product.name)
            .join(Product, Product.id == ProductBatch.product_id)
            .where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                ProductBatch.quantity > 0,
                ProductBatch.expiry_date >= today,
                ProductBatch.expiry_date <= today + timedelta(days=CRITICAL_WINDOW_DAYS),
            )
            .order_by(ProductBatch.expiry_date, ProductBatch.batch_number)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await db.execute(stmt)).all()
        return [
            CriticalBatch(
                batch_id=batch.id,
                product_id=batch.product_id,
                product_code=code,
                product_name=name,
                batch_number=batch.batch_number,
                expiry_date=batch.expiry_date,
                days_until_expiry=(batch.expiry_date - today).days,
                quantity=batch.quantity,
                value=_money((batch.cost_per_unit or 0) * batch.quantity),
            )
            for batch, code, name in rows
        ]

    @staticmethod
    async def batch_expiry_report(db: AsyncSession, today: date | None = None) -> BatchExpiryReport:
        """Stocked batches expiring within 7/30/60/90 days, expired-but-active count, critical list."""
        today = today or date.today()
        expiring_within = {}
        for days in REPORT_WINDOWS:
            expiring_within[days] = await ExpiryReportService._count_active(
                db,
                ProductBatch.quantity > 0,
                ProductBatch.expiry_date >= today,
                ProductBatch.expiry_date <= today + timedelta(days=days),
            )
        expired = await ExpiryReportService._count_active(db, ProductBatch.expiry_date < today)
        return BatchExpiryReport(
            check_date=today,
            expiring_within=expiring_within,
            expired_batches=expired,
            critical_batches=await ExpiryReportService.critical_batches(db, today),
        )

    @staticmethod
    async def open_alerts_by_severity(db: AsyncSession) -> dict[str, int]:
        result = await db.execute(
            select(AlertTierConfig.severity, func.count(ExpiryAlert.id))
            .join(AlertTierConfig, AlertTierConfig.id == ExpiryAlert.config_id)
            .where(ExpiryAlert.status.in_(OPEN_ALERT_STATUSES))
            .group_by(AlertTierConfig.severity)
        )
        counts = {s.value: 0 for s in AlertSeverity}
        for severity, count in result.all():
            counts[severity] = count
        return counts

    @staticmethod
    async def expiry_summary(db: AsyncSession, today: date | None = None) -> dict:
        """Dashboard snapshot: exposure counts, value at risk, alert and quarantine backlog, last check."""
        today = today or date.today()
        count = ExpiryReportService._count_active
        week = today + timedelta(days=CRITICAL_WINDOW_DAYS)
        month = today + timedelta(days=VALUE_AT_RISK_DAYS)

        quarantine = await QuarantineService.summary(db)
        latest = await ExpiryCheckOrchestrator.history(db, limit=1)
        summary = {
            "check_date": today,
            "expired_count": await count(db, ProductBatch.expiry_date < today),
            "expiring_today_count": await count(db, ProductBatch.quantity > 0, ProductBatch.expiry_date == today),
            "expiring_this_week_count": await count(
                db, ProductBatch.quantity > 0, ProductBatch.expiry_date >= today, ProductBatch.expiry_date <= week
            ),
            "expiring_this_month_count": await count(
                db, ProductBatch.quantity > 0, ProductBatch.expiry_date >= today, ProductBatch.expiry_date <= month
            ),
            "value_at_risk": await ExpiryReportService._active_value(
                db, ProductBatch.expiry_date >= today, ProductBatch.expiry_date <= month
            ),
            "expired_value": await ExpiryReportService._active_value(db, ProductBatch.expiry_date < today),
            "open_alerts_by_severity": await ExpiryReportService.open_alerts_by_severity(db),
            "alerts_by_status": await ExpiryAlertService.count_by_status(db),
            "open_quarantine_cases": quarantine["open_cases"],
            "pending_review_count": quarantine["by_status"][QuarantineStatus.PENDING_REVIEW.value],
            "critical_items": await ExpiryReportService.critical_batches(db, today, limit=5),
            "last_check_time": latest[0].start_time if latest else None,
            "last_check_status": latest[0].status if latest else None,
        }
        logger.debug(
            "Expiry summary %s: %d expired, %d expiring this week, value at risk %s",
            today, summary["expired_count"], summary["expiring_this_week_count"], summary["value_at_risk"],
        )
        return summary

"""MedStock — ExpiryAlertService: dedupe, persist and advance expiry alerts."""
import logging
from datetime import date, datetime, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.config import get_settings
from medstock.core.errors import InvalidStateError, NotFoundError
from medstock.models.expiry import (
    ALERT_TRANSITIONS,
    OPEN_ALERT_STATUSES,
    AlertSeverity,
    AlertStatus,
    AlertTierConfig,
    ExpiryAlert,
)
from medstock.models.inventory import BatchStatus, ProductBatch
from medstock.services.expiry_evaluator import AlertCandidate
from medstock.services.notification_gateway import EVENT_BATCH_EXPIRED, NotificationGateway, safe_notify

logger = logging.getLogger(__name__)


def _append_note(existing: str | None, label: str, notes: str | None) -> str | None:
    if not notes or not notes.strip():
        return existing
    line = f"{label}: {notes.strip()}"
    return f"{existing}\n{line}" if existing else line


def _ensure_transition(alert: ExpiryAlert, target: AlertStatus) -> None:
    current = AlertStatus(alert.status)
    if target not in ALERT_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Alert {alert.id} cannot move from {current.value} to {target.value}",
            current_state=current.value,
        )


class ExpiryAlertService:
    """Alert persistence and the PENDING → SENT → ACKNOWLEDGED → RESOLVED lifecycle."""

    @staticmethod
    async def find_open(db: AsyncSession, batch_id: UUID, config_id: UUID) -> ExpiryAlert | None:
        result = await db.execute(
            select(ExpiryAlert).where(
                ExpiryAlert.batch_id == batch_id,
                ExpiryAlert.config_id == config_id,
                ExpiryAlert.status.in_(OPEN_ALERT_STATUSES),
            )
        )
        return result.scalars().first()

    @staticmethod
    async def record_candidate(
        db: AsyncSession,
        candidate: AlertCandidate,
        check_date: date,
        check_run_id: UUID | None = None,
    ) -> tuple[ExpiryAlert, bool]:
        """Insert a PENDING alert unless one is already open for (batch, tier).

        Returns ``(alert, created)``; on a duplicate the existing alert comes
        back with ``created=False`` and nothing is written.
        """
        existing = await ExpiryAlertService.find_open(db, candidate.item.batch_id, candidate.tier.id)
        if existing:
            return existing, False

        alert = ExpiryAlert(
            product_id=candidate.item.product_id,
            batch_id=candidate.item.batch_id,
            config_id=candidate.tier.id,
            check_run_id=check_run_id,
            batch_number=candidate.item.batch_number,
            alert_date=check_date,
            expiry_date=candidate.item.expiry_date,
            quantity_affected=candidate.item.quantity,
            status=AlertStatus.PENDING.value,
        )
        db.add(alert)
        await db.flush()
        return alert, True

    @staticmethod
    async def mark_sent(db: AsyncSession, alert: ExpiryAlert) -> ExpiryAlert:
        if alert.status != AlertStatus.PENDING.value:
            raise InvalidStateError(
                f"Only PENDING alerts can be marked sent (alert {alert.id})",
                current_state=alert.status,
            )
        alert.status = AlertStatus.SENT.value
        await db.flush()
        return alert

    @staticmethod
    async def get(db: AsyncSession, alert_id: UUID) -> ExpiryAlert:
        alert = await db.get(ExpiryAlert, alert_id)
        if not alert:
            raise NotFoundError("ExpiryAlert", alert_id)
        return alert

    @staticmethod
    async def acknowledge(db: AsyncSession, alert_id: UUID, by: str, notes: str | None = None) -> ExpiryAlert:
        alert = await ExpiryAlertService.get(db, alert_id)
        _ensure_transition(alert, AlertStatus.ACKNOWLEDGED)
        alert.status = AlertStatus.ACKNOWLEDGED.value
        alert.acknowledged_by = by
        alert.acknowledged_at = datetime.now(timezone.utc)
        alert.notes = _append_note(alert.notes, "Acknowledged", notes)
        await db.flush()
        logger.info("Alert %s acknowledged by %s", alert.id, by)
        return alert

    @staticmethod
    async def resolve(db: AsyncSession, alert_id: UUID, by: str, notes: str | None = None) -> ExpiryAlert:
        alert = await ExpiryAlertService.get(db, alert_id)
        _ensure_transition(alert, AlertStatus.RESOLVED)
        alert.status = AlertStatus.RESOLVED.value
        alert.resolved_at = datetime.now(timezone.utc)
        alert.notes = _append_note(alert.notes, "Resolved", notes)
        await db.flush()
        logger.info("Alert %s resolved by %s", alert.id, by)
        return alert

    @staticmethod
    async def list_alerts(
        db: AsyncSession,
        status: AlertStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[ExpiryAlert], int]:
        """Paginated list, newest alert_date first. Returns (items, total_count)."""
        stmt = select(ExpiryAlert)
        count_stmt = select(func.count(ExpiryAlert.id))
        if status is not None:
            stmt = stmt.where(ExpiryAlert.status == status.value)
            count_stmt = count_stmt.where(ExpiryAlert.status == status.value)

        total = (await db.execute(count_stmt)).scalar() or 0
        result = await db.execute(
            stmt.order_by(ExpiryAlert.alert_date.desc(), ExpiryAlert.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def critical_alerts(db: AsyncSession, limit: int = 10) -> list[ExpiryAlert]:
        """Unacknowledged alerts on CRITICAL tiers, soonest expiry first."""
        result = await db.execute(
            select(ExpiryAlert)
            .join(AlertTierConfig, AlertTierConfig.id == ExpiryAlert.config_id)
            .where(
                AlertTierConfig.severity == AlertSeverity.CRITICAL.value,
                ExpiryAlert.status.in_((AlertStatus.PENDING.value, AlertStatus.SENT.value)),
            )
            .order_by(ExpiryAlert.expiry_date, ExpiryAlert.alert_date)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_by_status(db: AsyncSession) -> dict[str, int]:
        result = await db.execute(
            select(ExpiryAlert.status, func.count(ExpiryAlert.id)).group_by(ExpiryAlert.status)
        )
        counts = {s.value: 0 for s in AlertStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    @staticmethod
    async def mark_expired_batches(
        db: AsyncSession,
        gateway: NotificationGateway,
        today: date | None = None,
    ) -> int:
        """Flip ACTIVE batches past their expiry date to EXPIRED. Quantity is kept."""
        today = today or date.today()
        result = await db.execute(
            select(ProductBatch).where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                ProductBatch.expiry_date < today,
            )
        )
        batches = list(result.scalars().all())
        for batch in batches:
            batch.status = BatchStatus.EXPIRED.value
        await db.commit()

        roles = get_settings().QUARANTINE_NOTIFY_ROLES
        for batch in batches:
            await safe_notify(
                gateway,
                roles,
                EVENT_BATCH_EXPIRED,
                {
                    "batch_id": str(batch.id),
                    "product_id": str(batch.product_id),
                    "batch_number": batch.batch_number,
                    "expiry_date": batch.expiry_date.isoformat(),
                    "quantity": batch.quantity,
                },
            )
        if batches:
            logger.info("Marked %d batch(es) expired as of %s", len(batches), today)
        return len(batches)

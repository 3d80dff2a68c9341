"""MedStock — QuarantineService: quarantine cases from discovery to disposal or return.

Each transition is its own transaction: the case row is locked, the move is
checked against ``QUARANTINE_TRANSITIONS``, the audit row is added and the
whole thing commits together. The ``version`` column catches writers that got
past the lock (SQLite has no FOR UPDATE).
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from medstock.config import get_settings
from medstock.core.errors import ConflictError, IllegalTransitionError, InvalidStateError, NotFoundError, ValidationError
from medstock.models.inventory import BatchStatus, ProductBatch
from medstock.models.quarantine import (
    QUARANTINE_TRANSITIONS,
    TERMINAL_QUARANTINE_STATUSES,
    QuarantineAction,
    QuarantineCase,
    QuarantineStatus,
)
from medstock.services import quarantine_audit
from medstock.services.notification_gateway import (
    EVENT_QUARANTINE_CREATED,
    NotificationGateway,
    quarantine_event,
    safe_notify,
)

logger = logging.getLogger(__name__)

SYSTEM_USER = "SYSTEM"
AUTO_QUARANTINE_REASON = "Auto-quarantine: Expired"


def _append_note(existing: str | None, label: str, comments: str | None) -> str | None:
    if not comments or not comments.strip():
        return existing
    line = f"{label}: {comments.strip()}"
    return f"{existing}\n{line}" if existing else line


def days_in_quarantine(case: QuarantineCase, today: date | None = None) -> int:
    return ((today or date.today()) - case.quarantine_date).days


def _case_payload(case: QuarantineCase, **extra) -> dict:
    payload = {
        "case_id": str(case.id),
        "batch_id": str(case.batch_id),
        "product_id": str(case.product_id),
        "status": case.status,
        "quantity": case.quantity_quarantined,
        "estimated_loss": str(case.estimated_loss),
    }
    payload.update(extra)
    return payload


class QuarantineService:
    """Case creation, the review/approval/disposal state machine and the expired-stock sweep."""

    @staticmethod
    async def _open_case(
        db: AsyncSession,
        batch: ProductBatch,
        reason: str,
        by: str,
        quarantine_date: date,
    ) -> QuarantineCase:
        if batch.status == BatchStatus.QUARANTINED.value:
            raise InvalidStateError(
                f"Batch {batch.batch_number} is already quarantined",
                current_state=batch.status,
            )
        cost = batch.cost_per_unit if batch.cost_per_unit is not None else Decimal("0")
        case = QuarantineCase(
            batch_id=batch.id,
            product_id=batch.product_id,
            quantity_quarantined=batch.quantity,
            reason=reason,
            quarantine_date=quarantine_date,
            quarantined_by=by,
            status=QuarantineStatus.PENDING_REVIEW.value,
            estimated_loss=(cost * batch.quantity).quantize(Decimal("0.01")),
        )
        batch.status = BatchStatus.QUARANTINED.value
        db.add(case)
        await db.flush()
        quarantine_audit.log_action(
            db,
            case.id,
            QuarantineAction.QUARANTINE.value,
            by,
            None,
            QuarantineStatus.PENDING_REVIEW.value,
            reason,
        )
        await db.flush()
        return case

    @staticmethod
    async def create_case(
        db: AsyncSession,
        gateway: NotificationGateway,
        batch_id: UUID,
        reason: str,
        by: str,
        quarantine_date: date | None = None,
    ) -> QuarantineCase:
        batch = await db.get(ProductBatch, batch_id)
        if not batch:
            raise NotFoundError("ProductBatch", batch_id)
        case = await QuarantineService._open_case(db, batch, reason, by, quarantine_date or date.today())
        await db.commit()
        logger.info("Batch %s quarantined as case %s by %s: %s", batch.batch_number, case.id, by, reason)

        await safe_notify(
            gateway,
            get_settings().QUARANTINE_NOTIFY_ROLES,
            EVENT_QUARANTINE_CREATED,
            _case_payload(case, batch_number=batch.batch_number, reason=reason),
        )
        return case

    @staticmethod
    def _validate_payload(
        action: QuarantineAction,
        disposal_method: str | None,
        disposal_certificate: str | None,
    ) -> None:
        settings = get_settings()
        errors = []
        if (
            action == QuarantineAction.DISPOSE
            and settings.QUARANTINE_CERTIFICATE_REQUIRED
            and not (disposal_certificate and disposal_certificate.strip())
        ):
            errors.append({"field": "disposal_certificate", "message": "required for disposal"})
        if disposal_method is not None and disposal_method not in settings.QUARANTINE_DISPOSAL_METHODS:
            errors.append(
                {
                    "field": "disposal_method",
                    "message": f"must be one of: {', '.join(settings.QUARANTINE_DISPOSAL_METHODS)}",
                }
            )
        if errors:
            raise ValidationError("Invalid quarantine action payload", field_errors=errors)

    @staticmethod
    async def process_action(
        db: AsyncSession,
        gateway: NotificationGateway,
        case_id: UUID,
        action: QuarantineAction | str,
        by: str,
        comments: str | None = None,
        disposal_method: str | None = None,
        disposal_certificate: str | None = None,
        return_reference: str | None = None,
    ) -> QuarantineCase:
        """Advance a case by one action. Illegal moves leave case and audit log untouched."""
        try:
            action = QuarantineAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown quarantine action '{action}'",
                field_errors=[{"field": "action", "message": "unknown action"}],
            )

        result = await db.execute(select(QuarantineCase).where(QuarantineCase.id == case_id).with_for_update())
        case = result.scalar_one_or_none()
        if not case:
            raise NotFoundError("QuarantineCase", case_id)

        previous = QuarantineStatus(case.status)
        target = QUARANTINE_TRANSITIONS.get((previous, action))
        if target is None:
            raise IllegalTransitionError(previous.value, action.value)
        QuarantineService._validate_payload(action, disposal_method, disposal_certificate)

        now = datetime.now(timezone.utc)
        if action == QuarantineAction.REVIEW:
            case.reviewed_by = by
            case.review_date = now
        elif action == QuarantineAction.DISPOSE:
            case.disposal_date = now
            case.disposal_method = disposal_method
            case.disposal_certificate = disposal_certificate
        elif action == QuarantineAction.RETURN:
            case.return_date = now
            case.return_reference = return_reference
        case.notes = _append_note(case.notes, action.value, comments)
        case.status = target.value

        if action in (QuarantineAction.DISPOSE, QuarantineAction.RETURN):
            batch = await db.get(ProductBatch, case.batch_id)
            if batch:
                batch.quantity = 0
                batch.status = BatchStatus.EXPIRED.value

        quarantine_audit.log_action(db, case.id, action.value, by, previous.value, target.value, comments)
        try:
            await db.commit()
        except StaleDataError as exc:
            await db.rollback()
            raise ConflictError(
                f"Quarantine case {case_id} was modified concurrently; reload and retry",
                case_id=str(case_id),
            ) from exc
        logger.info("Quarantine case %s: %s %s -> %s by %s", case.id, action.value, previous.value, target.value, by)

        await safe_notify(
            gateway,
            get_settings().QUARANTINE_NOTIFY_ROLES,
            quarantine_event(action.value),
            _case_payload(case, action=action.value, previous_status=previous.value, performed_by=by),
        )
        return case

    @staticmethod
    async def auto_quarantine_expired(
        db: AsyncSession,
        gateway: NotificationGateway,
        check_date: date | None = None,
    ) -> dict[str, int]:
        """Quarantine every ACTIVE batch already past expiry, one savepoint per batch.

        Batches are fetched in chunks of AUTO_QUARANTINE_BATCH_SIZE until none
        remain. A batch that fails stays ACTIVE and is excluded from later chunks.
        """
        settings = get_settings()
        if not settings.AUTO_QUARANTINE_ENABLED:
            logger.info("Auto-quarantine disabled; skipping sweep")
            return {"quarantined": 0, "failed": 0}

        check_date = check_date or date.today()
        created: list[tuple[QuarantineCase, str]] = []
        failed_ids: set[UUID] = set()
        while True:
            stmt = (
                select(ProductBatch)
                .where(
                    ProductBatch.status == BatchStatus.ACTIVE.value,
                    ProductBatch.expiry_date < check_date,
                )
                .order_by(ProductBatch.expiry_date, ProductBatch.id)
                .limit(settings.AUTO_QUARANTINE_BATCH_SIZE)
            )
            if failed_ids:
                stmt = stmt.where(ProductBatch.id.not_in(failed_ids))
            batches = list((await db.execute(stmt)).scalars().all())
            if not batches:
                break

            for batch in batches:
                batch_id = batch.id
                batch_number = batch.batch_number
                try:
                    async with db.begin_nested():
                        case = await QuarantineService._open_case(
                            db, batch, AUTO_QUARANTINE_REASON, SYSTEM_USER, check_date
                        )
                    await db.commit()
                except Exception as exc:
                    failed_ids.add(batch_id)
                    logger.error("Auto-quarantine failed for batch %s: %s", batch_number, exc)
                    continue
                created.append((case, batch_number))

        for case, batch_number in created:
            await safe_notify(
                gateway,
                settings.QUARANTINE_NOTIFY_ROLES,
                EVENT_QUARANTINE_CREATED,
                _case_payload(case, batch_number=batch_number, reason=AUTO_QUARANTINE_REASON),
            )
        logger.info("Auto-quarantine %s: %d quarantined, %d failed", check_date, len(created), len(failed_ids))
        return {"quarantined": len(created), "failed": len(failed_ids)}

    # ── Queries ───────────────────────────────────────────────────────────────

    @staticmethod
    async def get_case(db: AsyncSession, case_id: UUID) -> QuarantineCase:
        case = await db.get(QuarantineCase, case_id)
        if not case:
            raise NotFoundError("QuarantineCase", case_id)
        return case

    @staticmethod
    async def list_cases(
        db: AsyncSession,
        status: QuarantineStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[QuarantineCase], int]:
        stmt = select(QuarantineCase)
        count_stmt = select(func.count(QuarantineCase.id))
        if status is not None:
            stmt = stmt.where(QuarantineCase.status == status.value)
            count_stmt = count_stmt.where(QuarantineCase.status == status.value)
        total = (await db.execute(count_stmt)).scalar() or 0
        result = await db.execute(
            stmt.order_by(QuarantineCase.quarantine_date.desc(), QuarantineCase.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def pending_review(db: AsyncSession) -> list[QuarantineCase]:
        result = await db.execute(
            select(QuarantineCase)
            .where(QuarantineCase.status == QuarantineStatus.PENDING_REVIEW.value)
            .order_by(QuarantineCase.quarantine_date, QuarantineCase.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def summary(db: AsyncSession) -> dict:
        result = await db.execute(
            select(
                QuarantineCase.status,
                func.count(QuarantineCase.id),
                func.coalesce(func.sum(QuarantineCase.quantity_quarantined), 0),
                func.coalesce(func.sum(QuarantineCase.estimated_loss), 0),
            ).group_by(QuarantineCase.status)
        )
        by_status = {s.value: 0 for s in QuarantineStatus}
        total_cases = 0
        total_quantity = 0
        total_loss = Decimal("0")
        for status, count, quantity, loss in result.all():
            by_status[status] = count
            total_cases += count
            total_quantity += int(quantity)
            total_loss += Decimal(str(loss))
        open_cases = sum(
            count for status, count in by_status.items()
            if QuarantineStatus(status) not in TERMINAL_QUARANTINE_STATUSES
        )
        return {
            "by_status": by_status,
            "total_cases": total_cases,
            "open_cases": open_cases,
            "total_quantity": total_quantity,
            "total_estimated_loss": total_loss.quantize(Decimal("0.01")),
        }

"""MedStock — Expiry check orchestrator.

A run is a persisted row: RUNNING while the sweep is in progress, then
COMPLETED or FAILED. The partial unique index on RUNNING rows is what keeps two
processes from sweeping at once; the in-process checks below only turn the
common cases into friendly errors before hitting it.
"""
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.config import get_settings
from medstock.core.errors import AlreadyRunError, CheckExecutionError, NotFoundError
from medstock.models.expiry import (
    CHECK_RUN_TRANSITIONS,
    AlertSeverity,
    CheckRunStatus,
    CheckTrigger,
    ExpiryAlert,
    ExpiryCheckRun,
)
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.expiry_evaluator import AlertCandidate, ExpiryEvaluator
from medstock.services.notification_gateway import (
    EVENT_EXPIRY_CHECK_SUMMARY,
    NotificationGateway,
    expiry_event,
    safe_notify,
)

logger = logging.getLogger(__name__)

DAYS_RANGES: tuple[tuple[str, int, int | None], ...] = (
    ("0-7 days", 0, 7),
    ("8-30 days", 8, 30),
    ("31-60 days", 31, 60),
    ("61-90 days", 61, 90),
    ("91+ days", 91, None),
)


def days_range_label(days: int) -> str:
    for label, low, high in DAYS_RANGES:
        if days >= low and (high is None or days <= high):
            return label
    return DAYS_RANGES[0][0]


@dataclass
class CheckRunResult:
    run_id: UUID
    check_date: date
    status: str
    triggered_by: str
    items_checked: int = 0
    alerts_generated: int = 0
    duplicates_skipped: int = 0
    errors: int = 0
    execution_time_ms: int = 0
    alerts_by_severity: dict[str, int] = field(default_factory=dict)
    alerts_by_days_range: dict[str, int] = field(default_factory=dict)


class ExpiryCheckOrchestrator:
    """Runs the daily expiry sweep and owns the check-run log."""

    # ── Triggers ──────────────────────────────────────────────────────────────

    @staticmethod
    async def run_manual(
        db: AsyncSession,
        gateway: NotificationGateway,
        check_date: date | None = None,
    ) -> CheckRunResult:
        """User-triggered run. Refused once a run for the date has completed."""
        check_date = check_date or date.today()
        await ExpiryCheckOrchestrator.reap_stale_runs(db)
        await ExpiryCheckOrchestrator._refuse_if_running(db)

        completed = (
            await db.execute(
                select(ExpiryCheckRun)
                .where(
                    ExpiryCheckRun.check_date == check_date,
                    ExpiryCheckRun.status == CheckRunStatus.COMPLETED.value,
                )
                .limit(1)
            )
        ).scalars().first()
        if completed:
            raise AlreadyRunError(
                f"Expiry check already completed for {check_date.isoformat()}",
                current_state=CheckRunStatus.COMPLETED.value,
                run_id=str(completed.id),
            )
        return await ExpiryCheckOrchestrator._execute(db, gateway, check_date, CheckTrigger.MANUAL)

    @staticmethod
    async def run_scheduled(
        db: AsyncSession,
        gateway: NotificationGateway,
        check_date: date | None = None,
    ) -> CheckRunResult:
        """Beat-triggered run. Proceeds even if a manual run already completed today."""
        check_date = check_date or date.today()
        await ExpiryCheckOrchestrator.reap_stale_runs(db)
        await ExpiryCheckOrchestrator._refuse_if_running(db)
        return await ExpiryCheckOrchestrator._execute(db, gateway, check_date, CheckTrigger.SCHEDULED)

    @staticmethod
    async def run_force(
        db: AsyncSession,
        gateway: NotificationGateway,
        check_date: date | None = None,
    ) -> CheckRunResult:
        """Administrator re-run that ignores earlier completed runs for the date."""
        check_date = check_date or date.today()
        await ExpiryCheckOrchestrator.reap_stale_runs(db)
        await ExpiryCheckOrchestrator._refuse_if_running(db)
        logger.warning("Forced expiry check requested for %s", check_date)
        return await ExpiryCheckOrchestrator._execute(db, gateway, check_date, CheckTrigger.FORCE)

    # ── Guards ────────────────────────────────────────────────────────────────

    @staticmethod
    async def reap_stale_runs(db: AsyncSession, now: datetime | None = None) -> int:
        """Fail RUNNING rows older than EXPIRY_CHECK_STALE_MINUTES. Returns how many."""
        minutes = get_settings().EXPIRY_CHECK_STALE_MINUTES
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=minutes)
        result = await db.execute(
            select(ExpiryCheckRun).where(
                ExpiryCheckRun.status == CheckRunStatus.RUNNING.value,
                ExpiryCheckRun.start_time < cutoff,
            )
        )
        stale = list(result.scalars().all())
        for run in stale:
            run.status = CheckRunStatus.FAILED.value
            run.end_time = now
            run.error_message = f"Check timed out after {minutes} minutes"
            logger.warning("Reaped stale expiry check run %s (started %s)", run.id, run.start_time)
        if stale:
            await db.commit()
        return len(stale)

    @staticmethod
    async def _refuse_if_running(db: AsyncSession) -> None:
        running = (
            await db.execute(
                select(ExpiryCheckRun).where(ExpiryCheckRun.status == CheckRunStatus.RUNNING.value).limit(1)
            )
        ).scalars().first()
        if running:
            raise AlreadyRunError(
                "An expiry check is already running",
                current_state=CheckRunStatus.RUNNING.value,
                run_id=str(running.id),
            )

    # ── Execution ─────────────────────────────────────────────────────────────

    @staticmethod
    async def _start_run(db: AsyncSession, check_date: date, trigger: CheckTrigger) -> ExpiryCheckRun:
        run = ExpiryCheckRun(
            check_date=check_date,
            start_time=datetime.now(timezone.utc),
            status=CheckRunStatus.RUNNING.value,
            triggered_by=trigger.value,
        )
        db.add(run)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise AlreadyRunError(
                "An expiry check is already running",
                current_state=CheckRunStatus.RUNNING.value,
            ) from exc
        return run

    @staticmethod
    async def _finish_run(db: AsyncSession, run: ExpiryCheckRun, target: CheckRunStatus, **values) -> bool:
        """Move a run out of RUNNING. False if another process already closed it.

        The write is conditional on the row still being RUNNING, so a run the
        reaper has failed stays FAILED even if its worker finishes later.
        """
        if target not in CHECK_RUN_TRANSITIONS[CheckRunStatus.RUNNING]:
            raise ValueError(f"{target.value} is not a terminal check run status")
        result = await db.execute(
            update(ExpiryCheckRun)
            .where(
                ExpiryCheckRun.id == run.id,
                ExpiryCheckRun.status == CheckRunStatus.RUNNING.value,
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(run)
        if result.rowcount == 0:
            logger.warning(
                "Expiry check %s was closed as %s by another process; keeping that status",
                run.id, run.status,
            )
            return False
        return True

    @staticmethod
    async def _execute(
        db: AsyncSession,
        gateway: NotificationGateway,
        check_date: date,
        trigger: CheckTrigger,
    ) -> CheckRunResult:
        run = await ExpiryCheckOrchestrator._start_run(db, check_date, trigger)
        run_id = run.id
        started = time.monotonic()
        logger.info("Expiry check %s started for %s (%s)", run_id, check_date, trigger.value)

        new_alerts: list[tuple[ExpiryAlert, AlertCandidate]] = []
        duplicates = 0
        errors = 0
        try:
            tiers = await ExpiryEvaluator.load_active_tiers(db)
            items = await ExpiryEvaluator.load_eligible_items(db)
            report = ExpiryEvaluator.evaluate(check_date, tiers, items)

            for candidate in report.candidates:
                try:
                    async with db.begin_nested():
                        alert, created = await ExpiryAlertService.record_candidate(
                            db, candidate, check_date, check_run_id=run_id
                        )
                    await db.commit()
                except Exception as exc:
                    errors += 1
                    logger.error(
                        "Expiry check %s: failed to record alert for batch %s: %s",
                        run_id, candidate.item.batch_number, exc,
                    )
                    continue
                if created:
                    new_alerts.append((alert, candidate))
                else:
                    duplicates += 1

            elapsed_ms = int((time.monotonic() - started) * 1000)
            completed = await ExpiryCheckOrchestrator._finish_run(
                db,
                run,
                CheckRunStatus.COMPLETED,
                end_time=datetime.now(timezone.utc),
                items_checked=report.items_processed,
                alerts_generated=len(new_alerts),
                duplicates_skipped=duplicates,
                errors_encountered=errors,
                execution_time_ms=elapsed_ms,
            )
        except Exception as exc:
            await ExpiryCheckOrchestrator._fail_run(db, run_id, exc, started)
            raise CheckExecutionError(f"Expiry check failed: {exc}", run_id=run_id) from exc

        if completed:
            logger.info(
                "Expiry check %s completed: %d items, %d new alerts, %d duplicates, %d errors in %d ms",
                run_id, report.items_processed, len(new_alerts), duplicates, errors, elapsed_ms,
            )

        # Alerts recorded by an abandoned run are real; only the summary is skipped
        await ExpiryCheckOrchestrator._notify(db, gateway, run, new_alerts, summarize=completed)

        severity_counts = Counter(candidate.tier.severity for _, candidate in new_alerts)
        range_counts = Counter(days_range_label(candidate.days_until_expiry) for _, candidate in new_alerts)
        return CheckRunResult(
            run_id=run_id,
            check_date=check_date,
            status=run.status,
            triggered_by=trigger.value,
            items_checked=report.items_processed,
            alerts_generated=len(new_alerts),
            duplicates_skipped=duplicates,
            errors=errors,
            execution_time_ms=elapsed_ms,
            alerts_by_severity={s.value: severity_counts.get(s.value, 0) for s in AlertSeverity},
            alerts_by_days_range={label: range_counts.get(label, 0) for label, _, _ in DAYS_RANGES},
        )

    @staticmethod
    async def _fail_run(db: AsyncSession, run_id: UUID, exc: Exception, started: float) -> None:
        logger.error("Expiry check %s failed: %s", run_id, exc, exc_info=True)
        await db.rollback()
        run = await db.get(ExpiryCheckRun, run_id)
        if run is None:
            return
        await ExpiryCheckOrchestrator._finish_run(
            db,
            run,
            CheckRunStatus.FAILED,
            end_time=datetime.now(timezone.utc),
            error_message=str(exc) or exc.__class__.__name__,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    async def _notify(
        db: AsyncSession,
        gateway: NotificationGateway,
        run: ExpiryCheckRun,
        new_alerts: list[tuple[ExpiryAlert, AlertCandidate]],
        summarize: bool = True,
    ) -> None:
        for alert, candidate in new_alerts:
            accepted = await safe_notify(
                gateway,
                list(candidate.tier.notify_roles),
                expiry_event(candidate.tier.severity),
                {
                    "alert_id": str(alert.id),
                    "batch_id": str(candidate.item.batch_id),
                    "product_id": str(candidate.item.product_id),
                    "batch_number": candidate.item.batch_number,
                    "expiry_date": candidate.item.expiry_date.isoformat(),
                    "days_until_expiry": candidate.days_until_expiry,
                    "quantity": candidate.item.quantity,
                    "tier_name": candidate.tier.tier_name,
                },
            )
            if accepted:
                await ExpiryAlertService.mark_sent(db, alert)
        if new_alerts:
            await db.commit()
        if new_alerts and summarize:
            await safe_notify(
                gateway,
                get_settings().EXPIRY_SUMMARY_ROLES,
                EVENT_EXPIRY_CHECK_SUMMARY,
                {
                    "run_id": str(run.id),
                    "check_date": run.check_date.isoformat(),
                    "items_checked": run.items_checked,
                    "alerts_generated": run.alerts_generated,
                    "duplicates_skipped": run.duplicates_skipped,
                },
            )

    # ── Queries ───────────────────────────────────────────────────────────────

    @staticmethod
    async def history(db: AsyncSession, limit: int = 30) -> list[ExpiryCheckRun]:
        result = await db.execute(
            select(ExpiryCheckRun).order_by(ExpiryCheckRun.start_time.desc()).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_for_date(db: AsyncSession, check_date: date) -> ExpiryCheckRun:
        result = await db.execute(
            select(ExpiryCheckRun)
            .where(ExpiryCheckRun.check_date == check_date)
            .order_by(ExpiryCheckRun.start_time.desc())
            .limit(1)
        )
        run = result.scalars().first()
        if not run:
            raise NotFoundError("ExpiryCheckRun", check_date.isoformat())
        return run

    @staticmethod
    async def today_summary(db: AsyncSession, check_date: date | None = None) -> dict:
        check_date = check_date or date.today()
        result = await db.execute(
            select(ExpiryCheckRun.triggered_by, ExpiryCheckRun.status, func.count(ExpiryCheckRun.id))
            .where(ExpiryCheckRun.check_date == check_date)
            .group_by(ExpiryCheckRun.triggered_by, ExpiryCheckRun.status)
        )
        summary = {
            "check_date": check_date,
            "total_runs": 0,
            "scheduled_runs": 0,
            "manual_runs": 0,
            "completed_runs": 0,
            "failed_runs": 0,
            "latest_run": None,
        }
        for triggered_by, status, count in result.all():
            summary["total_runs"] += count
            if triggered_by == CheckTrigger.SCHEDULED.value:
                summary["scheduled_runs"] += count
            else:
                summary["manual_runs"] += count
            if status == CheckRunStatus.COMPLETED.value:
                summary["completed_runs"] += count
            elif status == CheckRunStatus.FAILED.value:
                summary["failed_runs"] += count
        if summary["total_runs"]:
            summary["latest_run"] = await ExpiryCheckOrchestrator.get_for_date(db, check_date)
        return summary

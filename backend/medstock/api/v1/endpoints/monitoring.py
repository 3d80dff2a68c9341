"""MedStock — Expiry check monitoring endpoints."""
from datetime import date

from fastapi import APIRouter, Depends, Query

from medstock.api.deps import (
    PERM_ALERTS_READ,
    PERM_EXPIRY_CONFIGURE,
    PERM_EXPIRY_RUN,
    CurrentUser,
    DbSession,
    Gateway,
    require_permission,
)
from medstock.schemas.common import ApiResponse
from medstock.schemas.expiry import (
    BatchExpiryReportResponse,
    CheckRunRequest,
    CheckRunResponse,
    CheckRunResultResponse,
    CriticalBatchResponse,
    ExpirySummaryResponse,
    MarkExpiredResponse,
    TodaySummaryResponse,
)
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.check_runner import ExpiryCheckOrchestrator
from medstock.services.expiry_report import ExpiryReportService

router = APIRouter()


@router.post("/check", response_model=ApiResponse[CheckRunResultResponse])
async def run_expiry_check(
    db: DbSession,
    gateway: Gateway,
    body: CheckRunRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_RUN)),
):
    """Manual run. 409 if a run already completed for the date or one is in progress."""
    check_date = body.check_date if body else None
    result = await ExpiryCheckOrchestrator.run_manual(db, gateway, check_date)
    return ApiResponse(data=CheckRunResultResponse.model_validate(result))


@router.post("/check/force", response_model=ApiResponse[CheckRunResultResponse])
async def force_expiry_check(
    db: DbSession,
    gateway: Gateway,
    body: CheckRunRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    """Re-run even if today's check already completed. Admin only."""
    check_date = body.check_date if body else None
    result = await ExpiryCheckOrchestrator.run_force(db, gateway, check_date)
    return ApiResponse(data=CheckRunResultResponse.model_validate(result))


@router.get("/history", response_model=ApiResponse[list[CheckRunResponse]])
async def check_history(
    db: DbSession,
    limit: int = Query(30, ge=1, le=365),
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    runs = await ExpiryCheckOrchestrator.history(db, limit)
    return ApiResponse(data=[CheckRunResponse.model_validate(r) for r in runs])


@router.get("/status/{check_date}", response_model=ApiResponse[CheckRunResponse])
async def check_status(
    check_date: date,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    run = await ExpiryCheckOrchestrator.get_for_date(db, check_date)
    return ApiResponse(data=CheckRunResponse.model_validate(run))


@router.get("/today-summary", response_model=ApiResponse[TodaySummaryResponse])
async def today_summary(db: DbSession, user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ))):
    summary = await ExpiryCheckOrchestrator.today_summary(db)
    latest = summary.pop("latest_run")
    return ApiResponse(
        data=TodaySummaryResponse(
            **summary,
            latest_run=CheckRunResponse.model_validate(latest) if latest else None,
        )
    )


@router.post("/mark-expired", response_model=ApiResponse[MarkExpiredResponse])
async def mark_expired(
    db: DbSession,
    gateway: Gateway,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_RUN)),
):
    """Run the expiry-crossing sweep now instead of waiting for the nightly job."""
    count = await ExpiryAlertService.mark_expired_batches(db, gateway)
    return ApiResponse(data=MarkExpiredResponse(batches_marked=count))


@router.get("/summary", response_model=ApiResponse[ExpirySummaryResponse])
async def expiry_summary(
    db: DbSession,
    as_of: date | None = Query(None, description="Defaults to today"),
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    """Dashboard snapshot: exposure, value at risk, alert and quarantine backlog."""
    summary = await ExpiryReportService.expiry_summary(db, as_of)
    critical = [CriticalBatchResponse.model_validate(c) for c in summary.pop("critical_items")]
    return ApiResponse(data=ExpirySummaryResponse(**summary, critical_items=critical))


@router.get("/batch-report", response_model=ApiResponse[BatchExpiryReportResponse])
async def batch_expiry_report(
    db: DbSession,
    as_of: date | None = Query(None, description="Defaults to today"),
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    report = await ExpiryReportService.batch_expiry_report(db, as_of)
    return ApiResponse(
        data=BatchExpiryReportResponse(
            check_date=report.check_date,
            expiring_within=report.expiring_within,
            expired_batches=report.expired_batches,
            critical_batches=[CriticalBatchResponse.model_validate(c) for c in report.critical_batches],
        )
    )

"""MedStock — Expiry alert endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from medstock.api.deps import PERM_ALERTS_MANAGE, PERM_ALERTS_READ, CurrentUser, DbSession, require_permission
from medstock.config import get_settings
from medstock.models.expiry import AlertStatus
from medstock.schemas.common import ApiResponse, Meta
from medstock.schemas.expiry import AlertActionRequest, ExpiryAlertResponse
from medstock.services.alert_service import ExpiryAlertService

router = APIRouter()


@router.get("", response_model=ApiResponse[list[ExpiryAlertResponse]])
async def list_alerts(
    db: DbSession,
    status: AlertStatus | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int | None = Query(None, ge=1, le=200),
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    page_size = page_size or get_settings().DEFAULT_PAGE_SIZE
    items, total = await ExpiryAlertService.list_alerts(db, status, page, page_size)
    return ApiResponse(
        data=[ExpiryAlertResponse.model_validate(a) for a in items],
        meta=Meta(page=page, page_size=page_size, total_count=total),
    )


@router.get("/counts", response_model=ApiResponse[dict[str, int]])
async def alert_counts(db: DbSession, user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ))):
    """Number of alerts in each status."""
    return ApiResponse(data=await ExpiryAlertService.count_by_status(db))


@router.get("/critical", response_model=ApiResponse[list[ExpiryAlertResponse]])
async def critical_alerts(
    db: DbSession,
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ)),
):
    """Unacknowledged CRITICAL alerts, soonest expiry first."""
    alerts = await ExpiryAlertService.critical_alerts(db, limit)
    return ApiResponse(data=[ExpiryAlertResponse.model_validate(a) for a in alerts])


@router.get("/{id}", response_model=ApiResponse[ExpiryAlertResponse])
async def get_alert(id: UUID, db: DbSession, user: CurrentUser = Depends(require_permission(PERM_ALERTS_READ))):
    alert = await ExpiryAlertService.get(db, id)
    return ApiResponse(data=ExpiryAlertResponse.model_validate(alert))


@router.post("/{id}/acknowledge", response_model=ApiResponse[ExpiryAlertResponse])
async def acknowledge_alert(
    id: UUID,
    db: DbSession,
    body: AlertActionRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_MANAGE)),
):
    alert = await ExpiryAlertService.acknowledge(db, id, user.username, body.notes if body else None)
    return ApiResponse(data=ExpiryAlertResponse.model_validate(alert))


@router.post("/{id}/resolve", response_model=ApiResponse[ExpiryAlertResponse])
async def resolve_alert(
    id: UUID,
    db: DbSession,
    body: AlertActionRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ALERTS_MANAGE)),
):
    alert = await ExpiryAlertService.resolve(db, id, user.username, body.notes if body else None)
    return ApiResponse(data=ExpiryAlertResponse.model_validate(alert))

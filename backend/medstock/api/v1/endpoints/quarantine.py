"""MedStock — Quarantine case endpoints."""
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from medstock.api.deps import (
    PERM_QUARANTINE_MANAGE,
    PERM_QUARANTINE_READ,
    CurrentUser,
    DbSession,
    Gateway,
    require_permission,
)
from medstock.config import get_settings
from medstock.models.quarantine import QuarantineCase, QuarantineStatus
from medstock.schemas.common import ApiResponse, Meta
from medstock.schemas.quarantine import (
    AutoQuarantineResponse,
    QuarantineActionLogResponse,
    QuarantineActionRequest,
    QuarantineCaseResponse,
    QuarantineCreate,
    QuarantineSummaryResponse,
)
from medstock.services import quarantine_audit
from medstock.services.quarantine_service import QuarantineService, days_in_quarantine

router = APIRouter()


def _to_response(case: QuarantineCase, today: date | None = None) -> QuarantineCaseResponse:
    out = QuarantineCaseResponse.model_validate(case)
    out.days_in_quarantine = days_in_quarantine(case, today)
    return out


@router.post("", response_model=ApiResponse[QuarantineCaseResponse], status_code=status.HTTP_201_CREATED)
async def create_case(
    body: QuarantineCreate,
    db: DbSession,
    gateway: Gateway,
    user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_MANAGE)),
):
    case = await QuarantineService.create_case(db, gateway, body.batch_id, body.reason, user.username)
    return ApiResponse(data=_to_response(case))


@router.get("", response_model=ApiResponse[list[QuarantineCaseResponse]])
async def list_cases(
    db: DbSession,
    status: QuarantineStatus | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int | None = Query(None, ge=1, le=200),
    user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_READ)),
):
    page_size = page_size or get_settings().DEFAULT_PAGE_SIZE
    items, total = await QuarantineService.list_cases(db, status, page, page_size)
    today = date.today()
    return ApiResponse(
        data=[_to_response(c, today) for c in items],
        meta=Meta(page=page, page_size=page_size, total_count=total),
    )


@router.get("/pending-review", response_model=ApiResponse[list[QuarantineCaseResponse]])
async def pending_review(db: DbSession, user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_READ))):
    """Cases waiting for a reviewer, oldest first."""
    today = date.today()
    return ApiResponse(data=[_to_response(c, today) for c in await QuarantineService.pending_review(db)])


@router.get("/summary", response_model=ApiResponse[QuarantineSummaryResponse])
async def quarantine_summary(db: DbSession, user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_READ))):
    return ApiResponse(data=QuarantineSummaryResponse(**await QuarantineService.summary(db)))


@router.post("/auto-quarantine", response_model=ApiResponse[AutoQuarantineResponse])
async def auto_quarantine(
    db: DbSession,
    gateway: Gateway,
    user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_MANAGE)),
):
    """Quarantine every ACTIVE batch past its expiry date now."""
    result = await QuarantineService.auto_quarantine_expired(db, gateway)
    return ApiResponse(data=AutoQuarantineResponse(**result))


@router.get("/{id}", response_model=ApiResponse[QuarantineCaseResponse])
async def get_case(id: UUID, db: DbSession, user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_READ))):
    return ApiResponse(data=_to_response(await QuarantineService.get_case(db, id)))


@router.post("/{id}/actions", response_model=ApiResponse[QuarantineCaseResponse])
async def process_action(
    id: UUID,
    body: QuarantineActionRequest,
    db: DbSession,
    gateway: Gateway,
    user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_MANAGE)),
):
    """Advance the case: REVIEW, APPROVE_DISPOSAL, APPROVE_RETURN, DISPOSE or RETURN."""
    case = await QuarantineService.process_action(
        db,
        gateway,
        id,
        body.action,
        user.username,
        comments=body.comments,
        disposal_method=body.disposal_method,
        disposal_certificate=body.disposal_certificate,
        return_reference=body.return_reference,
    )
    return ApiResponse(data=_to_response(case))


@router.get("/{id}/history", response_model=ApiResponse[list[QuarantineActionLogResponse]])
async def case_history(id: UUID, db: DbSession, user: CurrentUser = Depends(require_permission(PERM_QUARANTINE_READ))):
    await QuarantineService.get_case(db, id)
    entries = await quarantine_audit.history(db, id)
    return ApiResponse(data=[QuarantineActionLogResponse.model_validate(e) for e in entries])

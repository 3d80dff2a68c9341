"""MedStock — Expiry alert tier endpoints."""
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from medstock.api.deps import PERM_EXPIRY_CONFIGURE, CurrentUser, DbSession, require_auth, require_permission
from medstock.schemas.common import ApiResponse
from medstock.schemas.expiry import (
    AffectedBatchCount,
    AlertTierCreate,
    AlertTierResponse,
    AlertTierUpdate,
    TierReorderRequest,
)
from medstock.services.tier_registry import AlertTierService

router = APIRouter()


@router.get("", response_model=ApiResponse[list[AlertTierResponse]])
async def list_tiers(db: DbSession, user: CurrentUser = Depends(require_auth)):
    """All tiers in ladder order, active or not."""
    tiers = await AlertTierService.list_all(db)
    return ApiResponse(data=[AlertTierResponse.model_validate(t) for t in tiers])


@router.get("/active", response_model=ApiResponse[list[AlertTierResponse]])
async def list_active_tiers(db: DbSession, user: CurrentUser = Depends(require_auth)):
    tiers = await AlertTierService.list_active(db)
    return ApiResponse(data=[AlertTierResponse.model_validate(t) for t in tiers])


@router.get("/role/{role}", response_model=ApiResponse[list[AlertTierResponse]])
async def list_tiers_for_role(role: str, db: DbSession, user: CurrentUser = Depends(require_auth)):
    """Active tiers that notify the given role."""
    tiers = await AlertTierService.list_for_role(db, role)
    return ApiResponse(data=[AlertTierResponse.model_validate(t) for t in tiers])


@router.post("", response_model=ApiResponse[AlertTierResponse], status_code=status.HTTP_201_CREATED)
async def create_tier(
    body: AlertTierCreate,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    tier = await AlertTierService.create(db, body.model_dump())
    return ApiResponse(data=AlertTierResponse.model_validate(tier))


@router.put("/reorder", response_model=ApiResponse[list[AlertTierResponse]])
async def reorder_tiers(
    body: TierReorderRequest,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    """Assign sort order 1..n following the given id list."""
    tiers = await AlertTierService.reorder(db, body.tier_ids)
    return ApiResponse(data=[AlertTierResponse.model_validate(t) for t in tiers])


@router.get("/{id}", response_model=ApiResponse[AlertTierResponse])
async def get_tier(id: UUID, db: DbSession, user: CurrentUser = Depends(require_auth)):
    tier = await AlertTierService.get(db, id)
    return ApiResponse(data=AlertTierResponse.model_validate(tier))


@router.put("/{id}", response_model=ApiResponse[AlertTierResponse])
async def update_tier(
    id: UUID,
    body: AlertTierUpdate,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    tier = await AlertTierService.update(db, id, body.model_dump(exclude_unset=True))
    return ApiResponse(data=AlertTierResponse.model_validate(tier))


@router.patch("/{id}/toggle", response_model=ApiResponse[AlertTierResponse])
async def toggle_tier(
    id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    tier = await AlertTierService.toggle_active(db, id)
    return ApiResponse(data=AlertTierResponse.model_validate(tier))


@router.delete("/{id}", response_model=ApiResponse[dict])
async def delete_tier(
    id: UUID,
    db: DbSession,
    user: CurrentUser = Depends(require_permission(PERM_EXPIRY_CONFIGURE)),
):
    """Delete a tier no alert has ever referenced."""
    await AlertTierService.delete(db, id)
    return ApiResponse(data={"id": str(id), "deleted": True})


@router.get("/{id}/affected-count", response_model=ApiResponse[AffectedBatchCount])
async def affected_batch_count(
    id: UUID,
    db: DbSession,
    as_of: date | None = Query(None, description="Defaults to today"),
    user: CurrentUser = Depends(require_auth),
):
    """How many stocked batches currently fall inside this tier's window."""
    tier = await AlertTierService.get(db, id)
    count = await AlertTierService.affected_batch_count(db, id, as_of)
    return ApiResponse(
        data=AffectedBatchCount(tier_id=tier.id, days_before_expiry=tier.days_before_expiry, affected_batches=count)
    )

"""MedStock — Quarantine schemas."""
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from medstock.models.quarantine import QuarantineAction


class QuarantineCreate(BaseModel):
    batch_id: UUID
    reason: str = Field(..., min_length=1, max_length=255)


class QuarantineActionRequest(BaseModel):
    action: QuarantineAction
    comments: str | None = Field(None, max_length=1000)
    disposal_method: str | None = Field(None, max_length=100)
    disposal_certificate: str | None = Field(None, max_length=255)
    return_reference: str | None = Field(None, max_length=100)


class QuarantineCaseResponse(BaseModel):
    id: UUID
    batch_id: UUID
    product_id: UUID
    quantity_quarantined: int
    reason: str
    quarantine_date: date
    quarantined_by: str
    status: str
    review_date: datetime | None
    reviewed_by: str | None
    disposal_date: datetime | None
    disposal_method: str | None
    disposal_certificate: str | None
    return_date: datetime | None
    return_reference: str | None
    estimated_loss: Decimal
    notes: str | None
    version: int
    created_at: datetime
    days_in_quarantine: int = 0

    model_config = {"from_attributes": True}


class QuarantineActionLogResponse(BaseModel):
    id: UUID
    case_id: UUID
    action: str
    performed_by: str
    performed_at: datetime
    previous_status: str | None
    new_status: str
    comments: str | None

    model_config = {"from_attributes": True}


class QuarantineSummaryResponse(BaseModel):
    by_status: dict[str, int]
    total_cases: int
    open_cases: int
    total_quantity: int
    total_estimated_loss: Decimal


class AutoQuarantineResponse(BaseModel):
    quarantined: int
    failed: int

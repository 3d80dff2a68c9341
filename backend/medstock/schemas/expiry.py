"""MedStock — Expiry tier, alert and check-run schemas."""
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from medstock.models.expiry import AlertSeverity

COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class AlertTierCreate(BaseModel):
    tier_name: str = Field(..., min_length=1, max_length=100)
    days_before_expiry: int = Field(..., ge=1, le=365)
    severity: AlertSeverity
    description: str | None = Field(None, max_length=1000)
    notify_roles: list[str] = Field(..., min_length=1)
    color_code: str | None = Field(None, pattern=COLOR_PATTERN)
    sort_order: int | None = Field(None, ge=0)
    active: bool = True


class AlertTierUpdate(BaseModel):
    tier_name: str | None = Field(None, min_length=1, max_length=100)
    days_before_expiry: int | None = Field(None, ge=1, le=365)
    severity: AlertSeverity | None = None
    description: str | None = Field(None, max_length=1000)
    notify_roles: list[str] | None = Field(None, min_length=1)
    color_code: str | None = Field(None, pattern=COLOR_PATTERN)
    sort_order: int | None = Field(None, ge=0)
    active: bool | None = None


class TierReorderRequest(BaseModel):
    tier_ids: list[UUID] = Field(..., min_length=1)


class AlertTierResponse(BaseModel):
    id: UUID
    tier_name: str
    days_before_expiry: int
    severity: str
    description: str | None
    notify_roles: list[str]
    color_code: str | None
    sort_order: int
    active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AffectedBatchCount(BaseModel):
    tier_id: UUID
    days_before_expiry: int
    affected_batches: int


class ExpiryAlertResponse(BaseModel):
    id: UUID
    product_id: UUID
    batch_id: UUID
    config_id: UUID
    check_run_id: UUID | None
    batch_number: str | None
    alert_date: date
    expiry_date: date
    quantity_affected: int
    status: str
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    resolved_at: datetime | None
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AlertActionRequest(BaseModel):
    notes: str | None = Field(None, max_length=1000)


class CheckRunResponse(BaseModel):
    id: UUID
    check_date: date
    start_time: datetime
    end_time: datetime | None
    status: str
    items_checked: int
    alerts_generated: int
    duplicates_skipped: int
    errors_encountered: int
    execution_time_ms: int | None
    error_message: str | None
    triggered_by: str

    model_config = {"from_attributes": True}


class CheckRunResultResponse(BaseModel):
    run_id: UUID
    check_date: date
    status: str
    triggered_by: str
    items_checked: int
    alerts_generated: int
    duplicates_skipped: int
    errors: int
    execution_time_ms: int
    alerts_by_severity: dict[str, int]
    alerts_by_days_range: dict[str, int]

    model_config = {"from_attributes": True}


class CheckRunRequest(BaseModel):
    check_date: date | None = None


class TodaySummaryResponse(BaseModel):
    check_date: date
    total_runs: int
    scheduled_runs: int
    manual_runs: int
    completed_runs: int
    failed_runs: int
    latest_run: CheckRunResponse | None = None


class MarkExpiredResponse(BaseModel):
    batches_marked: int



class CriticalBatchResponse(BaseModel):
    batch_id: UUID
    product_id: UUID
    product_code: str
    product_name: str
    batch_number: str
    expiry_date: date
    days_until_expiry: int
    quantity: int
    value: Decimal

    model_config = {"from_attributes": True}


class BatchExpiryReportResponse(BaseModel):
    check_date: date
    expiring_within: dict[int, int]
    expired_batches: int
    critical_batches: list[CriticalBatchResponse]

    model_config = {"from_attributes": True}


class ExpirySummaryResponse(BaseModel):
    check_date: date
    expired_count: int
    expiring_today_count: int
    expiring_this_week_count: int
    expiring_this_month_count: int
    value_at_risk: Decimal
    expired_value: Decimal
    open_alerts_by_severity: dict[str, int]
    alerts_by_status: dict[str, int]
    open_quarantine_cases: int
    pending_review_count: int
    critical_items: list[CriticalBatchResponse]
    last_check_time: datetime | None = None
    last_check_status: str | None = None

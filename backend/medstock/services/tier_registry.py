"""MedStock — AlertTierService: the ordered registry of expiry alert tiers.

Active tiers form a ladder: walking them by ascending ``sort_order`` must give
strictly ascending ``days_before_expiry``, and no two active tiers share a
threshold. Every write projects the resulting ladder first and refuses the
change before touching any row if either rule would break.
"""
import logging
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.core.errors import ConflictError, DuplicateTierError, NotFoundError, TierOrderingError, ValidationError
from medstock.models.expiry import AlertSeverity, AlertTierConfig, ExpiryAlert
from medstock.models.inventory import BatchStatus, ProductBatch

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "tier_name",
    "days_before_expiry",
    "severity",
    "description",
    "notify_roles",
    "color_code",
    "sort_order",
    "active",
)
_NULLABLE_FIELDS = ("description", "color_code")
_LADDER_FIELDS = ("tier_name", "days_before_expiry", "sort_order", "active")


def _snapshot(tier: AlertTierConfig, **overrides: Any) -> dict:
    row = {
        "id": tier.id,
        "tier_name": tier.tier_name,
        "days_before_expiry": tier.days_before_expiry,
        "sort_order": tier.sort_order,
        "active": tier.active,
    }
    row.update(overrides)
    return row


def check_ordering(ladder: list[dict]) -> None:
    """Raise TierOrderingError unless active rows tighten as sort_order grows."""
    active = sorted(
        (row for row in ladder if row["active"]),
        key=lambda row: (row["sort_order"], row["days_before_expiry"]),
    )
    offending = []
    for prev, cur in zip(active, active[1:]):
        if cur["days_before_expiry"] <= prev["days_before_expiry"]:
            offending.append(
                {
                    "tier_name": cur["tier_name"],
                    "sort_order": cur["sort_order"],
                    "days_before_expiry": cur["days_before_expiry"],
                    "after_tier": prev["tier_name"],
                    "after_days": prev["days_before_expiry"],
                }
            )
    if offending:
        raise TierOrderingError(
            "Active tiers must have strictly increasing days_before_expiry in sort order",
            field_errors=[
                {
                    "field": "sort_order",
                    "message": (
                        f"'{o['tier_name']}' ({o['days_before_expiry']} days) is ordered after "
                        f"'{o['after_tier']}' ({o['after_days']} days)"
                    ),
                }
                for o in offending
            ],
            offending_tiers=offending,
        )


def _validate_fields(data: dict) -> None:
    """Service-level guard for callers that bypass the API schemas (tasks, seeds)."""
    errors = []
    name = data.get("tier_name")
    if name is not None and not (1 <= len(name.strip()) <= 100):
        errors.append({"field": "tier_name", "message": "must be 1-100 characters"})
    days = data.get("days_before_expiry")
    if days is not None and not (1 <= int(days) <= 365):
        errors.append({"field": "days_before_expiry", "message": "must be between 1 and 365"})
    severity = data.get("severity")
    if severity is not None and severity not in AlertSeverity.__members__:
        errors.append({"field": "severity", "message": f"unknown severity '{severity}'"})
    if "notify_roles" in data and not data["notify_roles"]:
        errors.append({"field": "notify_roles", "message": "at least one role is required"})
    if errors:
        raise ValidationError("Invalid alert tier", field_errors=errors)


class AlertTierService:
    """CRUD, ordering and impact queries for expiry alert tiers."""

    @staticmethod
    async def list_active(db: AsyncSession) -> list[AlertTierConfig]:
        result = await db.execute(
            select(AlertTierConfig)
            .where(AlertTierConfig.active == True)
            .order_by(AlertTierConfig.sort_order, AlertTierConfig.days_before_expiry)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_all(db: AsyncSession) -> list[AlertTierConfig]:
        result = await db.execute(
            select(AlertTierConfig).order_by(AlertTierConfig.sort_order, AlertTierConfig.days_before_expiry)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_for_role(db: AsyncSession, role: str) -> list[AlertTierConfig]:
        """Active tiers that notify ``role``, in ladder order."""
        role = role.strip().upper()
        return [t for t in await AlertTierService.list_active(db) if role in (t.notify_roles or [])]

    @staticmethod
    async def get(db: AsyncSession, tier_id: UUID) -> AlertTierConfig:
        tier = await db.get(AlertTierConfig, tier_id)
        if not tier:
            raise NotFoundError("AlertTier", tier_id)
        return tier

    @staticmethod
    async def _ensure_unique_days(db: AsyncSession, days: int, exclude_id: UUID | None = None) -> None:
        stmt = select(AlertTierConfig).where(
            AlertTierConfig.active == True,
            AlertTierConfig.days_before_expiry == days,
        )
        if exclude_id is not None:
            stmt = stmt.where(AlertTierConfig.id != exclude_id)
        existing = (await db.execute(stmt)).scalars().first()
        if existing:
            raise DuplicateTierError(days, existing_tier=existing.tier_name)

    @staticmethod
    async def create(db: AsyncSession, data: dict) -> AlertTierConfig:
        """Create a tier. ``sort_order`` defaults to the end of the ladder."""
        _validate_fields(data)
        active = data.get("active", True)
        if active:
            await AlertTierService._ensure_unique_days(db, data["days_before_expiry"])

        sort_order = data.get("sort_order")
        if sort_order is None:
            current_max = (await db.execute(select(func.max(AlertTierConfig.sort_order)))).scalar()
            sort_order = (current_max or 0) + 1

        existing = await AlertTierService.list_all(db)
        ladder = [_snapshot(t) for t in existing]
        ladder.append(
            {
                "id": None,
                "tier_name": data["tier_name"],
                "days_before_expiry": data["days_before_expiry"],
                "sort_order": sort_order,
                "active": active,
            }
        )
        check_ordering(ladder)

        severity = data["severity"]
        tier = AlertTierConfig(
            tier_name=data["tier_name"].strip(),
            days_before_expiry=data["days_before_expiry"],
            severity=severity.value if isinstance(severity, AlertSeverity) else severity,
            description=data.get("description"),
            notify_roles=list(data["notify_roles"]),
            color_code=data.get("color_code"),
            sort_order=sort_order,
            active=active,
        )
        db.add(tier)
        await db.flush()
        logger.info("Created alert tier %s (%s days, %s)", tier.tier_name, tier.days_before_expiry, tier.severity)
        return tier

    @staticmethod
    async def update(db: AsyncSession, tier_id: UUID, data: dict) -> AlertTierConfig:
        """Apply a partial update. Only keys present in ``data`` change."""
        tier = await AlertTierService.get(db, tier_id)
        changes = {
            k: v
            for k, v in data.items()
            if k in _EDITABLE_FIELDS and (v is not None or k in _NULLABLE_FIELDS)
        }
        _validate_fields(changes)

        projected = _snapshot(tier, **{k: changes[k] for k in _LADDER_FIELDS if k in changes})
        if projected["active"]:
            await AlertTierService._ensure_unique_days(db, projected["days_before_expiry"], exclude_id=tier.id)
        others = [_snapshot(t) for t in await AlertTierService.list_all(db) if t.id != tier.id]
        check_ordering(others + [projected])

        for key, value in changes.items():
            if isinstance(value, AlertSeverity):
                value = value.value
            setattr(tier, key, value)
        await db.flush()
        return tier

    @staticmethod
    async def toggle_active(db: AsyncSession, tier_id: UUID) -> AlertTierConfig:
        tier = await AlertTierService.get(db, tier_id)
        becoming_active = not tier.active
        if becoming_active:
            await AlertTierService._ensure_unique_days(db, tier.days_before_expiry, exclude_id=tier.id)
            others = [_snapshot(t) for t in await AlertTierService.list_all(db) if t.id != tier.id]
            check_ordering(others + [_snapshot(tier, active=True)])
        tier.active = becoming_active
        await db.flush()
        logger.info("Alert tier %s is now %s", tier.tier_name, "active" if tier.active else "inactive")
        return tier

    @staticmethod
    async def reorder(db: AsyncSession, tier_ids: list[UUID]) -> list[AlertTierConfig]:
        """Give the listed tiers sort_order 1..n; unlisted tiers follow in their old order."""
        if len(set(tier_ids)) != len(tier_ids):
            raise ValidationError(
                "Tier ids must not repeat",
                field_errors=[{"field": "tier_ids", "message": "duplicate id"}],
            )
        tiers = await AlertTierService.list_all(db)
        by_id = {t.id: t for t in tiers}
        for tier_id in tier_ids:
            if tier_id not in by_id:
                raise NotFoundError("AlertTier", tier_id)

        ordered = [by_id[i] for i in tier_ids] + [t for t in tiers if t.id not in set(tier_ids)]
        new_orders = {t.id: position for position, t in enumerate(ordered, start=1)}
        check_ordering([_snapshot(t, sort_order=new_orders[t.id]) for t in tiers])

        for tier in ordered:
            tier.sort_order = new_orders[tier.id]
        await db.flush()
        return ordered

    @staticmethod
    async def delete(db: AsyncSession, tier_id: UUID) -> None:
        tier = await AlertTierService.get(db, tier_id)
        alert_count = (
            await db.execute(select(func.count(ExpiryAlert.id)).where(ExpiryAlert.config_id == tier.id))
        ).scalar() or 0
        if alert_count:
            raise ConflictError(
                f"Cannot delete tier '{tier.tier_name}': {alert_count} alert(s) reference it. Deactivate it instead.",
                alert_count=alert_count,
            )
        await db.delete(tier)
        await db.flush()
        logger.info("Deleted alert tier %s", tier.tier_name)

    @staticmethod
    async def affected_batch_count(db: AsyncSession, tier_id: UUID, today: date | None = None) -> int:
        """Stocked batches whose expiry falls inside the tier's window."""
        tier = await AlertTierService.get(db, tier_id)
        today = today or date.today()
        horizon = today + timedelta(days=tier.days_before_expiry)
        result = await db.execute(
            select(func.count(ProductBatch.id)).where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                ProductBatch.quantity > 0,
                ProductBatch.expiry_date > today,
                ProductBatch.expiry_date <= horizon,
            )
        )
        return result.scalar() or 0

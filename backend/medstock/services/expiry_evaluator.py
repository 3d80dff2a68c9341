"""MedStock — Batch expiry evaluator.

Matching is a pure function of (check date, tier ladder, stock items); the two
loaders below fetch those inputs and are the only part that touches the DB.
"""
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.models.expiry import AlertTierConfig
from medstock.models.inventory import BatchStatus, ProductBatch


@dataclass(frozen=True)
class TierRule:
    """Read-only view of an active tier."""
    id: UUID
    tier_name: str
    days_before_expiry: int
    severity: str
    notify_roles: tuple[str, ...] = ()
    sort_order: int = 0


@dataclass(frozen=True)
class StockItem:
    """A stocked batch eligible for evaluation."""
    batch_id: UUID
    product_id: UUID
    batch_number: str
    quantity: int
    expiry_date: date


@dataclass(frozen=True)
class AlertCandidate:
    item: StockItem
    tier: TierRule
    days_until_expiry: int


@dataclass
class EvaluationReport:
    check_date: date
    items_processed: int = 0
    skipped_expired: int = 0
    candidates: list[AlertCandidate] = field(default_factory=list)


class ExpiryEvaluator:
    """Assign each stock item to at most one tier for a check date."""

    @staticmethod
    def days_until_expiry(expiry_date: date, check_date: date) -> int:
        return (expiry_date - check_date).days

    @staticmethod
    def match_tier(days: int, tiers: list[TierRule]) -> TierRule | None:
        """First tier in ladder order whose window contains ``days``."""
        if days <= 0:
            return None
        for tier in tiers:
            if days <= tier.days_before_expiry:
                return tier
        return None

    @staticmethod
    def evaluate(check_date: date, tiers: list[TierRule], items: list[StockItem]) -> EvaluationReport:
        ladder = sorted(tiers, key=lambda t: t.sort_order)
        report = EvaluationReport(check_date=check_date)
        for item in items:
            report.items_processed += 1
            days = ExpiryEvaluator.days_until_expiry(item.expiry_date, check_date)
            if days < 0:
                report.skipped_expired += 1
                continue
            tier = ExpiryEvaluator.match_tier(days, ladder)
            if tier is not None:
                report.candidates.append(AlertCandidate(item=item, tier=tier, days_until_expiry=days))
        return report

    @staticmethod
    async def load_active_tiers(db: AsyncSession) -> list[TierRule]:
        result = await db.execute(
            select(AlertTierConfig)
            .where(AlertTierConfig.active == True)
            .order_by(AlertTierConfig.sort_order, AlertTierConfig.days_before_expiry)
        )
        return [
            TierRule(
                id=t.id,
                tier_name=t.tier_name,
                days_before_expiry=t.days_before_expiry,
                severity=t.severity,
                notify_roles=tuple(t.notify_roles or ()),
                sort_order=t.sort_order,
            )
            for t in result.scalars().all()
        ]

    @staticmethod
    async def load_eligible_items(db: AsyncSession) -> list[StockItem]:
        result = await db.execute(
            select(ProductBatch)
            .where(
                ProductBatch.status == BatchStatus.ACTIVE.value,
                ProductBatch.quantity > 0,
                ProductBatch.expiry_date.is_not(None),
            )
            .order_by(ProductBatch.expiry_date, ProductBatch.batch_number)
        )
        return [
            StockItem(
                batch_id=b.id,
                product_id=b.product_id,
                batch_number=b.batch_number,
                quantity=b.quantity,
                expiry_date=b.expiry_date,
            )
            for b in result.scalars().all()
        ]

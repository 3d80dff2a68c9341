import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from medstock.core.errors import ConflictError, DuplicateTierError, NotFoundError, TierOrderingError, ValidationError
from medstock.models.expiry import AlertTierConfig
from medstock.models.inventory import BatchStatus
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.expiry_evaluator import AlertCandidate, StockItem, TierRule
from medstock.services.tier_registry import AlertTierService


async def test_create_appends_to_end_of_ladder(factory):
    critical = await factory.tier(7, "CRITICAL")
    warning = await factory.tier(30, "WARNING")
    assert (critical.sort_order, warning.sort_order) == (1, 2)
    assert critical.active is True
    assert critical.severity == "CRITICAL"


async def test_duplicate_active_days_rejected(db, factory):
    await factory.tier(30, "WARNING", name="Urgent")
    with pytest.raises(DuplicateTierError) as exc_info:
        await factory.tier(30, "CRITICAL")
    assert exc_info.value.meta["existing_tier"] == "Urgent"
    assert len(await AlertTierService.list_all(db)) == 1


async def test_inactive_tier_may_share_days_until_toggled_on(db, factory):
    await factory.tier(30, "WARNING")
    shadow = await factory.tier(30, "INFO", name="Shadow", active=False)

    with pytest.raises(DuplicateTierError):
        await AlertTierService.toggle_active(db, shadow.id)
    assert shadow.active is False


async def test_partial_unique_index_backs_the_service_check(db, factory):
    await factory.tier(30, "WARNING")
    db.add(AlertTierConfig(tier_name="Sneaky", days_before_expiry=30, severity="INFO", notify_roles=["X"], sort_order=9))
    with pytest.raises(IntegrityError):
        await db.flush()


async def test_write_breaking_ladder_order_is_refused(db, factory):
    await factory.tier(30, "WARNING")
    with pytest.raises(TierOrderingError) as exc_info:
        await factory.tier(7, "CRITICAL")
    assert exc_info.value.status_code == 422
    assert exc_info.value.meta["offending_tiers"][0]["days_before_expiry"] == 7
    assert len(await AlertTierService.list_all(db)) == 1


async def test_explicit_sort_order_can_place_tighter_tier_first(db, factory):
    warning = await factory.tier(30, "WARNING", sort_order=10)
    critical = await factory.tier(7, "CRITICAL", sort_order=1)
    assert [t.id for t in await AlertTierService.list_active(db)] == [critical.id, warning.id]


async def test_update_revalidates_uniqueness_and_order(db, factory):
    critical, warning, info = await factory.standard_tiers()

    with pytest.raises(DuplicateTierError):
        await AlertTierService.update(db, info.id, {"days_before_expiry": 30})
    with pytest.raises(TierOrderingError):
        await AlertTierService.update(db, warning.id, {"days_before_expiry": 120})
    assert warning.days_before_expiry == 30

    updated = await AlertTierService.update(db, warning.id, {"days_before_expiry": 45, "description": "Plan usage"})
    assert updated.days_before_expiry == 45
    assert updated.description == "Plan usage"


async def test_update_ignores_none_for_required_fields(db, factory):
    tier = await factory.tier(30, "WARNING", color_code="#FFAA00")
    await AlertTierService.update(db, tier.id, {"tier_name": None, "color_code": None})
    assert tier.tier_name == "Warning 30d"
    assert tier.color_code is None


async def test_service_rejects_bad_fields(factory):
    with pytest.raises(ValidationError) as exc_info:
        await factory.tier(400, "LOUD", notify_roles=[])
    fields = {e["field"] for e in exc_info.value.field_errors}
    assert fields == {"days_before_expiry", "severity", "notify_roles"}


async def test_reorder_assigns_positions_atomically(db, factory):
    critical, warning, info = await factory.standard_tiers()

    with pytest.raises(TierOrderingError):
        await AlertTierService.reorder(db, [info.id, warning.id, critical.id])
    assert [t.sort_order for t in (critical, warning, info)] == [1, 2, 3]

    info.active = False
    await db.flush()
    ordered = await AlertTierService.reorder(db, [info.id, critical.id, warning.id])
    assert [t.id for t in ordered] == [info.id, critical.id, warning.id]
    assert [t.sort_order for t in ordered] == [1, 2, 3]


async def test_reorder_unknown_id(db, factory):
    await factory.standard_tiers()
    with pytest.raises(NotFoundError):
        await AlertTierService.reorder(db, [uuid.uuid4()])


async def test_delete_blocked_only_by_alerts_on_that_tier(db, factory, today):
    critical, warning, info = await factory.standard_tiers()
    batch = await factory.batch(5)
    candidate = AlertCandidate(
        item=StockItem(batch.id, batch.product_id, batch.batch_number, batch.quantity, batch.expiry_date),
        tier=TierRule(critical.id, critical.tier_name, 7, "CRITICAL"),
        days_until_expiry=5,
    )
    await ExpiryAlertService.record_candidate(db, candidate, today)

    with pytest.raises(ConflictError):
        await AlertTierService.delete(db, critical.id)

    await AlertTierService.delete(db, info.id)
    remaining = await AlertTierService.list_all(db)
    assert {t.id for t in remaining} == {critical.id, warning.id}


async def test_get_unknown_tier(db):
    with pytest.raises(NotFoundError):
        await AlertTierService.get(db, uuid.uuid4())


async def test_affected_batch_count(db, factory, today):
    tier = await factory.tier(30, "WARNING")
    await factory.batch(1)
    await factory.batch(30)
    await factory.batch(31)
    await factory.batch(0)
    await factory.batch(-2)
    await factory.batch(10, quantity=0)
    await factory.batch(10, status=BatchStatus.QUARANTINED)

    assert await AlertTierService.affected_batch_count(db, tier.id, today) == 2
    assert await AlertTierService.affected_batch_count(db, tier.id, today + timedelta(days=1)) == 2


async def test_list_for_role(db, factory):
    critical = await factory.tier(7, "CRITICAL", notify_roles=["HOSPITAL_MANAGER", "PHARMACY_STAFF"])
    warning = await factory.tier(30, "WARNING", notify_roles=["PHARMACY_STAFF"])
    retired = await factory.tier(90, "INFO", notify_roles=["HOSPITAL_MANAGER"])
    await AlertTierService.toggle_active(db, retired.id)

    assert [t.id for t in await AlertTierService.list_for_role(db, "PHARMACY_STAFF")] == [critical.id, warning.id]
    assert [t.id for t in await AlertTierService.list_for_role(db, "hospital_manager")] == [critical.id]
    assert await AlertTierService.list_for_role(db, "ADMIN") == []

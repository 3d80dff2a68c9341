import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from medstock.config import get_settings
from medstock.core.errors import ConflictError, IllegalTransitionError, InvalidStateError, NotFoundError, ValidationError
from medstock.models.inventory import BatchStatus, ProductBatch
from medstock.models.quarantine import (
    QUARANTINE_TRANSITIONS,
    TERMINAL_QUARANTINE_STATUSES,
    QuarantineAction,
    QuarantineStatus,
)
from medstock.services import quarantine_audit
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.quarantine_service import AUTO_QUARANTINE_REASON, QuarantineService, days_in_quarantine


@pytest.fixture
async def case(db, factory, gateway, today):
    batch = await factory.batch(-2, quantity=40, cost="3.25")
    await db.commit()
    return await QuarantineService.create_case(db, gateway, batch.id, "Damaged packaging", "alice", today)


async def _advance(db, gateway, case, *actions, **payload):
    for action in actions:
        await QuarantineService.process_action(db, gateway, case.id, action, "bob", **payload)


async def test_create_case_quarantines_batch(db, factory, gateway, today):
    batch = await factory.batch(20, quantity=40, cost="3.25")

    case = await QuarantineService.create_case(db, gateway, batch.id, "Cold chain break", "alice", today)

    assert case.status == QuarantineStatus.PENDING_REVIEW.value
    assert case.quantity_quarantined == 40
    assert case.estimated_loss == Decimal("130.00")
    assert case.quarantined_by == "alice"
    assert case.version == 1
    assert batch.status == BatchStatus.QUARANTINED.value
    assert batch.quantity == 40

    history = await quarantine_audit.history(db, case.id)
    assert [(h.action, h.previous_status, h.new_status) for h in history] == [
        ("QUARANTINE", None, "PENDING_REVIEW")
    ]
    events = gateway.of_type("QUARANTINE_CREATED")
    assert events[0][0] == get_settings().QUARANTINE_NOTIFY_ROLES
    assert events[0][2]["case_id"] == str(case.id)


async def test_create_case_without_cost_has_zero_loss(db, factory, gateway, today):
    batch = await factory.batch(20, cost=None)
    case = await QuarantineService.create_case(db, gateway, batch.id, "Recall", "alice", today)
    assert case.estimated_loss == Decimal("0.00")


async def test_create_case_rejects_quarantined_and_unknown_batches(db, factory, gateway, today):
    batch = await factory.batch(20, status=BatchStatus.QUARANTINED)
    with pytest.raises(InvalidStateError) as exc_info:
        await QuarantineService.create_case(db, gateway, batch.id, "Again", "alice", today)
    assert exc_info.value.current_state == "QUARANTINED"

    with pytest.raises(NotFoundError):
        await QuarantineService.create_case(db, gateway, uuid.uuid4(), "Ghost", "alice", today)


async def test_disposal_path(db, gateway, case):
    await _advance(db, gateway, case, QuarantineAction.REVIEW, comments="Inspected")
    assert case.status == QuarantineStatus.UNDER_REVIEW.value
    assert case.reviewed_by == "bob"
    assert case.review_date is not None

    await _advance(db, gateway, case, QuarantineAction.APPROVE_DISPOSAL, comments="Not salvageable")
    await QuarantineService.process_action(
        db, gateway, case.id, QuarantineAction.DISPOSE, "carol",
        disposal_method="Incineration", disposal_certificate="CERT-2026-001",
    )

    assert case.status == QuarantineStatus.DISPOSED.value
    assert case.disposal_method == "Incineration"
    assert case.disposal_certificate == "CERT-2026-001"
    assert case.disposal_date is not None
    assert case.notes == "REVIEW: Inspected\nAPPROVE_DISPOSAL: Not salvageable"
    assert case.version == 4

    batch = await db.get(ProductBatch, case.batch_id)
    assert batch.quantity == 0
    assert batch.status == BatchStatus.EXPIRED.value

    history = await quarantine_audit.history(db, case.id)
    assert [h.action for h in history] == ["DISPOSE", "APPROVE_DISPOSAL", "REVIEW", "QUARANTINE"]
    assert history[0].performed_by == "carol"
    assert [e[1] for e in gateway.events] == [
        "QUARANTINE_CREATED",
        "QUARANTINE_REVIEW",
        "QUARANTINE_APPROVE_DISPOSAL",
        "QUARANTINE_DISPOSE",
    ]

    summary = await QuarantineService.summary(db)
    assert summary["open_cases"] == 0
    assert summary["by_status"]["DISPOSED"] == 1


async def test_return_path(db, gateway, case):
    await _advance(db, gateway, case, QuarantineAction.REVIEW, QuarantineAction.APPROVE_RETURN)
    await QuarantineService.process_action(
        db, gateway, case.id, "RETURN", "bob", return_reference="RMA-7781"
    )
    assert case.status == QuarantineStatus.RETURNED.value
    assert case.return_reference == "RMA-7781"
    assert case.return_date is not None


async def test_illegal_transition_changes_nothing(db, gateway, case):
    await _advance(db, gateway, case, QuarantineAction.REVIEW)
    before = len(await quarantine_audit.history(db, case.id))

    with pytest.raises(IllegalTransitionError) as exc_info:
        await QuarantineService.process_action(
            db, gateway, case.id, QuarantineAction.DISPOSE, "bob", disposal_certificate="CERT-1"
        )

    assert exc_info.value.current_state == "UNDER_REVIEW"
    assert exc_info.value.action == "DISPOSE"
    refreshed = await QuarantineService.get_case(db, case.id)
    assert refreshed.status == QuarantineStatus.UNDER_REVIEW.value
    assert len(await quarantine_audit.history(db, case.id)) == before


@pytest.mark.parametrize("status", sorted(TERMINAL_QUARANTINE_STATUSES))
def test_terminal_states_have_no_exits(status):
    assert not any(s == status for s, _ in QUARANTINE_TRANSITIONS)
    assert all(not quarantine_audit.is_valid_transition(status, a) for a in QuarantineAction)


def test_is_valid_transition():
    assert quarantine_audit.is_valid_transition("PENDING_REVIEW", "REVIEW")
    assert not quarantine_audit.is_valid_transition("PENDING_REVIEW", "DISPOSE")
    assert not quarantine_audit.is_valid_transition("PENDING_REVIEW", "SHRED")


async def test_unknown_action_is_a_validation_error(db, gateway, case):
    with pytest.raises(ValidationError):
        await QuarantineService.process_action(db, gateway, case.id, "SHRED", "bob")


async def test_dispose_requires_certificate(db, gateway, case):
    await _advance(db, gateway, case, QuarantineAction.REVIEW, QuarantineAction.APPROVE_DISPOSAL)
    with pytest.raises(ValidationError) as exc_info:
        await QuarantineService.process_action(db, gateway, case.id, QuarantineAction.DISPOSE, "bob")
    assert exc_info.value.field_errors[0]["field"] == "disposal_certificate"


async def test_dispose_without_certificate_when_not_required(db, gateway, case, monkeypatch):
    monkeypatch.setattr(get_settings(), "QUARANTINE_CERTIFICATE_REQUIRED", False)
    await _advance(db, gateway, case, QuarantineAction.REVIEW, QuarantineAction.APPROVE_DISPOSAL, QuarantineAction.DISPOSE)
    assert case.status == QuarantineStatus.DISPOSED.value


async def test_disposal_method_must_be_configured(db, gateway, case):
    await _advance(db, gateway, case, QuarantineAction.REVIEW, QuarantineAction.APPROVE_DISPOSAL)
    with pytest.raises(ValidationError) as exc_info:
        await QuarantineService.process_action(
            db, gateway, case.id, QuarantineAction.DISPOSE, "bob",
            disposal_method="Flush down the drain", disposal_certificate="CERT-9",
        )
    assert exc_info.value.field_errors[0]["field"] == "disposal_method"


async def test_concurrent_update_is_a_conflict(db, session_maker, gateway, case):
    async with session_maker() as other:
        stale = await QuarantineService.get_case(other, case.id)
        await other.commit()

        await QuarantineService.process_action(db, gateway, case.id, QuarantineAction.REVIEW, "bob")

        assert stale.version == 1
        with pytest.raises(ConflictError):
            await QuarantineService.process_action(other, gateway, case.id, QuarantineAction.REVIEW, "carol")

    history = await quarantine_audit.history(db, case.id)
    assert [h.action for h in history] == ["REVIEW", "QUARANTINE"]


async def test_auto_quarantine_sweeps_past_the_batch_size(db, factory, gateway, today, monkeypatch):
    monkeypatch.setattr(get_settings(), "AUTO_QUARANTINE_BATCH_SIZE", 2)
    expired = [await factory.batch(days) for days in (-30, -10, -7, -3, -1)]
    fresh = await factory.batch(0)
    await db.commit()

    result = await QuarantineService.auto_quarantine_expired(db, gateway, today)

    assert result == {"quarantined": 5, "failed": 0}
    assert {b.status for b in expired} == {BatchStatus.QUARANTINED.value}
    assert fresh.status == BatchStatus.ACTIVE.value

    cases, total = await QuarantineService.list_cases(db)
    assert total == 5
    assert {c.quarantined_by for c in cases} == {"SYSTEM"}
    assert {c.reason for c in cases} == {AUTO_QUARANTINE_REASON}
    assert len(gateway.of_type("QUARANTINE_CREATED")) == 5

    # Nothing is left for the expiry-crossing sweep to flip to EXPIRED
    assert await ExpiryAlertService.mark_expired_batches(db, gateway, today) == 0
    assert await QuarantineService.auto_quarantine_expired(db, gateway, today) == {"quarantined": 0, "failed": 0}


async def test_auto_quarantine_skips_failures(db, factory, gateway, today, monkeypatch):
    monkeypatch.setattr(get_settings(), "AUTO_QUARANTINE_BATCH_SIZE", 1)
    good = await factory.batch(-5)
    bad = await factory.batch(-4)
    later = await factory.batch(-2)
    await db.commit()
    real_open_case = QuarantineService._open_case

    async def _flaky(db, batch, reason, by, quarantine_date):
        if batch.id == bad.id:
            raise RuntimeError("lock timeout")
        return await real_open_case(db, batch, reason, by, quarantine_date)

    monkeypatch.setattr(QuarantineService, "_open_case", staticmethod(_flaky))

    assert await QuarantineService.auto_quarantine_expired(db, gateway, today) == {"quarantined": 2, "failed": 1}
    assert good.status == later.status == BatchStatus.QUARANTINED.value
    assert bad.status == BatchStatus.ACTIVE.value


async def test_auto_quarantine_disabled(db, factory, gateway, today, monkeypatch):
    monkeypatch.setattr(get_settings(), "AUTO_QUARANTINE_ENABLED", False)
    batch = await factory.batch(-5)
    assert await QuarantineService.auto_quarantine_expired(db, gateway, today) == {"quarantined": 0, "failed": 0}
    assert batch.status == BatchStatus.ACTIVE.value


async def test_queries(db, factory, gateway, today):
    cases = []
    for days, qty in ((-3, 10), (-2, 20), (-1, 30)):
        batch = await factory.batch(days, quantity=qty, cost="1.00")
        cases.append(await QuarantineService.create_case(db, gateway, batch.id, "Expired", "alice", today))
    await _advance(db, gateway, cases[0], QuarantineAction.REVIEW)

    pending = await QuarantineService.pending_review(db)
    assert {c.id for c in pending} == {cases[1].id, cases[2].id}

    under_review, total = await QuarantineService.list_cases(db, status=QuarantineStatus.UNDER_REVIEW)
    assert total == 1 and under_review[0].id == cases[0].id

    summary = await QuarantineService.summary(db)
    assert summary["total_cases"] == 3
    assert summary["open_cases"] == 3
    assert summary["total_quantity"] == 60
    assert summary["total_estimated_loss"] == Decimal("60.00")
    assert summary["by_status"]["PENDING_REVIEW"] == 2
    assert summary["by_status"]["DISPOSED"] == 0

    assert days_in_quarantine(cases[0], today + timedelta(days=4)) == 4

"""HTTP surface: envelope, auth, permissions and error rendering."""
from datetime import date
from decimal import Decimal

import pytest

from medstock.config import get_settings
from medstock.schemas.common import Meta

from conftest import TODAY, auth_headers

TIER = {
    "tier_name": "Critical",
    "days_before_expiry": 7,
    "severity": "CRITICAL",
    "notify_roles": ["HOSPITAL_MANAGER", "PHARMACY_STAFF"],
    "color_code": "#D32F2F",
}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "medstock"}


async def test_requires_token(client):
    resp = await client.get("/api/v1/expiry/tiers")
    assert resp.status_code == 401


async def test_staff_cannot_configure_tiers(client):
    resp = await client.post("/api/v1/expiry/tiers", json=TIER, headers=auth_headers("PHARMACY_STAFF"))
    assert resp.status_code == 403


async def test_tier_crud(client):
    admin = auth_headers("ADMIN")
    resp = await client.post("/api/v1/expiry/tiers", json=TIER, headers=admin)
    assert resp.status_code == 201
    body = resp.json()
    assert body["error"] is None
    tier = body["data"]
    assert tier["sort_order"] == 1
    assert tier["active"] is True

    dup = await client.post("/api/v1/expiry/tiers", json={**TIER, "tier_name": "Other"}, headers=admin)
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "DUPLICATE_TIER"
    assert dup.json()["meta"]["days_before_expiry"] == 7

    updated = await client.put(
        f"/api/v1/expiry/tiers/{tier['id']}", json={"description": "Pull from shelf"}, headers=admin
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["description"] == "Pull from shelf"
    assert updated.json()["data"]["days_before_expiry"] == 7

    toggled = await client.patch(f"/api/v1/expiry/tiers/{tier['id']}/toggle", headers=admin)
    assert toggled.json()["data"]["active"] is False
    active = await client.get("/api/v1/expiry/tiers/active", headers=auth_headers("PHARMACY_STAFF"))
    assert active.json()["data"] == []

    deleted = await client.delete(f"/api/v1/expiry/tiers/{tier['id']}", headers=admin)
    assert deleted.json()["data"]["deleted"] is True
    missing = await client.get(f"/api/v1/expiry/tiers/{tier['id']}", headers=admin)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.parametrize(
    "override, field",
    [
        ({"color_code": "red"}, "color_code"),
        ({"days_before_expiry": 0}, "days_before_expiry"),
        ({"notify_roles": []}, "notify_roles"),
        ({"severity": "PANIC"}, "severity"),
    ],
)
async def test_tier_validation_envelope(client, override, field):
    resp = await client.post("/api/v1/expiry/tiers", json={**TIER, **override}, headers=auth_headers())
    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert [fe["field"] for fe in error["field_errors"]] == [field]


async def test_check_run_and_alert_lifecycle(client, db, factory):
    await factory.standard_tiers()
    await factory.batch(5)
    await factory.batch(45)
    await db.commit()
    manager = auth_headers("HOSPITAL_MANAGER", "mgr")

    resp = await client.post(
        "/api/v1/expiry/monitoring/check", json={"check_date": TODAY.isoformat()}, headers=manager
    )
    assert resp.status_code == 200
    result = resp.json()["data"]
    assert result["items_checked"] == 2
    assert result["alerts_generated"] == 2

    again = await client.post(
        "/api/v1/expiry/monitoring/check", json={"check_date": TODAY.isoformat()}, headers=manager
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "CHECK_ALREADY_RUN"
    assert again.json()["meta"]["current_state"] == "COMPLETED"

    forced = await client.post(
        "/api/v1/expiry/monitoring/check/force", json={"check_date": TODAY.isoformat()}, headers=manager
    )
    assert forced.status_code == 403

    status = await client.get(f"/api/v1/expiry/monitoring/status/{TODAY.isoformat()}", headers=manager)
    assert status.json()["data"]["status"] == "COMPLETED"

    staff = auth_headers("PHARMACY_STAFF", "sam")
    listed = await client.get("/api/v1/expiry/alerts", params={"page_size": 1}, headers=staff)
    body = listed.json()
    assert body["meta"] == {"page": 1, "page_size": 1, "total_count": 2}
    alert_id = body["data"][0]["id"]

    ack = await client.post(
        f"/api/v1/expiry/alerts/{alert_id}/acknowledge", json={"notes": "Moved to front shelf"}, headers=staff
    )
    assert ack.status_code == 200
    assert ack.json()["data"]["status"] == "ACKNOWLEDGED"
    assert ack.json()["data"]["acknowledged_by"] == "sam"

    ack_again = await client.post(f"/api/v1/expiry/alerts/{alert_id}/acknowledge", headers=staff)
    assert ack_again.status_code == 409
    assert ack_again.json()["meta"]["current_state"] == "ACKNOWLEDGED"

    counts = await client.get("/api/v1/expiry/alerts/counts", headers=staff)
    assert counts.json()["data"]["ACKNOWLEDGED"] == 1
    assert counts.json()["data"]["SENT"] == 1


async def test_quarantine_flow(client, db, factory, gateway):
    batch = await factory.batch(-3, quantity=12, cost="10.00")
    await db.commit()
    manager = auth_headers("HOSPITAL_MANAGER", "mgr")

    staff_try = await client.post(
        "/api/v1/quarantine",
        json={"batch_id": str(batch.id), "reason": "Expired"},
        headers=auth_headers("PHARMACY_STAFF"),
    )
    assert staff_try.status_code == 403

    created = await client.post(
        "/api/v1/quarantine", json={"batch_id": str(batch.id), "reason": "Expired"}, headers=manager
    )
    assert created.status_code == 201
    case = created.json()["data"]
    assert case["status"] == "PENDING_REVIEW"
    assert Decimal(str(case["estimated_loss"])) == Decimal("120")
    assert case["days_in_quarantine"] == 0

    again = await client.post(
        "/api/v1/quarantine", json={"batch_id": str(batch.id), "reason": "Expired"}, headers=manager
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"

    review = await client.post(
        f"/api/v1/quarantine/{case['id']}/actions", json={"action": "REVIEW"}, headers=manager
    )
    assert review.json()["data"]["status"] == "UNDER_REVIEW"

    illegal = await client.post(
        f"/api/v1/quarantine/{case['id']}/actions",
        json={"action": "DISPOSE", "disposal_certificate": "CERT-1"},
        headers=manager,
    )
    assert illegal.status_code == 409
    error = illegal.json()
    assert error["error"]["code"] == "ILLEGAL_TRANSITION"
    assert error["meta"] == {"current_state": "UNDER_REVIEW", "action": "DISPOSE"}

    pending = await client.get("/api/v1/quarantine/pending-review", headers=manager)
    assert pending.json()["data"] == []

    history = await client.get(f"/api/v1/quarantine/{case['id']}/history", headers=manager)
    assert [h["action"] for h in history.json()["data"]] == ["REVIEW", "QUARANTINE"]

    summary = await client.get("/api/v1/quarantine/summary", headers=manager)
    assert summary.json()["data"]["by_status"]["UNDER_REVIEW"] == 1
    assert [e[1] for e in gateway.events] == ["QUARANTINE_CREATED", "QUARANTINE_REVIEW"]


async def test_unknown_case_is_404(client):
    resp = await client.get(
        "/api/v1/quarantine/00000000-0000-0000-0000-000000000001", headers=auth_headers()
    )
    assert resp.status_code == 404
    assert resp.json()["meta"]["resource"] == "QuarantineCase"


def test_meta_page_size_follows_settings(monkeypatch):
    monkeypatch.setattr(get_settings(), "DEFAULT_PAGE_SIZE", 50)
    assert Meta().page_size == 50
    assert Meta(page_size=5).page_size == 5


async def test_dashboard_routes(client, db, factory):
    await factory.standard_tiers()
    await factory.batch(5, today=date.today())
    await factory.batch(-2, today=date.today())
    await db.commit()
    manager = auth_headers("HOSPITAL_MANAGER", "mgr")
    await client.post("/api/v1/expiry/monitoring/check", headers=manager)

    summary = (await client.get("/api/v1/expiry/monitoring/summary", headers=manager)).json()["data"]
    assert summary["expired_count"] == 1
    assert summary["expiring_this_week_count"] == 1
    assert len(summary["critical_items"]) == 1
    assert summary["last_check_status"] == "COMPLETED"

    report = (await client.get("/api/v1/expiry/monitoring/batch-report", headers=manager)).json()["data"]
    assert report["expiring_within"] == {"7": 1, "30": 1, "60": 1, "90": 1}
    assert report["expired_batches"] == 1

    critical = (await client.get("/api/v1/expiry/alerts/critical", headers=manager)).json()["data"]
    assert len(critical) == 1 and critical[0]["status"] == "SENT"

    staff_tiers = (await client.get("/api/v1/expiry/tiers/role/PHARMACY_STAFF", headers=manager)).json()["data"]
    assert len(staff_tiers) == 3
    admin_tiers = await client.get("/api/v1/expiry/tiers/role/ADMIN", headers=manager)
    assert admin_tiers.json()["data"] == []

from datetime import date
from decimal import Decimal

from sitehub.models.models import Attendance, AuditLog, LabourRequestParticipant, SyncActionLog, WageRate

from conftest import SITE_LAT, SITE_LNG


def manual_body(seed, action_id="a1", **overrides):
    payload = {
        "labour_id": str(seed.labour.id),
        "attendance_date": "2024-03-15",
        "work_hours": 8,
        "latitude": SITE_LAT,
        "longitude": SITE_LNG,
    }
    payload.update(overrides)
    return {
        "client_action_id": action_id,
        "action_type": "MANUAL_ATTENDANCE",
        "project_id": str(seed.project.id),
        "payload": payload,
    }


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_sync_requires_token(client, seed):
    r = client.post("/sync/actions", json=manual_body(seed))
    assert r.status_code == 401


def test_malformed_action_records_nothing(client, seed, headers, db):
    body = manual_body(seed)
    body["action_type"] = "LAUNCH_ROCKET"
    r = client.post("/sync/actions", json=body, headers=headers(seed.engineer))
    assert r.status_code == 422
    assert db.get(SyncActionLog, "a1") is None


def test_same_action_twice_applies_once(client, seed, headers, db):
    first = client.post("/sync/actions", json=manual_body(seed), headers=headers(seed.engineer))
    assert first.status_code == 200
    assert first.json()["sync_status"] == "APPLIED"

    second = client.post("/sync/actions", json=manual_body(seed), headers=headers(seed.engineer))
    assert second.status_code == 200
    data = second.json()
    assert data["sync_status"] == "DUPLICATE"
    assert data["success"] is True
    assert data["entity_id"] == first.json()["entity_id"]
    assert db.query(Attendance).count() == 1


def test_batch_endpoint(client, seed, headers):
    body = {"actions": [
        manual_body(seed, "b1"),
        manual_body(seed, "b2", attendance_date="2024-03-16", latitude=SITE_LAT + 0.05),
        manual_body(seed, "b1"),
    ]}
    r = client.post("/sync/batch", json=body, headers=headers(seed.engineer))
    assert r.status_code == 200
    data = r.json()
    assert data["summary"] == {"total": 3, "applied": 1, "rejected": 1, "skipped": 1}
    assert data["rejected"][0]["client_action_id"] == "b2"


def test_empty_batch_is_invalid(client, seed, headers):
    r = client.post("/sync/batch", json={"actions": []}, headers=headers(seed.engineer))
    assert r.status_code == 422


def test_geofence_check(client, seed, headers):
    url = f"/projects/{seed.project.id}/geofence/check"
    inside = client.post(url, json={"latitude": SITE_LAT, "longitude": SITE_LNG}, headers=headers(seed.engineer))
    assert inside.status_code == 200
    assert inside.json()["geofence_type"] == "CIRCLE"

    outside = client.post(url, json={"latitude": SITE_LAT + 0.05, "longitude": SITE_LNG}, headers=headers(seed.engineer))
    assert outside.status_code == 403
    detail = outside.json()["detail"]
    assert detail["code"] == "OUTSIDE_PROJECT_GEOFENCE"
    assert detail["geofence_type"] == "CIRCLE"

    bad = client.post(url, json={"latitude": 95, "longitude": SITE_LNG}, headers=headers(seed.engineer))
    assert bad.status_code == 400


def test_update_geofence(client, seed, headers, db):
    url = f"/projects/{seed.project.id}/geofence"
    malformed = client.put(
        url, json={"geofence": {"type": "POLYGON", "coordinates": [[0, 0], [1, 1]]}}, headers=headers(seed.manager)
    )
    assert malformed.status_code == 400

    polygon = {"type": "POLYGON", "coordinates": [[77.59, 12.97], [77.60, 12.97], [77.60, 12.975]]}
    ok = client.put(url, json={"geofence": polygon}, headers=headers(seed.manager))
    assert ok.status_code == 200
    assert ok.json()["geofence"]["type"] == "POLYGON"

    denied = client.put(url, json={"geofence": polygon}, headers=headers(seed.engineer))
    assert denied.status_code == 403

    audit = db.query(AuditLog).filter(AuditLog.category == "PROJECT_SETTINGS").one()
    assert audit.change_summary["changed_fields"] == ["geofence"]


def test_working_hours(client, seed, headers):
    url = f"/projects/{seed.project.id}/working-hours"
    r = client.get(url, headers=headers(seed.manager))
    assert r.status_code == 200
    assert r.json()["check_out_time"] == "18:00"
    assert r.json()["daily_ceiling"] == "18:00"

    updated = client.put(url, json={"check_in_time": "08:00", "check_out_time": "17:00"}, headers=headers(seed.manager))
    assert updated.status_code == 200
    assert updated.json()["check_in_time"] == "08:00"

    too_late = client.put(url, json={"check_in_time": "08:00", "check_out_time": "19:00"}, headers=headers(seed.manager))
    assert too_late.status_code == 400

    inverted = client.put(url, json={"check_in_time": "17:00", "check_out_time": "08:00"}, headers=headers(seed.manager))
    assert inverted.status_code == 400

    garbage = client.put(url, json={"check_in_time": "8am", "check_out_time": "17:00"}, headers=headers(seed.manager))
    assert garbage.status_code == 400

    not_creator = client.put(url, json={"check_in_time": "08:00", "check_out_time": "17:00"}, headers=headers(seed.owner))
    assert not_creator.status_code == 403


def test_manual_attendance_approval_unlocks_wage(client, seed, headers):
    applied = client.post("/sync/actions", json=manual_body(seed), headers=headers(seed.engineer)).json()
    attendance_id = applied["entity_id"]

    pending = client.get(f"/wages/attendance/{attendance_id}", headers=headers(seed.labour))
    assert pending.status_code == 200
    assert pending.json()["ready_for_payment"] is False
    assert pending.json()["message"] == "Manual attendance pending approval"

    # Site engineers cannot approve
    assert client.post(f"/attendance/{attendance_id}/approve", headers=headers(seed.engineer)).status_code == 403

    approved = client.post(f"/attendance/{attendance_id}/approve", headers=headers(seed.manager))
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"

    again = client.post(f"/attendance/{attendance_id}/approve", headers=headers(seed.manager))
    assert again.status_code == 409

    wage = client.get(f"/wages/attendance/{attendance_id}", headers=headers(seed.manager)).json()
    assert wage["ready_for_payment"] is True
    assert Decimal(str(wage["total_amount"])) == Decimal("800.00")


def test_wage_endpoint_errors(client, seed, headers, db):
    att = Attendance(
        project_id=seed.project.id,
        labour_id=seed.labour.id,
        attendance_date=date(2024, 3, 15),
        is_manual=True,
        status="APPROVED",
        work_hours=Decimal("8.00"),
        skill_type="UNSKILLED",
        category="HELPER",
    )
    db.add(att)
    db.commit()

    missing_rate = client.get(f"/wages/attendance/{att.id}", headers=headers(seed.manager))
    assert missing_rate.status_code == 422

    unknown = client.get(f"/wages/attendance/{seed.project.id}", headers=headers(seed.manager))
    assert unknown.status_code == 404

    outsider = client.get(f"/wages/attendance/{att.id}", headers=headers(seed.outsider))
    assert outsider.status_code == 403


def test_generate_and_review_wages(client, seed, headers):
    applied = client.post("/sync/actions", json=manual_body(seed), headers=headers(seed.engineer)).json()
    client.post(f"/attendance/{applied['entity_id']}/approve", headers=headers(seed.manager))

    r = client.post("/wages/generate", json={"project_id": str(seed.project.id)}, headers=headers(seed.manager))
    assert r.status_code == 201
    created = r.json()["created"]
    assert len(created) == 1
    wage_id = created[0]["id"]

    reviewed = client.patch(f"/wages/{wage_id}/review", json={"status": "APPROVED"}, headers=headers(seed.manager))
    assert reviewed.status_code == 200
    assert reviewed.json()["status"] == "APPROVED"

    twice = client.patch(f"/wages/{wage_id}/review", json={"status": "REJECTED"}, headers=headers(seed.manager))
    assert twice.status_code == 409


def test_wage_rate_crud(client, seed, headers, db):
    body = {"project_id": str(seed.project.id), "skill_type": "UNSKILLED", "category": "HELPER", "hourly_rate": "55.50"}
    created = client.post("/wage-rates", json=body, headers=headers(seed.manager))
    assert created.status_code == 201
    rate_id = created.json()["id"]

    duplicate = client.post("/wage-rates", json=body, headers=headers(seed.manager))
    assert duplicate.status_code == 400

    listed = client.get("/wage-rates", params={"project_id": str(seed.project.id)}, headers=headers(seed.manager))
    assert [r["category"] for r in listed.json()] == ["MASON", "HELPER"]

    patched = client.patch(f"/wage-rates/{rate_id}", json={"hourly_rate": "60.00"}, headers=headers(seed.manager))
    assert Decimal(str(patched.json()["hourly_rate"])) == Decimal("60.00")

    assert client.delete(f"/wage-rates/{rate_id}", headers=headers(seed.engineer)).status_code == 403
    assert client.delete(f"/wage-rates/{rate_id}", headers=headers(seed.manager)).status_code == 200

    actions = [a.action for a in db.query(AuditLog).filter(AuditLog.entity_type == "WAGE_RATE").all()]
    assert sorted(actions) == ["CREATE", "DELETE", "UPDATE"]


def test_wage_rate_create_race_is_a_duplicate(client, seed, headers, db, monkeypatch):
    from sitehub.routes import wage_rates

    # The existence check misses a row committed by a concurrent request
    monkeypatch.setattr(wage_rates, "_find_rate", lambda *args: None)
    body = {"project_id": str(seed.project.id), "skill_type": "SKILLED", "category": "MASON", "hourly_rate": "90.00"}
    response = client.post("/wage-rates", json=body, headers=headers(seed.manager))
    assert response.status_code == 400
    assert response.json()["detail"] == wage_rates.DUPLICATE_RATE

    rates = db.query(WageRate).filter(WageRate.project_id == seed.project.id, WageRate.category == "MASON").all()
    assert [Decimal(str(r.hourly_rate)) for r in rates] == [Decimal("100.00")]
    assert db.query(AuditLog).filter(AuditLog.entity_type == "WAGE_RATE").count() == 0


def test_participant_approval_respects_capacity(client, seed, headers, db):
    seed.labour_request.required_count = 1
    waiting = LabourRequestParticipant(
        labour_request_id=seed.labour_request.id, labour_id=seed.outsider.id, status="PENDING"
    )
    db.add(waiting)
    db.commit()

    url = f"/labour-requests/{seed.labour_request.id}/participants/{waiting.id}/approve"
    full = client.post(url, headers=headers(seed.manager))
    assert full.status_code == 409

    # Freeing the approved slot makes room
    reject_url = f"/labour-requests/{seed.labour_request.id}/participants/{seed.participant.id}/reject"
    rejected = client.post(reject_url, headers=headers(seed.manager))
    assert rejected.status_code == 200
    assert rejected.json()["approved_count"] == 0

    approved = client.post(url, headers=headers(seed.manager))
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"
    assert approved.json()["approved_count"] == 1


def test_capacity_endpoint(client, seed, headers):
    params = {"labour_id": str(seed.labour.id), "project_id": str(seed.project.id)}
    own = client.get("/labour-requests/capacity", params=params, headers=headers(seed.labour))
    assert own.status_code == 200
    assert own.json()["has_capacity"] is True

    other = client.get("/labour-requests/capacity", params=params, headers=headers(seed.outsider))
    assert other.status_code == 403


def test_audit_listing(client, seed, headers):
    client.post("/sync/actions", json=manual_body(seed), headers=headers(seed.engineer))

    r = client.get("/audit", params={"project_id": str(seed.project.id)}, headers=headers(seed.manager))
    assert r.status_code == 200
    data = r.json()
    assert data["pagination"]["total"] == 1
    assert data["audits"][0]["category"] == "ATTENDANCE"

    assert client.get("/audit", headers=headers(seed.labour)).status_code == 403
    assert client.get(
        "/audit", params={"project_id": str(seed.project.id)}, headers=headers(seed.outsider)
    ).status_code == 403
    assert client.get(
        "/audit", params={"start_date": "2024-03-10", "end_date": "2024-03-01"}, headers=headers(seed.manager)
    ).status_code == 400

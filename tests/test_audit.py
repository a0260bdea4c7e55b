from __future__ import annotations

import json

import pytest

from db import SessionLocal
from services.audit_log import count_expired_audit, purge_expired_audit, query_audit, record_audit, retention_cutoff
from utils import AUDIT_LIST_LIMIT, ValidationError, redact_for_audit

VENUE = "venue-1"
ADMIN = "admin-1"


def _api(client, action: str, data: dict | None = None, *, actor: str = ADMIN, venue: str = VENUE):
    return client.post(
        "/api",
        data=json.dumps({"action": action, "data": data or {}}),
        content_type="text/plain; charset=utf-8",
        headers={"X-Actor-Id": actor, "X-Venue-Id": venue},
    )


def _seed_entries(db) -> None:
    rows = [
        ("u1", "TEMPLATE_CREATE", "onboarding_template", "TPL-1", "2024-01-10T08:00:00.000Z"),
        ("u1", "STEP_STATUS_SET", "onboarding_session", "SES-1", "2024-02-10T08:00:00.000Z"),
        ("u2", "STEP_STATUS_SET", "onboarding_session", "SES-1", "2024-03-10T08:00:00.000Z"),
        ("u2", "CANDIDATE_REJECT", "candidate", "CAN-9", "2024-04-10T08:00:00.000Z"),
    ]
    for user_id, action, rtype, rid, at in rows:
        record_audit(db, venue_id=VENUE, user_id=user_id, action=action, resource_type=rtype, resource_id=rid, details={"n": 1}, at=at)
    record_audit(db, venue_id="venue-2", user_id="u1", action="STEP_STATUS_SET", resource_type="onboarding_session", at="2024-03-01T00:00:00.000Z")
    db.commit()


def test_record_audit_redacts_sensitive_details(app_client):
    with SessionLocal() as db:
        row = record_audit(db, venue_id=VENUE, user_id="u1", action="CANDIDATE_CREATE", resource_type="candidate",
                           details={"email": "sarah@example.com", "position": "Sound Engineer"})
        db.commit()
        assert row.details["email"] != "sarah@example.com"
        assert row.details["position"] == "Sound Engineer"


def test_redaction_covers_secrets_and_marks_long_lists():
    out = redact_for_audit(
        {"secret": "s3", "clientSecret": "s4", "apiToken": "t1", "reason": "ok", "ids": list(range(60))}
    )
    assert out["secret"] == out["clientSecret"] == out["apiToken"] == "***"
    assert out["reason"] == "ok"
    assert out["ids"][:AUDIT_LIST_LIMIT] == list(range(AUDIT_LIST_LIMIT))
    assert out["ids"][-1] == "[+10 more]"
    assert len(out["ids"]) == AUDIT_LIST_LIMIT + 1

    assert redact_for_audit({"ids": [1, 2]}) == {"ids": [1, 2]}


def test_record_audit_requires_action(app_client):
    with SessionLocal() as db:
        with pytest.raises(ValidationError):
            record_audit(db, venue_id=VENUE, user_id="u1", action=" ", resource_type="candidate")


def test_query_filters_and_orders_newest_first(app_client):
    with SessionLocal() as db:
        _seed_entries(db)

        res = query_audit(db, VENUE, {})
        assert res["totalCount"] == 4
        assert [e["timestamp"][:7] for e in res["entries"]] == ["2024-04", "2024-03", "2024-02", "2024-01"]

        res = query_audit(db, VENUE, {"action": "STEP_STATUS_SET"})
        assert res["totalCount"] == 2

        res = query_audit(db, VENUE, {"userId": "u2", "resourceId": "SES-1"})
        assert [e["action"] for e in res["entries"]] == ["STEP_STATUS_SET"]

        res = query_audit(db, VENUE, {"dateFrom": "2024-02-10T08:00:00Z", "dateTo": "2024-03-10"})
        assert res["totalCount"] == 2

        res = query_audit(db, VENUE, {"dateFrom": "2024-02-01", "dateTo": "2024-03-31T23:59:59Z"})
        assert res["totalCount"] == 2


def test_date_only_upper_bound_covers_the_whole_day(app_client):
    with SessionLocal() as db:
        for at in ("2024-06-01T00:00:00.000Z", "2024-06-01T17:45:00.000Z", "2024-06-01T23:59:59.999Z", "2024-06-02T00:00:00.000Z"):
            record_audit(db, venue_id=VENUE, user_id="u1", action="STAFF_UPDATE", resource_type="staff_member", at=at)
        db.commit()

        res = query_audit(db, VENUE, {"dateFrom": "2024-06-01", "dateTo": "2024-06-01"})
        assert res["totalCount"] == 3
        assert "2024-06-02T00:00:00.000Z" not in [e["timestamp"] for e in res["entries"]]

        res = query_audit(db, VENUE, {"dateTo": "2024-06-01T12:00:00Z"})
        assert res["totalCount"] == 1


def test_query_paginates(app_client):
    with SessionLocal() as db:
        _seed_entries(db)
        page1 = query_audit(db, VENUE, {}, offset=0, limit=3)
        page2 = query_audit(db, VENUE, {}, offset=3, limit=3)
    assert len(page1["entries"]) == 3
    assert len(page2["entries"]) == 1
    assert page1["totalCount"] == page2["totalCount"] == 4
    ids = {e["id"] for e in page1["entries"]} | {e["id"] for e in page2["entries"]}
    assert len(ids) == 4


def test_query_rejects_bad_ranges(app_client):
    with SessionLocal() as db:
        with pytest.raises(ValidationError):
            query_audit(db, VENUE, {"dateFrom": "2024-05-01", "dateTo": "2024-04-01"})
        with pytest.raises(ValidationError):
            query_audit(db, VENUE, {"dateFrom": "last tuesday"})


def test_retention_cutoff():
    assert retention_cutoff(30, now="2024-03-31T00:00:00.000Z") == "2024-03-01T00:00:00.000Z"


def test_purge_only_touches_expired_rows_of_one_venue(app_client):
    now = "2024-04-15T00:00:00.000Z"
    with SessionLocal() as db:
        _seed_entries(db)
        assert count_expired_audit(db, VENUE, 60, now=now) == 2
        res = purge_expired_audit(db, VENUE, 60, now=now)
        db.commit()
        assert res["deleted"] == 2
        assert query_audit(db, VENUE, {})["totalCount"] == 2
        assert query_audit(db, "venue-2", {})["totalCount"] == 1


def test_purge_action_requires_confirmation_and_records_itself(app_client):
    _app, client = app_client
    with SessionLocal() as db:
        _seed_entries(db)

    assert _api(client, "AUDIT_PURGE", {}).status_code == 400

    assert _api(client, "SETTINGS_SET", {"key": "AUDIT_RETENTION_DAYS", "value": "1"}).status_code == 200
    res = _api(client, "AUDIT_PURGE", {"confirm": True})
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["deleted"] == 4
    assert data["retentionDays"] == 1
    assert data["notice"]["variant"] == "destructive"

    res = _api(client, "AUDIT_QUERY", {"filters": {"action": "AUDIT_PURGE"}})
    entries = res.get_json()["data"]["entries"]
    assert len(entries) == 1
    assert entries[0]["details"]["deleted"] == 4


def test_audit_rest_route(app_client):
    _app, client = app_client
    with SessionLocal() as db:
        _seed_entries(db)
    res = client.get("/api/audit?action=CANDIDATE_REJECT", headers={"X-Actor-Id": ADMIN, "X-Venue-Id": VENUE})
    assert res.status_code == 200
    assert res.get_json()["data"]["entries"][0]["resourceId"] == "CAN-9"

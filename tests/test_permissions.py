from __future__ import annotations

import json

from actions import ACTION_HANDLERS
from auth import ACTION_PERMISSIONS, ALL_PERMISSIONS, ROLE_ORDER, permissions_for_role

VENUE = "venue-1"
ADMIN = "admin-1"


def _api(client, action: str, data: dict | None = None, *, actor: str = ADMIN, venue: str = VENUE):
    return client.post(
        "/api",
        data=json.dumps({"action": action, "data": data or {}}),
        content_type="text/plain; charset=utf-8",
        headers={"X-Actor-Id": actor, "X-Venue-Id": venue},
    )


def _add_member(client, user_id: str, role: str, status: str = "ACTIVE"):
    res = _api(client, "VENUE_MEMBER_UPSERT", {"userId": user_id, "role": role, "status": status, "displayName": user_id})
    assert res.status_code == 200, res.get_json()
    return res.get_json()["data"]["member"]


def test_role_matrix_is_cumulative():
    previous: frozenset[str] = frozenset()
    for role in ROLE_ORDER:
        perms = permissions_for_role(role)
        assert previous < perms
        previous = perms
    assert permissions_for_role("admin") == ALL_PERMISSIONS
    assert "templates:manage" in permissions_for_role("Manager")
    assert "templates:manage" not in permissions_for_role("supervisor")


def test_unknown_role_has_no_permissions():
    assert permissions_for_role("janitor") == frozenset()
    assert permissions_for_role("") == frozenset()


def test_every_action_maps_to_a_known_permission():
    assert set(ACTION_HANDLERS) == set(ACTION_PERMISSIONS)
    assert set(ACTION_PERMISSIONS.values()) <= ALL_PERMISSIONS


def test_unknown_actor_is_rejected(app_client):
    _app, client = app_client
    res = _api(client, "TEMPLATE_LIST", actor="stranger")
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

    res = client.post("/api", data=json.dumps({"action": "TEMPLATE_LIST"}), content_type="application/json")
    assert res.status_code == 401


def test_actor_is_scoped_to_venue(app_client):
    _app, client = app_client
    res = _api(client, "TEMPLATE_LIST", venue="venue-2")
    assert res.status_code == 401


def test_staff_cannot_edit_templates_and_denial_is_audited(app_client):
    _app, client = app_client
    _add_member(client, "staff-1", "staff")

    assert _api(client, "TEMPLATE_LIST", actor="staff-1").status_code == 200

    res = _api(client, "TEMPLATE_SAVE", {"template": {"name": "x"}}, actor="staff-1")
    assert res.status_code == 403
    body = res.get_json()
    assert body["error"]["code"] == "FORBIDDEN"
    assert body["error"]["details"]["permission"] == "templates:manage"

    res = _api(client, "AUDIT_QUERY", {"filters": {"action": "ACCESS_DENIED"}})
    entries = res.get_json()["data"]["entries"]
    assert len(entries) == 1
    assert entries[0]["userId"] == "staff-1"
    assert entries[0]["resourceId"] == "TEMPLATE_SAVE"


def test_override_grants_and_denies_single_permission(app_client):
    _app, client = app_client
    _add_member(client, "staff-1", "staff")

    res = _api(client, "PERMISSION_CHECK", {"action": "TEMPLATE_SAVE"}, actor="staff-1")
    assert res.get_json()["data"]["allowed"] is False

    res = _api(client, "PERMISSION_OVERRIDE_SET", {"userId": "staff-1", "permission": "templates:manage", "granted": True})
    assert res.status_code == 200
    res = _api(client, "PERMISSION_CHECK", {"action": "TEMPLATE_SAVE"}, actor="staff-1")
    assert res.get_json()["data"]["allowed"] is True

    res = _api(client, "PERMISSION_OVERRIDE_SET", {"userId": "staff-1", "permission": "steps:update", "granted": False})
    assert res.status_code == 200
    res = _api(client, "PERMISSION_CHECK", {"userId": "staff-1", "action": "steps:update"})
    data = res.get_json()["data"]
    assert data["allowed"] is False
    assert data["role"] == "staff"

    res = _api(client, "PERMISSION_OVERRIDE_SET", {"userId": "staff-1", "permission": "templates:manage", "clear": True})
    assert res.status_code == 200
    res = _api(client, "PERMISSION_CHECK", {"action": "TEMPLATE_SAVE"}, actor="staff-1")
    assert res.get_json()["data"]["allowed"] is False


def test_checking_other_users_needs_permissions_manage(app_client):
    _app, client = app_client
    _add_member(client, "staff-1", "staff")
    res = _api(client, "PERMISSION_CHECK", {"userId": ADMIN, "action": "AUDIT_PURGE"}, actor="staff-1")
    assert res.status_code == 403


def test_unknown_action_in_permission_check(app_client):
    _app, client = app_client
    res = _api(client, "PERMISSION_CHECK", {"action": "LAUNCH_ROCKET"})
    assert res.status_code == 400


def test_disabled_member_is_forbidden(app_client):
    _app, client = app_client
    _add_member(client, "mgr-1", "manager")
    assert _api(client, "TEMPLATE_LIST", actor="mgr-1").status_code == 200

    _add_member(client, "mgr-1", "manager", status="DISABLED")
    res = _api(client, "TEMPLATE_LIST", actor="mgr-1")
    assert res.status_code == 403


def test_members_cannot_change_their_own_role(app_client):
    _app, client = app_client
    res = _api(client, "VENUE_MEMBER_UPSERT", {"userId": ADMIN, "role": "staff"})
    assert res.status_code == 400


def test_unknown_role_is_rejected_on_upsert(app_client):
    _app, client = app_client
    res = _api(client, "VENUE_MEMBER_UPSERT", {"userId": "x", "role": "janitor"})
    assert res.status_code == 400


def test_settings_are_admin_only_and_audited(app_client):
    _app, client = app_client
    _add_member(client, "mgr-1", "manager")
    assert _api(client, "SETTINGS_SET", {"key": "AUDIT_RETENTION_DAYS", "value": "30"}, actor="mgr-1").status_code == 403

    res = _api(client, "SETTINGS_SET", {"key": "AUDIT_RETENTION_DAYS", "value": "30"})
    assert res.status_code == 200
    res = _api(client, "SETTINGS_GET")
    assert res.get_json()["data"]["settings"] == {"AUDIT_RETENTION_DAYS": "30"}
    assert _api(client, "SETTINGS_SET", {"key": "AUDIT_RETENTION_DAYS", "value": "0"}).status_code == 400

    res = _api(client, "AUDIT_QUERY", {"filters": {"action": "SETTINGS_SET"}})
    assert res.get_json()["data"]["totalCount"] == 1


def test_demotion_is_not_undone_by_a_concurrent_cache_fill(app_client, monkeypatch):
    import actions.access as access_actions
    import auth
    from db import SessionLocal

    _app, client = app_client
    _add_member(client, "u2", "admin")
    assert _api(client, "SETTINGS_GET", actor="u2").status_code == 200

    real_invalidate = access_actions.invalidate_actor_cache

    def invalidate_then_reread(db, venue_id, user_id=""):
        real_invalidate(db, venue_id, user_id)
        # Another request reads the member before this one commits.
        with SessionLocal() as other:
            auth._member_snapshot(other, venue_id, user_id)

    monkeypatch.setattr(access_actions, "invalidate_actor_cache", invalidate_then_reread)
    _add_member(client, "u2", "staff")

    res = _api(client, "SETTINGS_GET", actor="u2")
    assert res.status_code == 403


def test_failed_role_change_keeps_cached_access(app_client, monkeypatch):
    import actions.access as access_actions
    from cache_layer import MEMBER, lookup_access

    _app, client = app_client
    _add_member(client, "u3", "manager")
    assert _api(client, "TEMPLATE_LIST", actor="u3").status_code == 200
    assert lookup_access(MEMBER, VENUE, "u3")["role"] == "manager"

    def append_audit_fails(*_a, **_kw):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(access_actions, "append_audit", append_audit_fails)
    res = _api(client, "VENUE_MEMBER_UPSERT", {"userId": "u3", "role": "staff"})
    assert res.status_code == 500
    assert lookup_access(MEMBER, VENUE, "u3")["role"] == "manager"

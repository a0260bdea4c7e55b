from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit, req_str, require_auth
from auth import ALL_PERMISSIONS, ROLE_ORDER, assert_permission, check_permission, invalidate_actor_cache
from db import storage_step
from models import PermissionOverride, Setting, VenueMember
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, new_uuid, normalize_role, notice, parse_bool


MEMBER_STATUSES = {"ACTIVE", "DISABLED"}

# key -> minimum integer value
EDITABLE_SETTINGS: dict[str, int] = {"AUDIT_RETENTION_DAYS": 1}


def _serialize_member(m: VenueMember) -> dict[str, Any]:
    return {
        "userId": str(m.userId or ""),
        "venueId": str(m.venueId or ""),
        "displayName": str(m.displayName or ""),
        "email": str(m.email or ""),
        "role": str(m.role or ""),
        "status": str(m.status or ""),
        "updatedAt": str(m.updatedAt or ""),
    }


def venue_member_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    user_id = req_str(data, "userId", max_len=128)
    role = normalize_role(req_str(data, "role"))
    if role not in ROLE_ORDER:
        raise ValidationError(f"Unknown role: {role}", details={"allowed": ", ".join(ROLE_ORDER)})
    status = req_str(data, "status", required=False).upper() or "ACTIVE"
    if status not in MEMBER_STATUSES:
        raise ValidationError("Invalid member status", details={"allowed": ", ".join(sorted(MEMBER_STATUSES))})
    if user_id == auth.userId and (role != normalize_role(auth.role) or status != "ACTIVE"):
        raise ValidationError("You cannot change your own role or status")

    now = iso_utc_now()
    row = db.execute(
        select(VenueMember).where(VenueMember.venueId == auth.venueId).where(VenueMember.userId == user_id)
    ).scalar_one_or_none()
    previous = {"role": "", "status": ""}
    created = row is None
    if created:
        row = VenueMember(memberId=f"MEM-{new_uuid()}", venueId=auth.venueId, userId=user_id, createdAt=now, createdBy=auth.userId)
    else:
        previous = {"role": str(row.role or ""), "status": str(row.status or "")}

    d = data or {}
    if created or "displayName" in d:
        row.displayName = req_str(d, "displayName", required=False, max_len=200)
    if created or "email" in d:
        row.email = req_str(d, "email", required=False, max_len=320).lower()
    row.role = role
    row.status = status
    row.updatedAt = now
    row.updatedBy = auth.userId

    with storage_step(db, "member_upsert"):
        if created:
            db.add(row)
    invalidate_actor_cache(db, auth.venueId, user_id)

    append_audit(
        db,
        auth,
        action="VENUE_MEMBER_UPSERT",
        resource_type="venue_member",
        resource_id=user_id,
        details={"fromRole": previous["role"], "toRole": role, "fromStatus": previous["status"], "toStatus": status},
        at=now,
    )
    return {"member": _serialize_member(row), "notice": notice("Member saved", f"{row.displayName or user_id} is now {role}.")}


def venue_member_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = db.execute(select(VenueMember).where(VenueMember.venueId == auth.venueId).order_by(VenueMember.displayName, VenueMember.userId)).scalars().all()
    return {"items": [_serialize_member(m) for m in rows]}


def permission_override_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    user_id = req_str(data, "userId")
    permission = req_str(data, "permission").lower()
    if permission not in ALL_PERMISSIONS:
        raise ValidationError(f"Unknown permission: {permission}", details={"allowed": ", ".join(sorted(ALL_PERMISSIONS))})
    clear = parse_bool((data or {}).get("clear"))
    if not clear and "granted" not in (data or {}):
        raise ValidationError("Missing granted", details={"field": "granted"})
    granted = parse_bool((data or {}).get("granted"))

    member = db.execute(
        select(VenueMember.userId).where(VenueMember.venueId == auth.venueId).where(VenueMember.userId == user_id)
    ).first()
    if not member:
        raise NotFoundError("Venue member not found", details={"userId": user_id})

    now = iso_utc_now()
    row = db.execute(
        select(PermissionOverride)
        .where(PermissionOverride.venueId == auth.venueId)
        .where(PermissionOverride.userId == user_id)
        .where(PermissionOverride.permission == permission)
    ).scalar_one_or_none()

    with storage_step(db, "permission_override_write"):
        if clear:
            if row is not None:
                db.delete(row)
        else:
            if row is None:
                row = PermissionOverride(venueId=auth.venueId, userId=user_id, permission=permission)
                db.add(row)
            row.granted = granted
            row.reason = req_str(data, "reason", required=False, max_len=500)
            row.updatedAt = now
            row.updatedBy = auth.userId
    invalidate_actor_cache(db, auth.venueId, user_id)

    details = {"permission": permission, "cleared": clear}
    if not clear:
        details["granted"] = granted
    append_audit(db, auth, action="PERMISSION_OVERRIDE_SET", resource_type="venue_member", resource_id=user_id, details=details, at=now)
    if clear:
        msg = f"Override for {permission} removed."
    else:
        msg = f"{permission} {'granted to' if granted else 'denied for'} {user_id}."
    return {"override": details, "notice": notice("Permissions updated", msg)}


def permission_check(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    user_id = req_str(data, "userId", required=False) or auth.userId
    if user_id != auth.userId:
        assert_permission(db, auth, "permissions:manage")
    return check_permission(db, user_id, auth.venueId, req_str(data, "action"))


def settings_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = db.execute(select(Setting).where(Setting.venueId == auth.venueId)).scalars().all()
    stored = {str(r.key): str(r.value or "") for r in rows}
    defaults = {"AUDIT_RETENTION_DAYS": str(cfg.AUDIT_RETENTION_DAYS)}
    return {"settings": {k: stored.get(k, defaults.get(k, "")) for k in EDITABLE_SETTINGS}}


def settings_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    key = req_str(data, "key").upper()
    if key not in EDITABLE_SETTINGS:
        raise ValidationError(f"Unknown setting: {key}", details={"allowed": ", ".join(sorted(EDITABLE_SETTINGS))})
    raw = req_str(data, "value")
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer")
    if value < EDITABLE_SETTINGS[key]:
        raise ValidationError(f"{key} must be >= {EDITABLE_SETTINGS[key]}")

    now = iso_utc_now()
    row = db.execute(select(Setting).where(Setting.venueId == auth.venueId).where(Setting.key == key)).scalar_one_or_none()
    previous = str(row.value or "") if row else ""
    with storage_step(db, "setting_write"):
        if row is None:
            row = Setting(venueId=auth.venueId, key=key)
            db.add(row)
        row.value = str(value)
        row.updatedAt = now
        row.updatedBy = auth.userId

    append_audit(db, auth, action="SETTINGS_SET", resource_type="setting", resource_id=key, details={"from": previous, "to": str(value)}, at=now)
    return {"key": key, "value": str(value), "notice": notice("Setting saved", f"{key} set to {value}.")}

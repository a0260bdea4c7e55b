from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select

from db import storage_step
from models import ActivityEntry, Setting
from services.audit_log import record_audit_for
from utils import AuthContext, AuthError, ValidationError, iso_utc_now, new_uuid

logger = logging.getLogger("onboarding")


def require_auth(auth: Optional[AuthContext]) -> AuthContext:
    if not auth or not auth.valid:
        raise AuthError("Actor required")
    return auth


def req_str(data: Any, key: str, *, required: bool = True, max_len: int = 0) -> str:
    val = str((data or {}).get(key) or "").strip()
    if required and not val:
        raise ValidationError(f"Missing {key}", details={"field": key})
    if max_len and len(val) > max_len:
        raise ValidationError(f"{key} is too long", details={"field": key, "maxLength": max_len})
    return val


def append_audit(
    db,
    auth: AuthContext,
    *,
    action: str,
    resource_type: str,
    resource_id: str = "",
    details: Optional[dict[str, Any]] = None,
    at: Optional[str] = None,
):
    return record_audit_for(db, auth, action=action, resource_type=resource_type, resource_id=resource_id, details=details, at=at)


def append_activity(
    db,
    auth: AuthContext,
    *,
    kind: str,
    message: str,
    session_id: str = "",
    candidate_id: str = "",
    payload: Optional[dict[str, Any]] = None,
    at: Optional[str] = None,
) -> ActivityEntry:
    row = ActivityEntry(
        activityId=f"ACT-{new_uuid()}",
        venueId=auth.venueId,
        sessionId=str(session_id or ""),
        candidateId=str(candidate_id or ""),
        kind=str(kind or "info"),
        message=str(message or ""),
        payload=dict(payload or {}),
        at=at or iso_utc_now(),
        actorUserId=auth.userId,
    )
    with storage_step(db, "activity_append"):
        db.add(row)
    return row


def _setting_raw(db, venue_id: str, key: str) -> str:
    k = str(key or "").strip()
    if not k:
        return ""
    # Venue value wins over the global ("") row.
    rows = db.execute(select(Setting).where(Setting.key == k).where(Setting.venueId.in_([venue_id, ""]))).scalars().all()
    by_venue = {str(r.venueId or ""): str(r.value or "").strip() for r in rows}
    return by_venue.get(venue_id) or by_venue.get("") or ""


def setting_int(db, venue_id: str, key: str, default: int) -> int:
    raw = _setting_raw(db, venue_id, key)
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        logger.warning("ignoring non-numeric setting venue=%s key=%s value=%r", venue_id, key, raw)
        return int(default)


def retention_days(db, venue_id: str, cfg) -> int:
    return max(1, setting_int(db, venue_id, "AUDIT_RETENTION_DAYS", cfg.AUDIT_RETENTION_DAYS))

from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select

from db import storage_step
from models import AuditLog
from utils import AuthContext, ValidationError, clamp_int, iso_utc_now, new_uuid, parse_iso_utc, redact_for_audit, to_iso_utc


def serialize_audit(row: AuditLog) -> dict[str, Any]:
    return {
        "id": str(row.logId or ""),
        "venueId": str(row.venueId or ""),
        "userId": str(row.userId or ""),
        "action": str(row.action or ""),
        "resourceType": str(row.resourceType or ""),
        "resourceId": str(row.resourceId or ""),
        "details": dict(row.details or {}),
        "timestamp": str(row.timestamp or ""),
        "ipAddress": str(row.ipAddress or ""),
        "userAgent": str(row.userAgent or ""),
    }


def record_audit(
    db,
    *,
    venue_id: str,
    user_id: str,
    action: str,
    resource_type: str,
    resource_id: str = "",
    details: Optional[dict[str, Any]] = None,
    ip_address: str = "",
    user_agent: str = "",
    at: Optional[str] = None,
) -> AuditLog:
    """Append one entry. Storage failures propagate as StorageError("audit_append")."""

    if not str(action or "").strip():
        raise ValidationError("Audit action is required")
    row = AuditLog(
        logId=f"AUD-{new_uuid()}",
        venueId=str(venue_id or ""),
        userId=str(user_id or ""),
        action=str(action).strip(),
        resourceType=str(resource_type or "").strip(),
        resourceId=str(resource_id or "").strip(),
        details=redact_for_audit(dict(details or {})),
        timestamp=at or iso_utc_now(),
        ipAddress=str(ip_address or "")[:64],
        userAgent=str(user_agent or "")[:512],
    )
    with storage_step(db, "audit_append"):
        db.add(row)
    return row


def record_audit_for(db, auth: AuthContext, *, action: str, resource_type: str, resource_id: str = "", details=None, at=None) -> AuditLog:
    return record_audit(
        db,
        venue_id=auth.venueId,
        user_id=auth.userId,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=auth.ipAddress,
        user_agent=auth.userAgent,
        at=at,
    )


_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _normalize_bound(value: Any, field: str, *, end_of_day: bool = False) -> str:
    raw = str(value or "").strip()
    if not raw:
        return ""
    dt = parse_iso_utc(raw)
    if dt is None:
        raise ValidationError(f"Invalid {field}; expected ISO-8601", details={"field": field})
    if end_of_day and _DATE_ONLY.match(raw):
        # A bare date as the upper bound covers that whole day.
        dt = dt + timedelta(days=1) - timedelta(milliseconds=1)
    return to_iso_utc(dt)


def query_audit(db, venue_id: str, filters: Optional[dict[str, Any]] = None, *, offset: Any = 0, limit: Any = 50) -> dict[str, Any]:
    """
    Filter by userId / action / resourceType / resourceId and an inclusive
    [dateFrom, dateTo] range, newest first. Timestamps are stored as
    normalized ISO-8601 UTC strings, so string comparison is chronological.
    """

    f = dict(filters or {})
    date_from = _normalize_bound(f.get("dateFrom"), "dateFrom")
    date_to = _normalize_bound(f.get("dateTo"), "dateTo", end_of_day=True)
    if date_from and date_to and date_from > date_to:
        raise ValidationError("dateFrom must not be after dateTo")

    off = clamp_int(offset, default=0, min_v=0, max_v=1_000_000)
    lim = clamp_int(limit, default=50, min_v=1, max_v=500)

    q = select(AuditLog).where(AuditLog.venueId == str(venue_id or ""))
    for key, col in (
        ("userId", AuditLog.userId),
        ("action", AuditLog.action),
        ("resourceType", AuditLog.resourceType),
        ("resourceId", AuditLog.resourceId),
    ):
        val = str(f.get(key) or "").strip()
        if val:
            q = q.where(col == val)
    if date_from:
        q = q.where(AuditLog.timestamp >= date_from)
    if date_to:
        q = q.where(AuditLog.timestamp <= date_to)

    total = int(db.execute(select(func.count()).select_from(q.subquery())).scalar_one() or 0)
    rows = db.execute(q.order_by(AuditLog.timestamp.desc(), AuditLog.logId.desc()).offset(off).limit(lim)).scalars().all()
    return {"entries": [serialize_audit(r) for r in rows], "totalCount": total, "offset": off, "limit": lim}


def retention_cutoff(retention_days: int, *, now: Optional[str] = None) -> str:
    base = parse_iso_utc(now) if now else None
    if base is None:
        base = parse_iso_utc(iso_utc_now())
    return to_iso_utc(base - timedelta(days=int(retention_days)))


def count_expired_audit(db, venue_id: str, retention_days: int, *, now: Optional[str] = None) -> int:
    cutoff = retention_cutoff(retention_days, now=now)
    return int(
        db.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.venueId == venue_id).where(AuditLog.timestamp < cutoff)
        ).scalar_one()
        or 0
    )


def purge_expired_audit(db, venue_id: str, retention_days: int, *, now: Optional[str] = None) -> dict[str, Any]:
    """The only path that deletes audit rows."""

    cutoff = retention_cutoff(retention_days, now=now)
    with storage_step(db, "audit_purge"):
        res = db.execute(delete(AuditLog).where(AuditLog.venueId == venue_id).where(AuditLog.timestamp < cutoff))
    return {"deleted": int(res.rowcount or 0), "cutoff": cutoff}

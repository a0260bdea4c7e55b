from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit, req_str, require_auth
from db import storage_step
from models import StaffCertification, StaffMember
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, new_uuid, notice, parse_bool, parse_iso_utc, to_iso_utc


STAFF_STATUSES = {"active", "inactive"}


def _iso_or_empty(value: Any, field: str, *, required: bool = False) -> str:
    raw = str(value or "").strip()
    if not raw:
        if required:
            raise ValidationError(f"Missing {field}", details={"field": field})
        return ""
    dt = parse_iso_utc(raw)
    if dt is None:
        raise ValidationError(f"Invalid {field}; expected ISO-8601", details={"field": field})
    return to_iso_utc(dt)


def _serialize_cert(c: StaffCertification, now: str) -> dict[str, Any]:
    exp = str(c.expiresAt or "")
    return {
        "id": str(c.certId or ""),
        "name": str(c.name or ""),
        "issuedAt": str(c.issuedAt or ""),
        "expiresAt": exp,
        "expired": bool(exp) and exp < now,
    }


def _serialize_staff(s: StaffMember, certs: list[StaffCertification], now: str) -> dict[str, Any]:
    return {
        "id": str(s.staffId or ""),
        "userId": str(s.userId or ""),
        "candidateId": str(s.candidateId or ""),
        "name": str(s.name or ""),
        "position": str(s.position or ""),
        "department": str(s.department or ""),
        "status": str(s.status or ""),
        "trainingCompleted": bool(s.trainingCompleted),
        "hiredAt": str(s.hiredAt or ""),
        "certifications": [_serialize_cert(c, now) for c in certs],
    }


def staff_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    staff_id = req_str(data, "staffId", required=False)
    now = iso_utc_now()

    if staff_id:
        row = db.execute(
            select(StaffMember).where(StaffMember.staffId == staff_id).where(StaffMember.venueId == auth.venueId)
        ).scalar_one_or_none()
        if not row:
            raise NotFoundError("Staff member not found", details={"staffId": staff_id})
        created = False
    else:
        row = StaffMember(staffId=f"STF-{new_uuid()}", venueId=auth.venueId, status="active", trainingCompleted=False, createdAt=now)
        created = True

    d = data or {}
    if created or "name" in d:
        row.name = req_str(d, "name", max_len=200)
    for key in ("position", "department", "userId"):
        if created or key in d:
            setattr(row, key, req_str(d, key, required=False, max_len=200))
    if "status" in d:
        status = req_str(d, "status").lower()
        if status not in STAFF_STATUSES:
            raise ValidationError("Invalid staff status", details={"allowed": ", ".join(sorted(STAFF_STATUSES))})
        row.status = status
    if "trainingCompleted" in d:
        row.trainingCompleted = parse_bool(d.get("trainingCompleted"))
    if created or "hiredAt" in d:
        row.hiredAt = _iso_or_empty(d.get("hiredAt"), "hiredAt")
    row.updatedAt = now
    row.updatedBy = auth.userId

    with storage_step(db, "staff_upsert"):
        if created:
            db.add(row)

    append_audit(
        db,
        auth,
        action="STAFF_CREATE" if created else "STAFF_UPDATE",
        resource_type="staff_member",
        resource_id=row.staffId,
        details={"status": row.status, "trainingCompleted": bool(row.trainingCompleted)},
        at=now,
    )
    return {"staff": _serialize_staff(row, [], now), "notice": notice("Staff saved", f"{row.name} saved.")}


def upsert_staff_from_candidate(db, auth: AuthContext, cand, *, at: str, user_id: str = "") -> tuple[StaffMember, bool]:
    """Create or refresh the staff row that a candidate's completed onboarding produces."""
    row = db.execute(
        select(StaffMember).where(StaffMember.venueId == auth.venueId).where(StaffMember.candidateId == cand.candidateId)
    ).scalar_one_or_none()
    created = row is None
    if created:
        row = StaffMember(staffId=f"STF-{new_uuid()}", venueId=auth.venueId, candidateId=cand.candidateId, createdAt=at, hiredAt=at)

    row.name = cand.name
    row.position = cand.position
    row.department = cand.department
    row.status = "active"
    row.trainingCompleted = bool(cand.trainingCompleted)
    if user_id:
        row.userId = user_id
    if cand.startDate:
        row.hiredAt = cand.startDate
    row.updatedAt = at
    row.updatedBy = auth.userId

    with storage_step(db, "staff_upsert"):
        if created:
            db.add(row)

    append_audit(
        db,
        auth,
        action="STAFF_CREATE" if created else "STAFF_UPDATE",
        resource_type="staff_member",
        resource_id=row.staffId,
        details={"candidateId": cand.candidateId, "status": row.status, "trainingCompleted": bool(row.trainingCompleted)},
        at=at,
    )
    return row, created


def staff_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    stmt = select(StaffMember).where(StaffMember.venueId == auth.venueId)
    status = req_str(data, "status", required=False).lower()
    if status:
        stmt = stmt.where(StaffMember.status == status)
    department = req_str(data, "department", required=False)
    if department:
        stmt = stmt.where(StaffMember.department == department)
    rows = db.execute(stmt.order_by(StaffMember.name.asc())).scalars().all()

    ids = [r.staffId for r in rows]
    by_staff: dict[str, list[StaffCertification]] = {}
    if ids:
        for c in db.execute(select(StaffCertification).where(StaffCertification.staffId.in_(ids)).order_by(StaffCertification.expiresAt)).scalars():
            by_staff.setdefault(str(c.staffId), []).append(c)

    now = iso_utc_now()
    return {"items": [_serialize_staff(r, by_staff.get(str(r.staffId), []), now) for r in rows]}


def certification_add(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    staff_id = req_str(data, "staffId")
    staff = db.execute(
        select(StaffMember).where(StaffMember.staffId == staff_id).where(StaffMember.venueId == auth.venueId)
    ).scalar_one_or_none()
    if not staff:
        raise NotFoundError("Staff member not found", details={"staffId": staff_id})

    issued = _iso_or_empty((data or {}).get("issuedAt"), "issuedAt")
    expires = _iso_or_empty((data or {}).get("expiresAt"), "expiresAt")
    if issued and expires and expires < issued:
        raise ValidationError("expiresAt must not be before issuedAt")

    now = iso_utc_now()
    cert = StaffCertification(
        certId=f"CRT-{new_uuid()}",
        staffId=staff.staffId,
        venueId=auth.venueId,
        name=req_str(data, "name", max_len=200),
        issuedAt=issued,
        expiresAt=expires,
        createdAt=now,
        createdBy=auth.userId,
    )
    with storage_step(db, "certification_insert"):
        db.add(cert)
    append_audit(
        db,
        auth,
        action="CERTIFICATION_ADD",
        resource_type="staff_member",
        resource_id=staff.staffId,
        details={"certId": cert.certId, "name": cert.name, "expiresAt": expires},
        at=now,
    )
    return {"certification": _serialize_cert(cert, now), "notice": notice("Certification added", f"{cert.name} recorded for {staff.name}.")}
